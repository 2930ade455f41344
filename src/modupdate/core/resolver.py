"""
Module Update Manager - Update Resolver
Decides which installed packages need which update, and where.
"""

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence
import logging

from modupdate.core.logging_setup import VERBOSE
from modupdate.core.scanner import PackageInventory
from modupdate.core.version import PackageVersion, is_newer, versions_equal
from modupdate.core.workers import available_parallelism, run_bounded
from modupdate.plugins.base import RepositoryPlugin, RepositoryError, RemoteVersion

logger = logging.getLogger(__name__)

BLACKLIST_ALL = "*"
REASON_UP_TO_DATE = "up to date"


def normalize_author(author: Optional[str]) -> str:
    """Case-fold an author name and drop everything that is not a letter or digit."""
    if not author:
        return ""
    return "".join(ch for ch in author.casefold() if ch.isalnum())


@dataclass
class UpdatePolicy:
    """Rules deciding whether an available update may be applied."""
    match_author: bool = False
    allow_prerelease: bool = True
    blacklist: dict = field(default_factory=dict)   # name -> "*" or [repository names]
    include: list = field(default_factory=list)     # name patterns; empty means all

    def _blacklist_entry(self, package_name: str):
        lowered = package_name.lower()
        for name, rule in self.blacklist.items():
            if name.lower() == lowered:
                return rule
        return None

    def is_blacklisted(self, package_name: str, repository: Optional[str] = None) -> bool:
        """
        Check the blacklist.

        Args:
            package_name: Package to check.
            repository: Repository name, or None to ask whether the package
                is excluded from every repository.
        """
        rule = self._blacklist_entry(package_name)
        if rule is None:
            return False
        if rule == BLACKLIST_ALL:
            return True
        if isinstance(rule, str):
            rule = [rule]
        if repository is None:
            return False
        return repository.lower() in {r.lower() for r in rule}

    def is_included(self, package_name: str) -> bool:
        if not self.include:
            return True
        lowered = package_name.lower()
        return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in self.include)


@dataclass
class RemoteCandidate:
    """Latest stable and pre-release versions seen across the repositories."""
    stable: Optional[RemoteVersion] = None
    prerelease: Optional[RemoteVersion] = None
    errors: list = field(default_factory=list)

    def latest(self) -> Optional[RemoteVersion]:
        """The newer of the two, using the pre-release-over-stable rule."""
        if self.stable and self.prerelease:
            if is_newer(self.prerelease.version, self.stable.version):
                return self.prerelease
            return self.stable
        return self.stable or self.prerelease


@dataclass(frozen=True)
class UpdateDecision:
    """A package that needs updating, and where."""
    name: str
    target_version: PackageVersion
    repository: str
    outdated_locations: tuple           # Package roots lacking target_version
    installed_version: Optional[PackageVersion] = None
    author: Optional[str] = None


@dataclass
class Resolution:
    """Result of a resolve pass; failures are data, not exceptions."""
    decisions: list = field(default_factory=list)
    skipped: dict = field(default_factory=dict)     # name -> reason
    errors: dict = field(default_factory=dict)      # name -> [messages]


class UpdateResolver:
    """Queries repositories and compares the results against the inventory."""

    def __init__(
        self,
        repositories: Sequence[RepositoryPlugin],
        policy: Optional[UpdatePolicy] = None,
        query_timeout: float = 120.0,
        max_workers: Optional[int] = None,
        wall_clock_timeout: Optional[float] = None,
        straggler_fraction: float = 0.0,
    ):
        """
        Initialize the resolver.

        Args:
            repositories: Repository plugins in priority order.
            policy: Update policy (defaults to UpdatePolicy()).
            query_timeout: Seconds allowed for one package's repository queries.
            max_workers: Query threads; defaults to 2x the available CPUs.
            wall_clock_timeout: Ceiling for the whole query batch.
            straggler_fraction: Close the batch once this share of queries remains.
        """
        self.repositories = list(repositories)
        self.policy = policy or UpdatePolicy()
        self.query_timeout = query_timeout
        self.max_workers = max_workers or 2 * available_parallelism()
        self.wall_clock_timeout = wall_clock_timeout
        self.straggler_fraction = straggler_fraction

    def _repositories_for(self, package_name: str) -> list[RepositoryPlugin]:
        return [
            repo for repo in self.repositories
            if not self.policy.is_blacklisted(package_name, repo.name)
        ]

    def _query_first(self, package_name: str, prerelease: bool, errors: list) -> Optional[RemoteVersion]:
        """Ask each repository in priority order; the first hit wins."""
        for repo in self._repositories_for(package_name):
            try:
                if prerelease:
                    found = repo.find_latest_prerelease(package_name)
                else:
                    found = repo.find_latest(package_name)
            except RepositoryError as e:
                logger.warning(f"Query for {package_name} failed: {e}")
                errors.append(str(e))
                continue
            if found is not None:
                logger.log(VERBOSE, f"{package_name}: {repo.name} has {found.version}")
                return found
        return None

    def fetch(self, package_name: str) -> RemoteCandidate:
        """Stage 1 for one package: latest stable and latest pre-release."""
        candidate = RemoteCandidate()
        candidate.stable = self._query_first(package_name, False, candidate.errors)
        if self.policy.allow_prerelease:
            candidate.prerelease = self._query_first(package_name, True, candidate.errors)
        return candidate

    def compare(
        self,
        package_name: str,
        inventory: PackageInventory,
        candidate: RemoteCandidate,
    ) -> tuple[Optional[UpdateDecision], str]:
        """
        Stage 2 for one package.

        Returns:
            (UpdateDecision or None, reason when None)
        """
        remote = candidate.latest()
        if remote is None:
            return None, "not found in any repository"

        installed = inventory.highest(package_name)
        if installed is None:
            return None, "not installed"

        # A target equal to the highest installed version still goes to the
        # locations that lack it.
        if is_newer(installed.version, remote.version):
            return None, REASON_UP_TO_DATE

        outdated = []
        for location in inventory.locations(package_name):
            has_target = any(
                versions_equal(entry.version, remote.version)
                for entry in inventory[package_name]
                if entry.base_path == location
            )
            if not has_target:
                outdated.append(Path(location))

        if not outdated:
            return None, REASON_UP_TO_DATE

        if self.policy.match_author:
            local_author = normalize_author(installed.author)
            remote_author = normalize_author(remote.author)
            if not local_author or local_author != remote_author:
                return None, (
                    f"author mismatch (installed {installed.author!r}, "
                    f"{remote.repository} {remote.author!r})"
                )

        return UpdateDecision(
            name=package_name,
            target_version=remote.version,
            repository=remote.repository,
            outdated_locations=tuple(outdated),
            installed_version=installed.version,
            author=remote.author,
        ), ""

    def resolve(self, inventory: PackageInventory) -> Resolution:
        """
        Find every package in the inventory that needs an update.

        Stage 1 queries repositories for all packages in parallel and
        completes as a batch before stage 2 compares any of them.
        """
        resolution = Resolution()
        if not self.repositories:
            logger.warning("No repositories configured")
            return resolution

        names = []
        for name in inventory:
            if not self.policy.is_included(name):
                resolution.skipped[name] = "not selected"
            elif self.policy.is_blacklisted(name) or not self._repositories_for(name):
                resolution.skipped[name] = "blacklisted"
            else:
                names.append(name)

        logger.info(f"Checking {len(names)} packages against {len(self.repositories)} repositories")
        fetched = run_bounded(
            self.fetch,
            ((name, name) for name in names),
            max_workers=self.max_workers,
            task_timeout=self.query_timeout,
            wall_clock_timeout=self.wall_clock_timeout,
            straggler_fraction=self.straggler_fraction,
            label="query",
        )

        candidates: dict[str, RemoteCandidate] = {}
        for name in names:
            result = fetched[name]
            if result.timed_out:
                resolution.skipped[name] = "query timed out"
                resolution.errors.setdefault(name, []).append("query timed out")
            elif result.error is not None:
                resolution.skipped[name] = f"query failed: {result.error}"
                resolution.errors.setdefault(name, []).append(str(result.error))
            else:
                candidates[name] = result.value
                if result.value.errors:
                    resolution.errors.setdefault(name, []).extend(result.value.errors)

        compared = run_bounded(
            lambda name: self.compare(name, inventory, candidates[name]),
            ((name, name) for name in candidates),
            max_workers=self.max_workers,
            label="compare",
        )

        for name in candidates:
            result = compared[name]
            if result.error is not None:
                resolution.skipped[name] = f"comparison failed: {result.error}"
                continue
            decision, reason = result.value
            if decision is None:
                if candidates[name].errors and candidates[name].latest() is None:
                    reason = "query failed"
                resolution.skipped[name] = reason
                logger.debug(f"{name}: {reason}")
            else:
                logger.info(
                    f"{name}: {decision.installed_version} -> {decision.target_version} "
                    f"from {decision.repository} ({len(decision.outdated_locations)} locations)"
                )
                resolution.decisions.append(decision)

        return resolution
