"""
Module Update Manager - Update Pipeline
Applies update decisions: pre-process, parallel install, sequential clean.
"""

import os
import shutil
import stat
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence
import logging

from modupdate.core.logging_setup import SUCCESS
from modupdate.core.manifest import (
    ManifestResolver,
    METADATA_FILENAME,
    is_manifest_file,
    parse_metadata_record,
)
from modupdate.core.resolver import UpdateDecision
from modupdate.core.version import PackageVersion, parse_version, same_base, versions_equal
from modupdate.core.workers import ProgressCounter, available_parallelism, run_bounded
from modupdate.plugins.base import InstallResult, RepositoryPlugin

logger = logging.getLogger(__name__)

# Packages the engine itself relies on; removing their old versions could
# remove the tooling that is running the update.
DEFAULT_DO_NOT_CLEAN = (
    "PowerShellGet",
    "PackageManagement",
    "Microsoft.PowerShell.PSResourceGet",
)


class OutcomeStatus(Enum):
    """Final state of one package in a pipeline run."""
    UPDATED = "updated"      # every outdated location now has the target
    PARTIAL = "partial"      # some locations updated, some failed
    FAILED = "failed"        # no location updated
    DECLINED = "declined"    # rejected at the confirmation gate
    SKIPPED = "skipped"      # nothing left to do (locations vanished)
    PLANNED = "planned"      # dry run: would have been installed


@dataclass
class InstallOutcome:
    """Per-package result of a pipeline run."""
    name: str
    target_version: str
    repository: str
    status: OutcomeStatus = OutcomeStatus.FAILED
    updated_paths: list = field(default_factory=list)
    failed_paths: list = field(default_factory=list)
    cleaned_paths: list = field(default_factory=list)
    skipped_paths: list = field(default_factory=list)
    strategies: dict = field(default_factory=dict)   # location -> strategy that worked
    messages: list = field(default_factory=list)

    @property
    def overall_success(self) -> bool:
        return self.status == OutcomeStatus.UPDATED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "target_version": self.target_version,
            "repository": self.repository,
            "status": self.status.value,
            "overall_success": self.overall_success,
            "updated_paths": [str(p) for p in self.updated_paths],
            "failed_paths": [str(p) for p in self.failed_paths],
            "cleaned_paths": [str(p) for p in self.cleaned_paths],
            "skipped_paths": [str(p) for p in self.skipped_paths],
            "strategies": dict(self.strategies),
            "messages": list(self.messages),
        }


@dataclass(frozen=True)
class InstallTask:
    """Everything an install worker needs, decided before any worker starts."""
    name: str
    version: PackageVersion
    version_string: str
    repository: RepositoryPlugin
    locations: tuple


class InstallStrategy(ABC):
    """One way of getting a package version onto disk."""

    name = "strategy"
    # Strategies that install to a fixed place run once per package, not per location
    once_per_package = False

    @abstractmethod
    def install(self, task: InstallTask, location: Path) -> InstallResult:
        pass


class DirectPlacementStrategy(InstallStrategy):
    """Install next to the existing copy, preserving the on-disk layout."""

    name = "direct"

    def install(self, task: InstallTask, location: Path) -> InstallResult:
        # The folder's own spelling, so the version lands inside this location
        return task.repository.install(location.name, task.version, location.parent)


class ScopeInstallStrategy(InstallStrategy):
    """Install into the default module root for the current scope."""

    name = "scope"
    once_per_package = True

    def __init__(self, default_root: Path):
        self.default_root = Path(default_root)

    def install(self, task: InstallTask, location: Path) -> InstallResult:
        return task.repository.install(task.name, task.version, self.default_root)


class LegacyInstallStrategy(InstallStrategy):
    """Install through the package manager's own Install-Module."""

    name = "legacy"
    once_per_package = True

    def __init__(self, backend):
        self.backend = backend

    def install(self, task: InstallTask, location: Path) -> InstallResult:
        return self.backend.install_module(task.name, task.version)


def read_installed_version(version_dir: Path, package_name: str) -> Optional[PackageVersion]:
    """
    Read the version installed in a version directory.

    A metadata record wins over manifests; among manifests the one named
    after the package is tried first.
    """
    if not version_dir.is_dir():
        return None

    record = version_dir / METADATA_FILENAME
    if record.is_file():
        try:
            meta = parse_metadata_record(record)
        except OSError as e:
            logger.debug(f"Cannot read {record}: {e}")
            meta = None
        if meta is not None:
            return meta.version

    resolver = ManifestResolver([version_dir.parent.parent])
    try:
        manifests = sorted(
            (p for p in version_dir.iterdir() if p.is_file() and is_manifest_file(p)),
            key=lambda p: (p.stem.lower() != package_name.lower(), p.name),
        )
    except OSError as e:
        logger.debug(f"Cannot list {version_dir}: {e}")
        return None
    for manifest in manifests:
        resolved = resolver.resolve(manifest)
        if resolved is not None:
            return resolved.version
    return None


def verify_installed(location: Path, package_name: str, version: PackageVersion) -> bool:
    """Check that a package root holds exactly the given version."""
    found = read_installed_version(Path(location) / version.base_string, package_name)
    return found is not None and versions_equal(found, version)


def force_remove(path: Path) -> None:
    """Delete a directory tree, clearing read-only bits first."""
    for dirpath, dirnames, filenames in os.walk(path):
        for entry in dirnames + filenames:
            full = os.path.join(dirpath, entry)
            if not os.path.islink(full):
                os.chmod(full, stat.S_IRWXU)
    shutil.rmtree(path)


def approve_all(decision: UpdateDecision) -> bool:
    return True


class UpdatePipeline:
    """
    Runs update decisions through PreProcess -> Install -> Clean.

    Only the Install phase is parallel, and each worker owns one package, so
    no two workers write the same package tree. Removal of old versions runs
    on the calling thread after every install has finished.
    """

    def __init__(
        self,
        repositories: Iterable[RepositoryPlugin],
        default_install_root: Optional[Path] = None,
        legacy_installer=None,
        uninstaller: Optional[RepositoryPlugin] = None,
        confirm: Callable[[UpdateDecision], bool] = approve_all,
        clean: bool = False,
        do_not_clean: Sequence[str] = DEFAULT_DO_NOT_CLEAN,
        max_workers: Optional[int] = None,
        install_timeout: Optional[float] = None,
        dry_run: bool = False,
    ):
        """
        Initialize the pipeline.

        Args:
            repositories: Repository plugins, looked up by decision.repository.
            default_install_root: Module root used by the scope-wide fallback.
            legacy_installer: Backend with install_module() for the last fallback.
            uninstaller: Plugin whose uninstall() removes old versions; defaults
                to the repository the update came from.
            confirm: Called once per package before installing; False declines it.
            clean: Remove superseded versions after a successful install.
            do_not_clean: Package names never cleaned.
            max_workers: Install threads; defaults to max(4, 2x CPUs).
            install_timeout: Seconds allowed for one package's install.
            dry_run: Plan only; nothing is installed or removed.
        """
        self.repositories = {repo.name.lower(): repo for repo in repositories}
        self.confirm = confirm
        self.clean = clean
        self.do_not_clean = {name.lower() for name in do_not_clean}
        self.max_workers = max_workers or max(4, 2 * available_parallelism())
        self.install_timeout = install_timeout
        self.dry_run = dry_run
        self.uninstaller = uninstaller

        self.strategies: list[InstallStrategy] = [DirectPlacementStrategy()]
        if default_install_root:
            self.strategies.append(ScopeInstallStrategy(default_install_root))
        if legacy_installer is not None:
            self.strategies.append(LegacyInstallStrategy(legacy_installer))

    def run(self, decisions: Sequence[UpdateDecision]) -> list[InstallOutcome]:
        """
        Apply update decisions.

        Returns:
            One InstallOutcome per decision, in the same order.
        """
        outcomes, tasks = self._preprocess(decisions)

        if tasks:
            installed = self._install(tasks)
            outcomes.update(installed)
            if self.clean:
                for task in tasks:
                    try:
                        self._clean(task, outcomes[task.name])
                    except Exception as e:
                        logger.warning(f"Cleanup of {task.name} stopped: {e}")
                        outcomes[task.name].messages.append(f"clean: {e}")

        return [outcomes[decision.name] for decision in decisions]

    def _preprocess(self, decisions: Sequence[UpdateDecision]) -> tuple[dict, list]:
        """Sequential phase: targets, location checks and the confirmation gate."""
        outcomes: dict[str, InstallOutcome] = {}
        tasks: list[InstallTask] = []

        for decision in decisions:
            version_string = str(decision.target_version)
            outcome = InstallOutcome(
                name=decision.name,
                target_version=version_string,
                repository=decision.repository,
            )
            outcomes[decision.name] = outcome

            existing = []
            for location in decision.outdated_locations:
                location = Path(location)
                if location.is_dir():
                    existing.append(location)
                else:
                    logger.warning(f"{decision.name}: {location} no longer exists")
                    outcome.skipped_paths.append(location)

            repository = self.repositories.get(decision.repository.lower())
            if not existing:
                outcome.status = OutcomeStatus.SKIPPED
                outcome.messages.append("no outdated locations left on disk")
            elif repository is None:
                outcome.failed_paths.extend(existing)
                outcome.messages.append(f"repository {decision.repository} is not configured")
                logger.error(f"{decision.name}: repository {decision.repository} is not configured")
            elif self.dry_run:
                outcome.status = OutcomeStatus.PLANNED
                logger.info(f"[dry run] {decision.name} {version_string} -> {len(existing)} locations")
            elif not self.confirm(decision):
                outcome.status = OutcomeStatus.DECLINED
                logger.info(f"{decision.name}: update declined")
            else:
                tasks.append(InstallTask(
                    name=decision.name,
                    version=decision.target_version,
                    version_string=version_string,
                    repository=repository,
                    locations=tuple(existing),
                ))

        return outcomes, tasks

    def _install(self, tasks: list[InstallTask]) -> dict:
        """Parallel phase: one worker per package."""
        workers = min(self.max_workers, len(tasks))
        progress = ProgressCounter(len(tasks), label="Install")
        logger.info(f"Installing {len(tasks)} packages with {workers} workers")

        def _run(task: InstallTask) -> InstallOutcome:
            started = time.monotonic()
            outcome = self._install_one(task)
            progress.tick(f"{task.name} {outcome.status.value}", time.monotonic() - started, workers)
            return outcome

        results = run_bounded(
            _run,
            ((task.name, task) for task in tasks),
            max_workers=workers,
            task_timeout=self.install_timeout,
            label="install",
        )

        outcomes = {}
        for task in tasks:
            result = results[task.name]
            if result.ok:
                outcomes[task.name] = result.value
                continue
            reason = "install timed out" if result.timed_out else f"install crashed: {result.error}"
            logger.error(f"{task.name}: {reason}")
            outcomes[task.name] = InstallOutcome(
                name=task.name,
                target_version=task.version_string,
                repository=task.repository.name,
                status=OutcomeStatus.FAILED,
                failed_paths=list(task.locations),
                messages=[reason],
            )
        return outcomes

    def _install_one(self, task: InstallTask) -> InstallOutcome:
        """Install one package at each of its locations, falling back strategy by strategy."""
        outcome = InstallOutcome(
            name=task.name,
            target_version=task.version_string,
            repository=task.repository.name,
        )
        attempted: set[str] = set()

        for location in task.locations:
            for strategy in self.strategies:
                if not (strategy.once_per_package and strategy.name in attempted):
                    attempted.add(strategy.name)
                    try:
                        result = strategy.install(task, location)
                    except Exception as e:
                        logger.exception(f"{task.name}: {strategy.name} install raised")
                        result = InstallResult(success=False, error_message=str(e))
                    if not result.success:
                        outcome.messages.append(f"{strategy.name} ({location}): {result.error_message}")
                        logger.debug(f"{task.name}: {strategy.name} failed at {location}: {result.error_message}")

                if verify_installed(location, task.name, task.version):
                    outcome.updated_paths.append(location)
                    outcome.strategies[str(location)] = strategy.name
                    break
            else:
                outcome.failed_paths.append(location)
                logger.error(f"{task.name}: could not install {task.version_string} at {location}")

        if outcome.updated_paths and not outcome.failed_paths:
            outcome.status = OutcomeStatus.UPDATED
            logger.log(SUCCESS, f"Updated {task.name} to {task.version_string}")
        elif outcome.updated_paths:
            outcome.status = OutcomeStatus.PARTIAL
            logger.warning(f"Partially updated {task.name} ({len(outcome.failed_paths)} locations failed)")
        else:
            outcome.status = OutcomeStatus.FAILED
        return outcome

    def _clean(self, task: InstallTask, outcome: InstallOutcome) -> None:
        """Sequential phase: remove versions superseded by the install."""
        if not outcome.updated_paths:
            return
        if task.name.lower() in self.do_not_clean:
            logger.info(f"{task.name} is protected from cleanup")
            return

        for base_path in outcome.updated_paths:
            try:
                children = sorted(Path(base_path).iterdir())
            except OSError as e:
                logger.warning(f"Cannot list {base_path}: {e}")
                continue

            for version_dir in children:
                if not version_dir.is_dir() or version_dir.name.startswith("."):
                    continue
                dir_version = parse_version(version_dir.name)
                if dir_version is None or same_base(dir_version, task.version):
                    continue
                if self._remove_version(task, Path(base_path), version_dir, dir_version):
                    outcome.cleaned_paths.append(version_dir)

    def _remove_version(
        self,
        task: InstallTask,
        base_path: Path,
        version_dir: Path,
        dir_version: PackageVersion,
    ) -> bool:
        version = read_installed_version(version_dir, task.name) or dir_version
        managed = self.uninstaller or task.repository

        try:
            result = managed.uninstall(task.name, version, base_path)
        except Exception as e:
            logger.warning(f"Managed uninstall of {task.name} {version} raised: {e}")
        else:
            if not result.success:
                logger.debug(f"Managed uninstall of {task.name} {version} failed: {result.error_message}")

        if version_dir.exists():
            try:
                force_remove(version_dir)
            except OSError as e:
                logger.warning(f"Could not remove {version_dir}: {e}")

        if version_dir.exists():
            logger.warning(f"Cleanup left {version_dir} in place")
            return False
        logger.info(f"Removed {task.name} {version} from {base_path}")
        return True
