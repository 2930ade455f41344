"""
Module Update Manager - Inventory Scanner
Discovers installed packages under the search roots.
"""

import fnmatch
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
import logging

from modupdate.core.logging_setup import VERBOSE
from modupdate.core.manifest import (
    ManifestResolver,
    ResolvedManifest,
    classify,
    is_resource_file,
    parse_metadata_record,
)
from modupdate.core.version import (
    PackageVersion,
    base_key,
    compare_versions,
    parse_version,
    version_sort_key,
)
from modupdate.core.workers import available_parallelism, run_bounded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstalledPackage:
    """One installed version of a package at one location."""
    name: str
    base_path: Path                      # Package root, never a version subfolder
    version: PackageVersion
    author: Optional[str] = None
    version_dir: Optional[Path] = None   # Directory holding this version, if versioned
    source: str = "manifest"             # 'manifest' or 'metadata'
    validated: bool = False              # Version came from a metadata record


class PackageInventory(Mapping):
    """
    Read-only mapping of package name to its installed versions.

    Names are ordered case-insensitively; each package's entries are ordered
    by (base path, version ascending).
    """

    def __init__(self, packages: Optional[dict] = None):
        packages = packages or {}
        self._packages = {
            name: tuple(packages[name])
            for name in sorted(packages, key=lambda n: (n.lower(), n))
        }

    def __getitem__(self, name: str) -> tuple:
        return self._packages[name]

    def __iter__(self):
        return iter(self._packages)

    def __len__(self) -> int:
        return len(self._packages)

    def __repr__(self) -> str:
        return f"PackageInventory({len(self)} packages)"

    def locations(self, name: str) -> list[Path]:
        """Distinct package roots where a package is installed."""
        seen = []
        for entry in self._packages.get(name, ()):
            if entry.base_path not in seen:
                seen.append(entry.base_path)
        return seen

    def highest(self, name: str) -> Optional[InstalledPackage]:
        """The entry holding the newest installed version of a package."""
        best = None
        for entry in self._packages.get(name, ()):
            if best is None or compare_versions(entry.version, best.version) > 0:
                best = entry
        return best

    def to_dict(self) -> dict:
        return {
            name: [
                {
                    "base_path": str(e.base_path),
                    "version": str(e.version),
                    "author": e.author,
                    "source": e.source,
                }
                for e in entries
            ]
            for name, entries in self._packages.items()
        }


class InventoryScanner:
    """Scans search roots for installed packages."""

    def __init__(self, roots: Iterable, ignore: Iterable[str] = (), max_workers: Optional[int] = None):
        """
        Initialize the scanner.

        Args:
            roots: Directories to search, in priority order.
            ignore: Package names (shell-style wildcards allowed) to leave out.
            max_workers: Parsing threads; defaults to the available CPUs.
        """
        self.roots = [Path(os.path.abspath(r)) for r in roots]
        self.ignore = [p.lower() for p in ignore]
        self.max_workers = max_workers or available_parallelism()
        self.resolver = ManifestResolver(self.roots)

    def is_ignored(self, name: str) -> bool:
        """Check if a package name is in the ignore list."""
        lowered = name.lower()
        return any(fnmatch.fnmatchcase(lowered, pattern) for pattern in self.ignore)

    def discover(self) -> list[Path]:
        """Enumerate manifest-like files under every root."""
        found = set()

        def _walk_error(error: OSError) -> None:
            logger.warning(f"Cannot scan {error.filename}: {error.strerror}")

        for root in self.roots:
            if not root.is_dir():
                logger.warning(f"Search root does not exist: {root}")
                continue
            for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
                # Hidden directories hold staging copies, never installed packages
                dirnames[:] = [d for d in dirnames if not d.startswith(".")]
                for filename in filenames:
                    path = Path(dirpath) / filename
                    if classify(path):
                        found.add(path)

        files = sorted(found)
        logger.debug(f"Found {len(files)} candidate files under {len(self.roots)} roots")
        return files

    def _extract(self, path: Path) -> Optional[ResolvedManifest]:
        """Route one file to its extractor."""
        if is_resource_file(path, self.roots):
            return None
        if classify(path) == "metadata":
            return parse_metadata_record(path)
        return self.resolver.resolve(path)

    def scan(self) -> PackageInventory:
        """
        Scan all roots and build the package inventory.

        Returns:
            PackageInventory of everything found, minus ignored packages.
        """
        files = self.discover()
        results = run_bounded(
            self._extract,
            ((path, path) for path in files),
            max_workers=self.max_workers,
            label="scan",
        )

        resolved = []
        for path in files:
            result = results[path]
            if result.error is not None:
                logger.warning(f"Skipping {path}: {result.error}")
            elif result.value is not None:
                resolved.append(result.value)

        inventory = self._aggregate(resolved)
        logger.info(f"Inventory: {len(inventory)} packages from {len(files)} files")
        return inventory

    def _aggregate(self, resolved: list[ResolvedManifest]) -> PackageInventory:
        """Deduplicate, normalize and group extractor results."""
        # 1. Exact duplicates (validated entries win)
        unique: dict[tuple, ResolvedManifest] = {}
        for item in sorted(resolved, key=lambda r: not r.validated):
            key = (item.name.lower(), item.base_path, item.version.raw)
            unique.setdefault(key, item)

        # 2. A version directory taken for the package root moves up to its parent
        packages = []
        for item in unique.values():
            base_path = item.base_path
            version_dir = item.version_dir
            if parse_version(base_path.name) and base_path.parent != base_path:
                version_dir = version_dir or base_path
                base_path = base_path.parent
            packages.append(InstalledPackage(
                name=item.name,
                base_path=base_path,
                version=item.version,
                author=item.author,
                version_dir=version_dir,
                source=item.source,
                validated=item.validated,
            ))

        # 3. One entry per (name, root, base version)
        groups: dict[tuple, dict[tuple, InstalledPackage]] = {}
        for package in packages:
            group = groups.setdefault((package.name.lower(), package.base_path), {})
            key = base_key(package.version)
            current = group.get(key)
            if current is None or _preferred(package, current):
                group[key] = package

        # 4. Canonical names, ignore list, ordering
        by_name: dict[str, list[InstalledPackage]] = {}
        for (lowered, _), group in groups.items():
            by_name.setdefault(lowered, []).extend(group.values())

        inventory = {}
        for lowered, entries in by_name.items():
            name = _display_name(entries)
            if self.is_ignored(name):
                logger.debug(f"Ignoring {name}")
                continue
            entries.sort(key=lambda e: (str(e.base_path), version_sort_key(e.version)))
            inventory[name] = entries
            logger.log(VERBOSE, f"{name}: " + ", ".join(f"{e.version} in {e.base_path}" for e in entries))
        return PackageInventory(inventory)


def _preferred(candidate: InstalledPackage, current: InstalledPackage) -> bool:
    """Whether candidate should replace current for the same base version."""
    if candidate.validated != current.validated:
        return candidate.validated
    if candidate.author and not current.author:
        return True
    return compare_versions(candidate.version, current.version) > 0


def _display_name(entries: list[InstalledPackage]) -> str:
    """Pick one spelling for a package name seen with different casing."""
    validated = sorted(e.name for e in entries if e.validated)
    if validated:
        return validated[0]
    return sorted(e.name for e in entries)[0]
