"""
Module Update Manager - Local Folder Plugin
Serves packages from a directory (or file share) of .nupkg archives.
"""

import re
import shutil
import zipfile
from pathlib import Path
from typing import Optional
import logging

from modupdate.core.version import PackageVersion, parse_version, highest_version, versions_equal
from .base import (
    RepositoryPlugin,
    RepositoryError,
    RemoteVersion,
    InstallResult,
    UninstallResult,
)
from .nupkg import read_nuspec, extract_package

logger = logging.getLogger(__name__)

# <Name>.<Version>.nupkg, e.g. Pester.5.5.0.nupkg or Foo.Bar.2.0.0-beta1.nupkg
ARCHIVE_PATTERN = re.compile(
    r"^(?P<name>.+?)\.(?P<version>\d+(?:\.\d+){1,3}(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?)\.nupkg$",
    re.IGNORECASE,
)


class LocalFolderPlugin(RepositoryPlugin):
    """Plugin for a folder of package archives."""

    def __init__(self, name: str, config: dict):
        """
        Initialize the local folder plugin.

        Args:
            name: Repository name.
            config: Configuration dict with 'path' pointing at the package folder.
        """
        super().__init__(name, config)
        self.path = Path(config.get("path", "")).expanduser()

    @property
    def source_type(self) -> str:
        return "folder"

    def is_available(self) -> bool:
        return self.path.is_dir()

    def _archives(self, package_name: str) -> list[tuple[PackageVersion, Path]]:
        """List (version, archive) pairs published for a package."""
        if not self.path.is_dir():
            raise RepositoryError(self.name, f"Package folder not found: {self.path}")

        wanted = package_name.lower()
        found = []
        for entry in self.path.iterdir():
            match = ARCHIVE_PATTERN.match(entry.name)
            if not match or match.group("name").lower() != wanted:
                continue
            version = parse_version(match.group("version"))
            if version:
                found.append((version, entry))
        return found

    def _latest(self, package_name: str, prerelease: bool) -> Optional[RemoteVersion]:
        archives = {
            version: path
            for version, path in self._archives(package_name)
            if version.is_prerelease == prerelease
        }
        latest = highest_version(archives)
        if latest is None:
            return None

        author = None
        try:
            author = read_nuspec(archives[latest]).get("authors")
        except (zipfile.BadZipFile, OSError) as e:
            logger.warning(f"Could not read package metadata from {archives[latest].name}: {e}")
        return RemoteVersion(version=latest, repository=self.name, author=author)

    def find_latest(self, package_name: str) -> Optional[RemoteVersion]:
        return self._latest(package_name, prerelease=False)

    def find_latest_prerelease(self, package_name: str) -> Optional[RemoteVersion]:
        return self._latest(package_name, prerelease=True)

    def install(self, package_name: str, version: PackageVersion, destination: Path) -> InstallResult:
        """Extract the matching archive under the destination module root."""
        try:
            archive = next(
                (path for v, path in self._archives(package_name) if versions_equal(v, version)),
                None,
            )
        except RepositoryError as e:
            return InstallResult(success=False, error_message=str(e))

        if archive is None:
            return InstallResult(
                success=False,
                error_message=f"{package_name} {version} not found in {self.path}"
            )

        try:
            target = extract_package(archive, destination, package_name, version)
        except (zipfile.BadZipFile, ValueError, OSError) as e:
            return InstallResult(success=False, error_message=f"Extraction failed: {e}")

        return InstallResult(success=True, new_version=str(version), install_path=target)

    def uninstall(self, package_name: str, version: PackageVersion, base_path: Path) -> UninstallResult:
        """Remove a version directory this repository type installed."""
        version_dir = Path(base_path) / version.base_string
        if not version_dir.exists():
            return UninstallResult(success=True)
        try:
            shutil.rmtree(version_dir)
        except OSError as e:
            return UninstallResult(success=False, error_message=str(e))
        return UninstallResult(success=True)
