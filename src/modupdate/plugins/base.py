"""
Module Update Manager - Plugin Base
Abstract base class for all repository plugins.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging

from modupdate.core.version import PackageVersion

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """A repository query or transfer failed (network, protocol, timeout)."""

    def __init__(self, repository: str, message: str, timed_out: bool = False):
        super().__init__(f"{repository}: {message}")
        self.repository = repository
        self.timed_out = timed_out


@dataclass(frozen=True)
class RemoteVersion:
    """A version reported by a repository."""
    version: PackageVersion
    repository: str                  # Repository name the version came from
    author: Optional[str] = None     # Package author as published


@dataclass
class InstallResult:
    """Result of an installation operation."""
    success: bool
    new_version: Optional[str] = None
    install_path: Optional[Path] = None  # Version directory that was written
    error_message: Optional[str] = None


@dataclass
class UninstallResult:
    """Result of an uninstallation operation."""
    success: bool
    error_message: Optional[str] = None


class RepositoryPlugin(ABC):
    """
    Abstract base class for repository plugins.

    Each plugin fronts one named repository (an HTTP gallery, a local
    package folder, the PowerShellGet command line, ...). The engine only
    uses the operations below; the order plugins are configured in is the
    query priority.
    """

    def __init__(self, name: str, config: Optional[dict] = None):
        self._name = name
        self.config = config or {}

    @property
    def name(self) -> str:
        """Repository name as configured (e.g., 'PSGallery')."""
        return self._name

    @property
    @abstractmethod
    def source_type(self) -> str:
        """Short identifier for the plugin type (e.g., 'gallery')."""
        pass

    def is_available(self) -> bool:
        """Whether the repository can be used on this system at all."""
        return True

    @abstractmethod
    def find_latest(self, package_name: str) -> Optional[RemoteVersion]:
        """
        Find the latest stable version of a package.

        Returns:
            RemoteVersion, or None if the repository does not carry the package.

        Raises:
            RepositoryError: The repository could not be queried.
        """
        pass

    @abstractmethod
    def find_latest_prerelease(self, package_name: str) -> Optional[RemoteVersion]:
        """
        Find the latest pre-release version of a package.

        Returns:
            RemoteVersion, or None if no pre-release is published.

        Raises:
            RepositoryError: The repository could not be queried.
        """
        pass

    @abstractmethod
    def install(self, package_name: str, version: PackageVersion, destination: Path) -> InstallResult:
        """
        Install a package version under a module root.

        The package lands in ``destination/<package_name>/<version.base_string>``.

        Args:
            package_name: Package to install.
            version: Exact version to install.
            destination: Module root directory (parent of the package root).

        Returns:
            InstallResult indicating success or failure.
        """
        pass

    def uninstall(self, package_name: str, version: PackageVersion, base_path: Path) -> UninstallResult:
        """
        Uninstall one version of a package.

        Args:
            package_name: The package to uninstall.
            version: The version to remove.
            base_path: Package root holding the version directory.

        Returns:
            UninstallResult indicating success or failure.
        """
        return UninstallResult(
            success=False,
            error_message="Uninstall not supported for this repository type"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"
