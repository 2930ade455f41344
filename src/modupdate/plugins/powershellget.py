"""
Module Update Manager - PowerShellGet Plugin
Handles queries, installs and uninstalls through the PowerShellGet cmdlets.
"""

import json
import shutil
import subprocess
from pathlib import Path
from typing import Optional
import logging

from modupdate.core.version import PackageVersion, parse_version
from .base import (
    RepositoryPlugin,
    RepositoryError,
    RemoteVersion,
    InstallResult,
    UninstallResult,
)

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("No match was found", "NoMatchFoundForCriteria")


def _quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


class PowerShellGetPlugin(RepositoryPlugin):
    """Plugin that drives Find-/Save-/Install-/Uninstall-Module in pwsh."""

    def __init__(self, name: str, config: dict = None):
        """
        Initialize the PowerShellGet plugin.

        Args:
            name: Repository name as registered with PowerShellGet.
            config: Optional configuration dict with:
                - executable: pwsh/powershell binary (auto-detected otherwise)
                - repository: registered repository name (defaults to name)
                - scope: Install-Module scope for legacy installs
                - timeout: Seconds per query
                - install_timeout: Seconds per install/uninstall
        """
        super().__init__(name, config)
        self.executable = self.config.get("executable") or shutil.which("pwsh") or shutil.which("powershell")
        self.repository = self.config.get("repository", name)
        self.scope = self.config.get("scope", "CurrentUser")
        self.timeout = int(self.config.get("timeout", 60))
        self.install_timeout = int(self.config.get("install_timeout", 600))
        self._last_error: str = ""

    @property
    def source_type(self) -> str:
        return "powershellget"

    def is_available(self) -> bool:
        """Check if a PowerShell executable is present."""
        return bool(self.executable)

    def _run_pwsh(self, script: str, timeout: int) -> subprocess.CompletedProcess:
        """Run a PowerShell script non-interactively."""
        if not self.executable:
            raise FileNotFoundError("PowerShell executable not found")
        return subprocess.run(
            [self.executable, "-NoProfile", "-NonInteractive", "-Command", script],
            capture_output=True,
            text=True,
            timeout=timeout,
        )

    def _find(self, package_name: str, prerelease: bool) -> Optional[RemoteVersion]:
        script = (
            f"Find-Module -Name {_quote(package_name)} -Repository {_quote(self.repository)}"
            f"{' -AllowPrerelease' if prerelease else ''} -ErrorAction Stop"
            " | Select-Object -First 1 Name, @{n='Version';e={$_.Version.ToString()}}, Author"
            " | ConvertTo-Json -Compress"
        )
        try:
            result = self._run_pwsh(script, self.timeout)
        except subprocess.TimeoutExpired as e:
            raise RepositoryError(self.name, f"Find-Module timed out for {package_name}", timed_out=True) from e
        except OSError as e:
            raise RepositoryError(self.name, str(e)) from e

        if result.returncode != 0:
            if any(marker in result.stderr for marker in NOT_FOUND_MARKERS):
                return None
            self._last_error = result.stderr.strip()
            raise RepositoryError(self.name, self._last_error or "Find-Module failed")

        output = result.stdout.strip()
        if not output:
            return None
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise RepositoryError(self.name, f"unexpected Find-Module output: {e}") from e

        version = parse_version(data.get("Version"))
        if version is None or version.is_prerelease != prerelease:
            return None
        return RemoteVersion(version=version, repository=self.name, author=data.get("Author"))

    def find_latest(self, package_name: str) -> Optional[RemoteVersion]:
        return self._find(package_name, prerelease=False)

    def find_latest_prerelease(self, package_name: str) -> Optional[RemoteVersion]:
        return self._find(package_name, prerelease=True)

    def _run_action(self, script: str, action: str) -> Optional[str]:
        """Run an install-type script; returns an error message or None on success."""
        try:
            result = self._run_pwsh(script, self.install_timeout)
        except subprocess.TimeoutExpired:
            return f"{action} timed out"
        except OSError as e:
            return str(e)

        if result.returncode != 0:
            self._last_error = result.stderr.strip()
            return self._last_error or f"{action} failed"
        return None

    def _version_args(self, version: PackageVersion) -> str:
        args = f" -RequiredVersion {_quote(str(version))}"
        if version.is_prerelease:
            args += " -AllowPrerelease"
        return args

    def install(self, package_name: str, version: PackageVersion, destination: Path) -> InstallResult:
        """Save the module straight into the destination module root."""
        script = (
            f"Save-Module -Name {_quote(package_name)} -Repository {_quote(self.repository)}"
            f"{self._version_args(version)} -Path {_quote(destination)} -Force -ErrorAction Stop"
        )
        error = self._run_action(script, "Save-Module")
        if error:
            return InstallResult(success=False, error_message=error)
        return InstallResult(
            success=True,
            new_version=str(version),
            install_path=Path(destination) / package_name / version.base_string,
        )

    def install_module(self, package_name: str, version: PackageVersion) -> InstallResult:
        """Install through Install-Module into the configured scope."""
        script = (
            f"Install-Module -Name {_quote(package_name)} -Repository {_quote(self.repository)}"
            f"{self._version_args(version)} -Scope {self.scope} -Force -AllowClobber -ErrorAction Stop"
        )
        error = self._run_action(script, "Install-Module")
        if error:
            return InstallResult(success=False, error_message=error)
        return InstallResult(success=True, new_version=str(version))

    def uninstall(self, package_name: str, version: PackageVersion, base_path: Path) -> UninstallResult:
        """
        Uninstall one version through Uninstall-Module.

        Args:
            package_name: The module to uninstall.
            version: The version to remove.
            base_path: Unused; PowerShellGet locates the module itself.

        Returns:
            UninstallResult indicating success or failure.
        """
        script = (
            f"Uninstall-Module -Name {_quote(package_name)}"
            f"{self._version_args(version)} -Force -ErrorAction Stop"
        )
        error = self._run_action(script, "Uninstall-Module")
        if error:
            return UninstallResult(success=False, error_message=error)
        return UninstallResult(success=True)
