"""
Module Update Manager - Core Update Engine
Coordinates scanning, update resolution and installation across all repositories.
"""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
import logging

from modupdate.core.pipeline import DEFAULT_DO_NOT_CLEAN, UpdatePipeline, approve_all
from modupdate.core.report import RunSummary, build_summary
from modupdate.core.resolver import Resolution, UpdateDecision, UpdatePolicy, UpdateResolver
from modupdate.core.scanner import InventoryScanner, PackageInventory
from modupdate.plugins import PLUGIN_TYPES, PowerShellGetPlugin, RepositoryPlugin

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "mum" / "config.json"


class FatalPreconditionError(Exception):
    """The run cannot start at all (no usable repository, no search root)."""


def user_module_root() -> Path:
    """Per-user module directory PowerShell installs into by default."""
    if sys.platform == "win32":
        return Path.home() / "Documents" / "PowerShell" / "Modules"
    data_home = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return data_home / "powershell" / "Modules"


def default_search_roots() -> list[str]:
    """Module search path from PSModulePath, or the per-user module directory."""
    env = os.environ.get("PSModulePath", "")
    roots = [p for p in env.split(os.pathsep) if p.strip()]
    return roots or [str(user_module_root())]


@dataclass
class RunResult:
    """Everything a run produced; callers build reports and exit codes on top."""
    inventory: PackageInventory
    resolution: Resolution
    outcomes: list = field(default_factory=list)
    summary: RunSummary = field(default_factory=RunSummary)

    @property
    def decisions(self) -> list[UpdateDecision]:
        return self.resolution.decisions


class UpdateEngine:
    """
    Core engine that coordinates scanning, checking and updating.
    """

    def __init__(self, config_path: Optional[Path] = None, overrides: Optional[dict] = None):
        """
        Initialize the update engine.

        Args:
            config_path: Path to configuration file.
            overrides: Values that take precedence over the file (e.g. CLI flags).
        """
        self.config_path = config_path
        self.config = self._load_config(config_path)
        for key, value in (overrides or {}).items():
            if value is not None:
                self.config[key] = value
        self.plugins: list[RepositoryPlugin] = []
        self.backend: Optional[PowerShellGetPlugin] = None
        self._init_plugins()

    def _load_config(self, config_path: Optional[Path]) -> dict:
        """Load configuration from file merged over the defaults."""
        config = self._default_config()
        if config_path and Path(config_path).exists():
            try:
                with open(config_path) as f:
                    config.update(json.load(f))
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Failed to load config: {e}")
        return config

    def save_config(self, config: Optional[dict] = None) -> None:
        """Save configuration to file (the current one unless another is given)."""
        if self.config_path:
            path = Path(self.config_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(self.config if config is None else config, f, indent=2)

    def _default_config(self) -> dict:
        """Return default configuration."""
        return {
            "search_roots": [],
            "repositories": [
                {
                    "name": "PSGallery",
                    "type": "gallery",
                    "url": "https://www.powershellgallery.com/api/v2",
                },
            ],
            "backend": {
                "enabled": True,
                "repository": "PSGallery",
                "scope": "CurrentUser",
            },
            "ignore": [],
            "include": [],
            "blacklist": {},
            "do_not_clean": [],
            "match_author": False,
            "allow_prerelease": True,
            "clean": False,
            "default_install_root": None,
            "query_timeout": 120,
            "install_timeout": 900,
            "wall_clock_timeout": None,
            "straggler_fraction": 0.0,
            "max_workers": None,
        }

    def _init_plugins(self) -> None:
        """Initialize configured repository plugins in priority order."""
        for entry in self.config.get("repositories", []):
            if not entry.get("enabled", True):
                continue
            plugin_type = PLUGIN_TYPES.get(entry.get("type", ""))
            name = entry.get("name")
            if plugin_type is None or not name:
                logger.warning(f"Ignoring repository entry {entry!r}: unknown type or missing name")
                continue
            self.plugins.append(plugin_type(name, entry))

        backend_config = self.config.get("backend") or {}
        if backend_config.get("enabled", True):
            backend = PowerShellGetPlugin(backend_config.get("repository", "PSGallery"), backend_config)
            if backend.is_available():
                self.backend = backend
            else:
                logger.debug("PowerShell not found; legacy install and managed uninstall disabled")

    @property
    def search_roots(self) -> list[str]:
        return self.config.get("search_roots") or default_search_roots()

    @property
    def policy(self) -> UpdatePolicy:
        return UpdatePolicy(
            match_author=bool(self.config.get("match_author")),
            allow_prerelease=bool(self.config.get("allow_prerelease", True)),
            blacklist=dict(self.config.get("blacklist") or {}),
            include=list(self.config.get("include") or []),
        )

    def ignore_package(self, package_name: str) -> bool:
        """
        Add a package name (wildcards allowed) to the persisted ignore list.

        The file is re-read first so command line overrides never get saved.

        Returns:
            True if the name was added, False if it was already listed.
        """
        stored = self._load_config(self.config_path)
        ignored = stored.setdefault("ignore", [])
        current = self.config.setdefault("ignore", [])
        if package_name not in current:
            current.append(package_name)
        if package_name.lower() in (name.lower() for name in ignored):
            return False
        ignored.append(package_name)
        self.save_config(stored)
        logger.info(f"Added {package_name} to the ignore list in {self.config_path}")
        return True

    def available_plugins(self) -> list[RepositoryPlugin]:
        available = []
        for plugin in self.plugins:
            if plugin.is_available():
                available.append(plugin)
            else:
                logger.warning(f"Repository {plugin.name} is not available")
        return available

    def check_preconditions(self) -> list[RepositoryPlugin]:
        """
        Verify the run can start.

        Returns:
            The usable repository plugins.

        Raises:
            FatalPreconditionError: No repository is usable or no search root exists.
        """
        plugins = self.available_plugins()
        if not plugins:
            raise FatalPreconditionError("No usable repository backend available")
        if not any(Path(root).is_dir() for root in self.search_roots):
            raise FatalPreconditionError(
                f"None of the search roots exist: {', '.join(self.search_roots)}"
            )
        return plugins

    def scan(self) -> PackageInventory:
        """Scan the search roots."""
        scanner = InventoryScanner(
            self.search_roots,
            ignore=self.config.get("ignore") or [],
            max_workers=self.config.get("max_workers"),
        )
        return scanner.scan()

    def resolve(self, inventory: PackageInventory, plugins: Optional[list] = None) -> Resolution:
        """Check the inventory against the repositories."""
        resolver = UpdateResolver(
            plugins if plugins is not None else self.available_plugins(),
            policy=self.policy,
            query_timeout=self.config.get("query_timeout") or 120,
            max_workers=self.config.get("max_workers"),
            wall_clock_timeout=self.config.get("wall_clock_timeout"),
            straggler_fraction=float(self.config.get("straggler_fraction") or 0.0),
        )
        return resolver.resolve(inventory)

    def build_pipeline(
        self,
        plugins: list[RepositoryPlugin],
        confirm: Callable[[UpdateDecision], bool] = approve_all,
        dry_run: bool = False,
    ) -> UpdatePipeline:
        do_not_clean = list(DEFAULT_DO_NOT_CLEAN) + list(self.config.get("do_not_clean") or [])
        default_root = self.config.get("default_install_root") or user_module_root()
        return UpdatePipeline(
            plugins,
            default_install_root=Path(default_root).expanduser(),
            legacy_installer=self.backend,
            uninstaller=self.backend,
            confirm=confirm,
            clean=bool(self.config.get("clean")),
            do_not_clean=do_not_clean,
            max_workers=self.config.get("max_workers"),
            install_timeout=self.config.get("install_timeout"),
            dry_run=dry_run,
        )

    def run(
        self,
        check_only: bool = False,
        dry_run: bool = False,
        confirm: Callable[[UpdateDecision], bool] = approve_all,
    ) -> RunResult:
        """
        Scan, check and (unless check_only) update.

        Args:
            check_only: Stop after computing decisions.
            dry_run: Run the pipeline's planning phase without installing.
            confirm: Per-package approval, called before any install starts.

        Returns:
            RunResult with inventory, decisions, outcomes and summary.

        Raises:
            FatalPreconditionError: The run could not start.
        """
        plugins = self.check_preconditions()

        inventory = self.scan()
        resolution = self.resolve(inventory, plugins)

        outcomes = []
        if not check_only and resolution.decisions:
            pipeline = self.build_pipeline(plugins, confirm=confirm, dry_run=dry_run)
            outcomes = pipeline.run(resolution.decisions)

        summary = build_summary(inventory, resolution, outcomes)
        return RunResult(
            inventory=inventory,
            resolution=resolution,
            outcomes=outcomes,
            summary=summary,
        )
