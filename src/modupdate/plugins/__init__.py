"""
Module Update Manager - Plugins Package
"""

from modupdate.plugins.base import (
    RepositoryPlugin,
    RepositoryError,
    RemoteVersion,
    InstallResult,
    UninstallResult,
)
from modupdate.plugins.gallery import GalleryPlugin
from modupdate.plugins.local_folder import LocalFolderPlugin
from modupdate.plugins.powershellget import PowerShellGetPlugin

PLUGIN_TYPES = {
    "gallery": GalleryPlugin,
    "folder": LocalFolderPlugin,
    "powershellget": PowerShellGetPlugin,
}

__all__ = [
    "RepositoryPlugin",
    "RepositoryError",
    "RemoteVersion",
    "InstallResult",
    "UninstallResult",
    "GalleryPlugin",
    "LocalFolderPlugin",
    "PowerShellGetPlugin",
    "PLUGIN_TYPES",
]
