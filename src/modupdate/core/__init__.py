"""
Module Update Manager - Core Package
"""

from modupdate.core.version import PackageVersion, parse_version, compare_versions, is_newer
from modupdate.core.scanner import InventoryScanner, InstalledPackage, PackageInventory

__all__ = [
    "PackageVersion",
    "parse_version",
    "compare_versions",
    "is_newer",
    "InventoryScanner",
    "InstalledPackage",
    "PackageInventory",
]
