"""
Module Update Manager - Package Archive Helpers
Reads and extracts .nupkg archives served by NuGet-style repositories.
"""

import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote
from xml.etree import ElementTree as ET
import logging

from modupdate.core.version import PackageVersion

logger = logging.getLogger(__name__)

# Packaging metadata that is not part of the installed module.
_PACKAGING_ENTRIES = ("[Content_Types].xml", "_rels/", "package/")


def read_nuspec(archive_path: Path) -> dict:
    """
    Read id, version and authors from the .nuspec inside a package archive.

    Returns:
        Dict with 'id', 'version' and 'authors' keys (values may be None).
    """
    info = {"id": None, "version": None, "authors": None}
    with zipfile.ZipFile(archive_path) as archive:
        nuspec = next(
            (n for n in archive.namelist() if n.lower().endswith(".nuspec") and "/" not in n),
            None,
        )
        if not nuspec:
            return info
        root = ET.fromstring(archive.read(nuspec))

    for element in root.iter():
        # Namespaced tags look like '{http://schemas...}id'
        tag = element.tag.rsplit("}", 1)[-1]
        if tag in info and info[tag] is None and element.text:
            info[tag] = element.text.strip()
    return info


def _member_target(name: str) -> Optional[PurePosixPath]:
    """Map an archive member to its relative install path, or None to skip it."""
    if name.endswith("/"):
        return None
    if any(name.startswith(prefix) for prefix in _PACKAGING_ENTRIES):
        return None
    if "/" not in name and name.lower().endswith(".nuspec"):
        return None

    relative = PurePosixPath(unquote(name))
    if relative.is_absolute() or ".." in relative.parts:
        raise ValueError(f"Unsafe path in package archive: {name}")
    return relative


def extract_package(
    archive_path: Path,
    destination: Path,
    package_name: str,
    version: PackageVersion,
) -> Path:
    """
    Extract a package archive into ``destination/<package_name>/<base version>``.

    The archive is unpacked into a staging directory next to the target and
    then moved into place, so a failed extraction never leaves a half-written
    version directory. An existing directory for the same base version is
    replaced.

    Returns:
        The installed version directory.

    Raises:
        zipfile.BadZipFile, ValueError, OSError: The archive could not be installed.
    """
    package_root = Path(destination) / package_name
    package_root.mkdir(parents=True, exist_ok=True)
    target = package_root / version.base_string

    staging = Path(tempfile.mkdtemp(prefix=f".{version.base_string}-", dir=package_root))
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                relative = _member_target(member.filename)
                if relative is None:
                    continue
                out_path = staging.joinpath(*relative.parts)
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)

        if target.exists():
            retired = package_root / f".{version.base_string}-old"
            if retired.exists():
                shutil.rmtree(retired)
            target.rename(retired)
            staging.rename(target)
            shutil.rmtree(retired, ignore_errors=True)
        else:
            staging.rename(target)
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.debug(f"Extracted {archive_path.name} to {target}")
    return target
