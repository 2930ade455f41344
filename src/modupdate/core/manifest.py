"""
Module Update Manager - Manifest Resolver
Infers package name, root, version and author from files found on disk.

Two kinds of files are understood:
- declarative manifests (``<Name>.psd1`` / ``<Name>.manifest``) holding
  ``Key = 'value'`` assignments
- serialized metadata records (``PSGetModuleInfo.xml``) written by the
  package manager next to each installed version
"""

import codecs
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
from xml.etree import ElementTree as ET
import logging

from modupdate.core.version import PackageVersion, parse_version, same_base

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".psd1", ".manifest")
METADATA_FILENAME = "PSGetModuleInfo.xml"
CLIXML_NS = "http://schemas.microsoft.com/powershell/2004/04"

# Directory names that only ever hold localized payloads
LOCALIZATION_DIRS = {
    "localization",
    "localizations",
    "localized",
    "locale",
    "locales",
    "i18n",
    "l10n",
    "culture",
    "cultures",
    "languages",
    "strings",
}

RESOURCE_SUFFIXES = (
    ".resources.psd1",
    ".strings.psd1",
    ".localized.psd1",
    "localizeddata.psd1",
    ".resx",
    ".resources",
    ".resources.dll",
)

# en-US, de-DE, zh-Hans, sr-Latn-RS
CULTURE_PATTERN = re.compile(r"^[a-z]{2,3}(?:-[A-Z][A-Za-z]{1,3}){1,2}$")

_MODULE_VERSION = re.compile(r"^\s*ModuleVersion\s*=\s*['\"]([^'\"]+)['\"]", re.I | re.M)
_PLAIN_VERSION = re.compile(r"^\s*Version\s*=\s*['\"]([^'\"]+)['\"]", re.I | re.M)
_PRERELEASE = re.compile(r"^\s*Prerelease\s*=\s*['\"]([^'\"]*)['\"]", re.I | re.M)
_AUTHOR = re.compile(r"^\s*Author\s*=\s*['\"]([^'\"]*)['\"]", re.I | re.M)


@dataclass(frozen=True)
class ResolvedManifest:
    """What a single file says about an installed package."""
    name: str
    base_path: Path                      # Package root as found (may still be a version dir)
    version: PackageVersion
    author: Optional[str] = None
    version_dir: Optional[Path] = None   # Directory holding this version, if versioned
    source: str = "manifest"             # 'manifest' or 'metadata'
    validated: bool = False              # Version came from a metadata record


def is_manifest_file(path: Path) -> bool:
    return path.suffix.lower() in MANIFEST_SUFFIXES


def is_metadata_record(path: Path) -> bool:
    return path.name.lower() == METADATA_FILENAME.lower()


def classify(path: Path) -> Optional[str]:
    """Return 'manifest', 'metadata' or None for an arbitrary file."""
    if is_metadata_record(path):
        return "metadata"
    if is_manifest_file(path):
        return "manifest"
    return None


def _segments_below(path: Path, roots: Iterable[Path]) -> tuple:
    """Directory segments of path beneath the deepest root that contains it."""
    for root in sorted(roots, key=lambda r: len(Path(r).parts), reverse=True):
        try:
            return path.parent.relative_to(Path(root)).parts
        except ValueError:
            continue
    return path.parent.parts


def is_resource_file(path: Path, roots: Iterable[Path] = ()) -> bool:
    """
    True for localization/culture-specific payloads that are never primary manifests.

    Only directories below the matching search root are checked, so a root
    that itself lives under e.g. ``locale/`` or ``en-US/`` is still scanned.
    """
    name = path.name.lower()
    if any(name.endswith(suffix) for suffix in RESOURCE_SUFFIXES):
        return True
    for segment in _segments_below(path, roots):
        if CULTURE_PATTERN.match(segment) or segment.lower() in LOCALIZATION_DIRS:
            return True
    return False


def _read_text(path: Path) -> str:
    """Read a manifest honouring UTF-16 and UTF-8 byte order marks."""
    data = path.read_bytes()
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return data.decode("utf-16", errors="replace")
    return data.decode("utf-8-sig", errors="replace")


def read_manifest_fields(path: Path) -> dict:
    """
    Scan a declarative manifest for its version, pre-release label and author.

    Returns:
        Dict with 'version', 'prerelease' and 'author' keys (values may be None).

    Raises:
        OSError: The file could not be read.
    """
    text = _read_text(path)
    version = _MODULE_VERSION.search(text) or _PLAIN_VERSION.search(text)
    prerelease = _PRERELEASE.search(text)
    author = _AUTHOR.search(text)
    return {
        "version": version.group(1).strip() if version else None,
        "prerelease": (prerelease.group(1).strip() or None) if prerelease else None,
        "author": (author.group(1).strip() or None) if author else None,
    }


def parse_metadata_record(path: Path) -> Optional[ResolvedManifest]:
    """
    Parse a serialized metadata record (CLIXML) into a ResolvedManifest.

    The record's InstalledLocation is used as the package location when it
    exists on this machine, otherwise the record's own directory.

    Returns:
        ResolvedManifest, or None if the record lacks a usable name/version.

    Raises:
        OSError: The file could not be read.
    """
    try:
        root = ET.fromstring(path.read_bytes())
    except ET.ParseError as e:
        logger.debug(f"Malformed metadata record {path}: {e}")
        return None

    members = root.find(f"{{{CLIXML_NS}}}Obj/{{{CLIXML_NS}}}MS")
    if members is None:
        return None

    values = {}
    for element in members:
        key = element.get("N")
        if key in ("Name", "Version", "Author", "InstalledLocation") and element.text:
            values[key] = element.text.strip()

    name = values.get("Name")
    version = parse_version(values.get("Version"))
    if not name or version is None:
        logger.debug(f"Metadata record {path} has no usable name/version")
        return None

    location = path.parent
    installed = values.get("InstalledLocation")
    if installed and Path(installed).is_dir():
        location = Path(installed)

    return ResolvedManifest(
        name=name,
        base_path=location,
        version=version,
        author=values.get("Author"),
        version_dir=location,
        source="metadata",
        validated=True,
    )


class ManifestResolver:
    """Resolves declarative manifests found under a set of search roots."""

    def __init__(self, roots: Iterable = ()):
        self.roots = [Path(os.path.abspath(r)) for r in roots]

    def _structural(self, path: Path) -> Optional[tuple]:
        """Match ``<root>/<Name>/<Version>/...`` against the search roots."""
        for root in self.roots:
            try:
                parts = path.relative_to(root).parts
            except ValueError:
                continue
            if len(parts) >= 3 and parse_version(parts[1]):
                base = root / parts[0]
                return parts[0], base, parts[1], base / parts[1]
        return None

    def _heuristic(self, path: Path) -> Optional[tuple]:
        """Walk up from the containing directory, stepping over a version directory."""
        parent = path.parent
        if parent in self.roots:
            return None
        if parse_version(parent.name) and parent.parent != parent:
            if parent.parent in self.roots:
                return None
            return parent.parent.name, parent.parent, parent.name, parent
        return parent.name, parent, None, None

    def _with_label(self, version: PackageVersion, fields: dict) -> PackageVersion:
        """Attach the manifest's pre-release label to a path-derived version."""
        if version.label:
            return version
        declared = parse_version(fields.get("version"))
        if declared is not None and declared.base != version.base:
            return version
        label = (declared.label if declared else None) or fields.get("prerelease")
        if not label:
            return version
        return parse_version(f"{version.base_string}-{label}") or version

    def resolve(self, path) -> Optional[ResolvedManifest]:
        """
        Resolve a declarative manifest path.

        Tries, in order: the structural path match, the heuristic directory
        walk, then the manifest content. A metadata record sitting in the
        same version directory, naming the same package, takes precedence
        over a version read from a path or manifest.

        Returns:
            ResolvedManifest, or None if no name/version could be determined.
        """
        path = Path(os.path.abspath(path))
        if is_resource_file(path, self.roots):
            return None

        located = self._structural(path) or self._heuristic(path)
        if located is None:
            logger.debug(f"{path} is not inside a package directory")
            return None
        name, base_path, version_text, version_dir = located

        fields = {}
        if is_manifest_file(path):
            try:
                fields = read_manifest_fields(path)
            except OSError as e:
                logger.warning(f"Cannot read {path}: {e}")

        if version_text is not None:
            version = parse_version(version_text)
            if version is not None:
                version = self._with_label(version, fields)
        else:
            version = parse_version(fields.get("version"))
            if version is not None and not version.label and fields.get("prerelease"):
                version = parse_version(f"{version.base_string}-{fields['prerelease']}") or version

        author = fields.get("author")
        validated = False

        record_path = (version_dir or path.parent) / METADATA_FILENAME
        if record_path != path and record_path.is_file():
            try:
                record = parse_metadata_record(record_path)
            except OSError as e:
                logger.debug(f"Cannot read {record_path}: {e}")
                record = None
            if (
                record is not None
                and record.name.lower() == name.lower()
                and (version is None or same_base(record.version, version))
            ):
                version = record.version
                author = author or record.author
                validated = True

        if version is None:
            logger.debug(f"No version found for {name} in {path}")
            return None

        return ResolvedManifest(
            name=name,
            base_path=base_path,
            version=version,
            author=author,
            version_dir=version_dir,
            source="manifest",
            validated=validated,
        )
