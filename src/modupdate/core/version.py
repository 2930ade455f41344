"""
Module Update Manager - Version Parsing and Comparison
Provides the version model and ordering rules shared by every component.
"""

import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Iterable, Optional, Union
import logging

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(
    r"^(?P<base>\d+(?:\.\d+){1,3})"
    r"(?:-(?P<label>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

# Pre-release kinds, highest priority first. A higher priority is newer.
PRERELEASE_PRIORITY = {
    "dev": 5,
    "alpha": 4,
    "beta": 3,
    "preview": 2,
    "rc": 1,
}

_LEADING_TOKEN = re.compile(r"^[A-Za-z]+")
_TRAILING_NUMBER = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class PackageVersion:
    """A parsed package version: numeric base plus optional pre-release label."""
    base: tuple
    label: Optional[str]
    raw: str

    @property
    def is_prerelease(self) -> bool:
        return bool(self.label)

    @property
    def base_string(self) -> str:
        """Dotted base version, which is also the on-disk version directory name."""
        return ".".join(str(part) for part in self.base)

    def __str__(self) -> str:
        if self.label:
            return f"{self.base_string}-{self.label}"
        return self.base_string


VersionLike = Union[str, PackageVersion, None]


def parse_version(raw: VersionLike) -> Optional[PackageVersion]:
    """
    Parse a version string into a PackageVersion.

    Recognizes ``N.N[.N[.N]][-label]`` where the label is one or more
    dot-separated alphanumeric/hyphen tokens.

    Args:
        raw: The version string (a PackageVersion is returned unchanged)

    Returns:
        PackageVersion, or None if the base is not 2-4 non-negative integers
    """
    if isinstance(raw, PackageVersion):
        return raw
    if not raw or not isinstance(raw, str):
        return None

    text = raw.strip()
    match = VERSION_PATTERN.match(text)
    if not match:
        return None

    base = tuple(int(part) for part in match.group("base").split("."))
    return PackageVersion(base=base, label=match.group("label"), raw=text)


def _padded(base: tuple) -> tuple:
    return tuple(base) + (0,) * (4 - len(base))


def base_key(version: PackageVersion) -> tuple:
    """Base version padded to four components ('1.2' and '1.2.0' share a key)."""
    return _padded(version.base)


def same_base(v1: PackageVersion, v2: PackageVersion) -> bool:
    return base_key(v1) == base_key(v2)


def _compare_labels(left: str, right: str) -> int:
    """Order two pre-release labels of the same base version."""
    left_token = _LEADING_TOKEN.match(left)
    right_token = _LEADING_TOKEN.match(right)
    left_priority = PRERELEASE_PRIORITY.get(left_token.group(0).lower()) if left_token else None
    right_priority = PRERELEASE_PRIORITY.get(right_token.group(0).lower()) if right_token else None

    if left_priority is None or right_priority is None:
        a, b = left.lower(), right.lower()
        return (a > b) - (a < b)

    if left_priority != right_priority:
        return 1 if left_priority > right_priority else -1

    left_number = _TRAILING_NUMBER.search(left)
    right_number = _TRAILING_NUMBER.search(right)
    a = int(left_number.group(1)) if left_number else 0
    b = int(right_number.group(1)) if right_number else 0
    return (a > b) - (a < b)


def _compare_parsed(v1: PackageVersion, v2: PackageVersion) -> int:
    base1, base2 = _padded(v1.base), _padded(v2.base)
    if base1 != base2:
        return 1 if base1 > base2 else -1

    # Same base: a pre-release supersedes the stable release it shares a base with.
    if v1.is_prerelease and not v2.is_prerelease:
        return 1
    if v2.is_prerelease and not v1.is_prerelease:
        return -1
    if not v1.is_prerelease:
        return 0
    return _compare_labels(v1.label, v2.label)


def compare_versions(v1: VersionLike, v2: VersionLike) -> int:
    """
    Compare two versions.

    Args:
        v1: First version (string or PackageVersion)
        v2: Second version (string or PackageVersion)

    Returns:
        1 if v1 > v2, -1 if v1 < v2, 0 if equal.
        Unparsable input sorts below any valid version; two unparsable
        inputs compare equal.
    """
    parsed1 = parse_version(v1)
    parsed2 = parse_version(v2)
    if parsed1 is None or parsed2 is None:
        if parsed1 is None and parsed2 is None:
            return 0
        return -1 if parsed1 is None else 1
    return _compare_parsed(parsed1, parsed2)


def is_newer(new_version: VersionLike, current_version: VersionLike) -> bool:
    """
    Check if new_version is strictly newer than current_version.

    Returns False when either side is empty or unparsable.
    """
    parsed_new = parse_version(new_version)
    parsed_current = parse_version(current_version)
    if parsed_new is None or parsed_current is None:
        return False
    return _compare_parsed(parsed_new, parsed_current) > 0


def versions_equal(v1: VersionLike, v2: VersionLike) -> bool:
    """True when both parse and neither is newer than the other."""
    parsed1 = parse_version(v1)
    parsed2 = parse_version(v2)
    if parsed1 is None or parsed2 is None:
        return False
    return _compare_parsed(parsed1, parsed2) == 0


version_sort_key = cmp_to_key(compare_versions)


def highest_version(versions: Iterable[VersionLike]) -> Optional[PackageVersion]:
    """Return the newest parsable version, or None if there is none."""
    best = None
    for candidate in versions:
        parsed = parse_version(candidate)
        if parsed is None:
            continue
        if best is None or _compare_parsed(parsed, best) > 0:
            best = parsed
    return best
