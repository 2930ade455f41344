"""
Tests for core.version - version parsing and comparison.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import unittest
from modupdate.core.version import (
    PackageVersion,
    parse_version,
    compare_versions,
    is_newer,
    versions_equal,
    same_base,
    highest_version,
    version_sort_key,
)


class TestParseVersion(unittest.TestCase):
    """Tests for parse_version()."""

    def test_three_part(self):
        v = parse_version("1.2.3")
        self.assertEqual(v.base, (1, 2, 3))
        self.assertIsNone(v.label)
        self.assertFalse(v.is_prerelease)

    def test_two_part(self):
        self.assertEqual(parse_version("1.2").base, (1, 2))

    def test_four_part(self):
        self.assertEqual(parse_version("10.0.19041.1").base, (10, 0, 19041, 1))

    def test_with_label(self):
        v = parse_version("2.1.0-beta1")
        self.assertEqual(v.base, (2, 1, 0))
        self.assertEqual(v.label, "beta1")
        self.assertTrue(v.is_prerelease)

    def test_dotted_label(self):
        self.assertEqual(parse_version("1.0.0-rc.2").label, "rc.2")

    def test_whitespace_ignored(self):
        self.assertEqual(parse_version("  1.2.3 \n").base, (1, 2, 3))

    def test_single_number_rejected(self):
        self.assertIsNone(parse_version("42"))

    def test_five_parts_rejected(self):
        self.assertIsNone(parse_version("1.2.3.4.5"))

    def test_garbage_rejected(self):
        self.assertIsNone(parse_version("latest"))

    def test_empty(self):
        self.assertIsNone(parse_version(""))

    def test_none_value(self):
        self.assertIsNone(parse_version(None))

    def test_package_version_passthrough(self):
        v = parse_version("1.0.0")
        self.assertIs(parse_version(v), v)

    def test_str_reconstructs(self):
        self.assertEqual(str(parse_version("3.4.0-preview2")), "3.4.0-preview2")
        self.assertEqual(str(parse_version("3.4.0")), "3.4.0")

    def test_base_string(self):
        self.assertEqual(parse_version("3.4.0-preview2").base_string, "3.4.0")

    def test_round_trip_keeps_stability_class(self):
        for raw in ("1.0", "1.0.0-alpha", "2.3.4.5-rc.1", "0.0.1"):
            parsed = parse_version(raw)
            reparsed = parse_version(str(parsed))
            self.assertEqual(parsed.is_prerelease, reparsed.is_prerelease)
            self.assertTrue(versions_equal(parsed, reparsed))


class TestIsNewer(unittest.TestCase):
    """Tests for is_newer(new, current)."""

    def test_higher_base(self):
        self.assertTrue(is_newer("1.1.0", "1.0.0"))

    def test_lower_base(self):
        self.assertFalse(is_newer("1.0.0", "1.1.0"))

    def test_same(self):
        self.assertFalse(is_newer("1.0.0", "1.0.0"))

    def test_missing_components_are_zero(self):
        self.assertFalse(is_newer("1.0", "1.0.0"))
        self.assertFalse(is_newer("1.0.0", "1.0"))
        self.assertTrue(is_newer("1.0.0.1", "1.0"))

    def test_prerelease_supersedes_same_base_stable(self):
        self.assertTrue(is_newer("2.1.0-beta1", "2.1.0"))
        self.assertFalse(is_newer("2.1.0", "2.1.0-beta1"))

    def test_priority_beats_number(self):
        # alpha ranks above beta regardless of suffix
        self.assertTrue(is_newer("1.0.0-alpha10", "1.0.0-beta3"))
        self.assertFalse(is_newer("1.0.0-beta3", "1.0.0-alpha10"))

    def test_priority_table(self):
        order = ["1.0.0-rc1", "1.0.0-preview1", "1.0.0-beta1", "1.0.0-alpha1", "1.0.0-dev1"]
        for lower, higher in zip(order, order[1:]):
            self.assertTrue(is_newer(higher, lower), f"{higher} > {lower}")

    def test_same_kind_uses_number(self):
        self.assertTrue(is_newer("1.0.0-rc2", "1.0.0-rc1"))
        self.assertFalse(is_newer("1.0.0-rc1", "1.0.0-rc2"))

    def test_same_kind_missing_number_is_zero(self):
        self.assertTrue(is_newer("1.0.0-beta1", "1.0.0-beta"))

    def test_label_case_insensitive(self):
        self.assertFalse(is_newer("1.0.0-BETA2", "1.0.0-beta2"))
        self.assertFalse(is_newer("1.0.0-beta2", "1.0.0-BETA2"))

    def test_unknown_label_is_lexicographic(self):
        self.assertTrue(is_newer("1.0.0-nightly", "1.0.0-beta"))
        self.assertTrue(is_newer("1.0.0-zeta", "1.0.0-nightly"))

    def test_base_dominates_label(self):
        self.assertTrue(is_newer("2.0.0", "1.9.9-dev"))
        self.assertFalse(is_newer("1.9.9-dev", "2.0.0"))

    def test_invalid_input(self):
        self.assertFalse(is_newer("", "1.0.0"))
        self.assertFalse(is_newer("1.0.0", None))
        self.assertFalse(is_newer("garbage", "1.0.0"))

    def test_antisymmetry(self):
        samples = [
            "1.0", "1.0.0", "1.0.1", "2.0.0", "1.0.0-rc1", "1.0.0-rc2",
            "1.0.0-alpha", "1.0.0-beta3", "1.0.0-nightly", "1.9.9-dev",
        ]
        for a in samples:
            self.assertFalse(is_newer(a, a))
            for b in samples:
                if is_newer(a, b):
                    self.assertFalse(is_newer(b, a), f"{a} vs {b}")


class TestCompareVersions(unittest.TestCase):
    """Tests for compare_versions() and helpers."""

    def test_results(self):
        self.assertEqual(compare_versions("1.1", "1.0"), 1)
        self.assertEqual(compare_versions("1.0", "1.1"), -1)
        self.assertEqual(compare_versions("1.0", "1.0.0.0"), 0)

    def test_unparsable_sorts_lowest(self):
        self.assertEqual(compare_versions("junk", "0.0.1"), -1)
        self.assertEqual(compare_versions("0.0.1", "junk"), 1)
        self.assertEqual(compare_versions("junk", "other"), 0)

    def test_sort_key(self):
        versions = ["2.0.0", "1.0.0-beta", "1.0.0", "1.5"]
        self.assertEqual(
            sorted(versions, key=version_sort_key),
            ["1.0.0", "1.0.0-beta", "1.5", "2.0.0"],
        )

    def test_same_base(self):
        self.assertTrue(same_base(parse_version("1.2"), parse_version("1.2.0-rc1")))
        self.assertFalse(same_base(parse_version("1.2"), parse_version("1.2.1")))

    def test_versions_equal(self):
        self.assertTrue(versions_equal("1.2.0", "1.2"))
        self.assertFalse(versions_equal("1.2.0", "1.2.0-rc1"))
        self.assertFalse(versions_equal(None, None))


class TestHighestVersion(unittest.TestCase):
    """Tests for highest_version()."""

    def test_picks_max(self):
        self.assertEqual(str(highest_version(["1.0", "3.0", "2.0"])), "3.0")

    def test_skips_unparsable(self):
        self.assertEqual(str(highest_version(["bad", "1.0"])), "1.0")

    def test_empty(self):
        self.assertIsNone(highest_version([]))

    def test_returns_given_object(self):
        v = parse_version("4.0")
        self.assertIs(highest_version([parse_version("1.0"), v]), v)

    def test_package_version_type(self):
        self.assertIsInstance(highest_version(["1.0"]), PackageVersion)


if __name__ == "__main__":
    unittest.main()
