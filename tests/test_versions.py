import unittest

from loadout.errors import InvalidVersionError, NoValidVersionsError, NoVersionsAvailableError
from loadout.versions import (
    Specifier,
    Version,
    compare_versions,
    filter_by_multiple,
    is_valid_version,
    parse_specifiers,
    parse_version,
    select_best,
    sort_versions,
)


class TestParseVersion(unittest.TestCase):
    def test_missing_parts_default_to_zero(self) -> None:
        self.assertEqual(parse_version("1"), Version(1, 0, 0))
        self.assertEqual(parse_version("1.2"), Version(1, 2, 0))
        self.assertEqual(str(parse_version("1.2")), "1.2.0")

    def test_prerelease_and_build(self) -> None:
        v = parse_version("1.2.3-beta.1+git.abc")
        self.assertEqual((v.major, v.minor, v.patch), (1, 2, 3))
        self.assertEqual(v.pre, "beta.1")
        self.assertEqual(v.build, "git.abc")
        self.assertEqual(str(v), "1.2.3-beta.1+git.abc")

    def test_rejects_garbage(self) -> None:
        for bad in ("", "v1.0.0", "1.2.3.4", "1.x", "abc", "1..2"):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidVersionError):
                    parse_version(bad)
        self.assertFalse(is_valid_version("v1"))
        self.assertTrue(is_valid_version("0.0.0+local"))


class TestCompare(unittest.TestCase):
    def test_numeric_ordering(self) -> None:
        self.assertEqual(compare_versions("1.10.0", "1.9.0"), 1)
        self.assertEqual(compare_versions("1.0", "1.0.0"), 0)
        self.assertEqual(compare_versions("0.9.9", "1.0.0"), -1)

    def test_prerelease_sorts_before_release(self) -> None:
        self.assertEqual(compare_versions("1.0.0-rc1", "1.0.0"), -1)
        self.assertEqual(compare_versions("1.0.0-alpha", "1.0.0-beta"), -1)

    def test_build_metadata_is_ignored(self) -> None:
        self.assertEqual(compare_versions("1.0.0+a", "1.0.0+b"), 0)
        self.assertEqual(parse_version("1.0.0+a"), parse_version("1.0.0+b"))
        self.assertEqual(hash(parse_version("1.0.0+a")), hash(parse_version("1.0.0")))

    def test_rich_comparison(self) -> None:
        self.assertLess(parse_version("1.0.0"), parse_version("1.0.1"))
        self.assertGreaterEqual(parse_version("2.0.0"), parse_version("2.0.0-rc.1"))


class TestSpecifiers(unittest.TestCase):
    def test_bare_version_means_exact(self) -> None:
        spec = Specifier.parse("1.2.3")
        self.assertEqual(spec.operator, "==")
        self.assertTrue(spec.matches("1.2.3"))
        self.assertFalse(spec.matches("1.2.4"))

    def test_compatible_release(self) -> None:
        spec = Specifier.parse("~=1.2")
        self.assertTrue(spec.matches("1.2.0"))
        self.assertTrue(spec.matches("1.2.9"))
        self.assertFalse(spec.matches("1.3.0"))
        self.assertFalse(spec.matches("1.1.9"))

    def test_operators(self) -> None:
        cases = [
            (">=1.0", "1.0.0", True),
            (">1.0", "1.0.0", False),
            ("<2", "1.9.9", True),
            ("<=1.0", "1.0.1", False),
            ("!=1.0.0", "1.0.1", True),
        ]
        for text, version, expected in cases:
            with self.subTest(spec=text, version=version):
                self.assertEqual(Specifier.parse(text).matches(version), expected)

    def test_filter_skips_unparsable(self) -> None:
        spec = Specifier.parse(">=1.0")
        self.assertEqual(spec.filter(["0.9", "junk", "1.0", "2.1"]), ["1.0", "2.1"])

    def test_multiple_specifiers_are_anded(self) -> None:
        specs = parse_specifiers(">=1.0, <2.0, !=1.5.0")
        self.assertEqual(len(specs), 3)
        versions = ["0.9.0", "1.0.0", "1.5.0", "1.9.0", "2.0.0"]
        self.assertEqual(filter_by_multiple(versions, specs), ["1.0.0", "1.9.0"])

    def test_empty_specifier_list_returns_everything(self) -> None:
        self.assertEqual(parse_specifiers(""), [])
        self.assertEqual(filter_by_multiple(["b", "a"], []), ["b", "a"])


class TestSelection(unittest.TestCase):
    def test_select_best_returns_original_string(self) -> None:
        self.assertEqual(select_best(["1.0", "1.10", "1.9.5", "junk"]), "1.10")

    def test_select_best_prefers_release_over_prerelease(self) -> None:
        self.assertEqual(select_best(["2.0.0-rc.1", "2.0.0", "1.9.0"]), "2.0.0")

    def test_select_best_errors(self) -> None:
        with self.assertRaises(NoVersionsAvailableError):
            select_best([])
        with self.assertRaises(NoValidVersionsError):
            select_best(["latest", "main"])

    def test_sort_versions_puts_invalid_last(self) -> None:
        self.assertEqual(
            sort_versions(["2.0.0", "junk", "1.0.0-rc", "1.0.0", "zzz"]),
            ["1.0.0-rc", "1.0.0", "2.0.0", "junk", "zzz"],
        )


if __name__ == "__main__":
    unittest.main()
