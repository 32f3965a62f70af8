import unittest

from src.flagsync.semver import SemanticVersion, parse_version, try_parse_version


class TestSemver(unittest.TestCase):
    def test_parse(self):
        cases = [
            ("1.2.3", SemanticVersion(1, 2, 3)),
            ("0.0.0", SemanticVersion(0, 0, 0)),
            ("1.0.0-alpha.1", SemanticVersion(1, 0, 0, ("alpha", "1"))),
            ("1.0.0+build.5", SemanticVersion(1, 0, 0)),
            ("1.0.0-rc.1+build", SemanticVersion(1, 0, 0, ("rc", "1"))),
        ]
        for s, expected in cases:
            with self.subTest(s):
                self.assertEqual(parse_version(s), expected)

    def test_invalid(self):
        cases = [
            "",
            "1",
            "1.2",
            "01.2.3",
            "1.02.3",
            "1.2.3-",
            "1.2.3-01",
            "1.2.3.4",
            "v1.2.3",
            " 1.2.3",
            "1.2.3\n",
            "١.2.3",  # non-ascii digit
        ]
        for s in cases:
            with self.subTest(s):
                with self.assertRaises(ValueError):
                    parse_version(s)
                self.assertIsNone(try_parse_version(s))

    def test_precedence(self):
        # Each version has lower precedence than the next.
        ordered = [
            "1.0.0-alpha",
            "1.0.0-alpha.1",
            "1.0.0-alpha.beta",
            "1.0.0-beta",
            "1.0.0-beta.2",
            "1.0.0-beta.11",
            "1.0.0-rc.1",
            "1.0.0",
            "1.0.1",
            "1.1.0",
            "2.0.0",
            "10.0.0",
        ]
        versions = [parse_version(v) for v in ordered]
        for i, a in enumerate(versions):
            for j, b in enumerate(versions):
                with self.subTest((ordered[i], ordered[j])):
                    expected = (i > j) - (i < j)
                    self.assertEqual(a.compare(b), expected)

    def test_build_metadata_ignored(self):
        self.assertEqual(parse_version("1.0.0+a").compare(parse_version("1.0.0+b")), 0)
