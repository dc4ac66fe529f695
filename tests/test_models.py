import sys
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from vuln_matcher.cpe import Cpe
from vuln_matcher.cwe import describe_cwe, get_cwe_name, normalize_cwe
from vuln_matcher.errors import ExceptionCollection, FeedParseError, UpdateError
from vuln_matcher.models import (Confidence, Dependency, Identifier, IdentifierType, Vulnerability,
                                 VulnerableSoftware)


class TestIdentifier(unittest.TestCase):
    def test_from_cpe(self):
        identifier = Identifier.from_cpe("cpe:/a:apache:struts:2.3.16")
        self.assertEqual(identifier.kind, IdentifierType.CPE)
        self.assertEqual(identifier.value, "cpe:2.3:a:apache:struts:2.3.16:*:*:*:*:*:*:*")
        self.assertEqual(identifier.cpe, Cpe("a", "apache", "struts", "2.3.16"))
        self.assertIsNone(identifier.purl)

    def test_from_purl_and_gav(self):
        identifier = Identifier.from_purl("pkg:maven/org.apache.struts/struts2-core@2.3.16")
        self.assertEqual(identifier.to_gav(), "org.apache.struts:struts2-core:2.3.16")
        self.assertIsNone(Identifier.from_purl("pkg:npm/lodash").to_gav())
        self.assertIsNone(Identifier.from_cpe("cpe:/a:apache:struts").to_gav())

    def test_ordering(self):
        low = Identifier.generic("b", confidence=Confidence.LOW)
        high = Identifier.generic("b", confidence=Confidence.HIGHEST)
        first = Identifier.generic("a", confidence=Confidence.LOW)
        self.assertEqual(sorted([low, high, first]), [first, high, low])

    def test_equality_includes_notes(self):
        identifier = Identifier.from_cpe("cpe:/a:apache:struts:2.3.16")
        self.assertNotEqual(identifier, identifier.with_notes("checked"))
        self.assertEqual(identifier.with_notes("checked").notes, "checked")


class TestVulnerableSoftware(unittest.TestCase):
    def test_conflicting_bounds(self):
        with self.assertRaises(ValueError):
            VulnerableSoftware.parse("cpe:2.3:a:x:y:*:*:*:*:*:*:*:*", version_start_including="1",
                                     version_start_excluding="1")
        with self.assertRaises(ValueError):
            VulnerableSoftware.parse("cpe:2.3:a:x:y:*:*:*:*:*:*:*:*", version_end_including="2",
                                     version_end_excluding="2")

    def test_str(self):
        software = VulnerableSoftware.parse("cpe:2.3:a:x:y:*:*:*:*:*:*:*:*", version_start_including="1.0",
                                            version_end_excluding="2.0")
        self.assertEqual(str(software), "cpe:2.3:a:x:y:*:*:*:*:*:*:*:* (>=1.0, <2.0)")
        self.assertEqual(software.bound_count, 2)
        self.assertTrue(software.has_range)


class TestVulnerability(unittest.TestCase):
    def test_severity(self):
        cases = [(None, "UNKNOWN"), (0.0, "NONE"), (3.9, "LOW"), (4.0, "MEDIUM"), (7.0, "HIGH"), (9.0, "CRITICAL")]
        for score, severity in cases:
            with self.subTest(score=score):
                self.assertEqual(Vulnerability("CVE-1", "x", cvss_score=score).severity, severity)


class TestDependency(unittest.TestCase):
    def test_suppression_moves_entries(self):
        dep = Dependency(file_path="C:\\libs\\struts2-core.jar")
        identifier = Identifier.from_cpe("cpe:/a:apache:struts:2.3.16")
        dep.add_identifier(identifier)
        dep.add_identifier(Identifier.from_purl("pkg:maven/org.apache.struts/struts2-core@2.3.16"))
        dep.suppress_identifier(identifier, "reviewed")
        self.assertEqual(dep.cpe_identifiers(), [])
        self.assertEqual([i.notes for i in dep.suppressed_identifiers], ["reviewed"])
        self.assertEqual(dep.gavs(), ["org.apache.struts:struts2-core:2.3.16"])
        self.assertEqual(dep.file_name, "struts2-core.jar")


class TestCwe(unittest.TestCase):
    def test_normalize(self):
        for value in ("79", "cwe-79", "CWE-79", " Cwe-79 "):
            with self.subTest(value=value):
                self.assertEqual(normalize_cwe(value), "CWE-79")
        self.assertEqual(normalize_cwe("NVD-CWE-Other"), "NVD-CWE-Other")

    def test_names(self):
        self.assertEqual(get_cwe_name("20"), "Improper Input Validation")
        self.assertIsNone(get_cwe_name("CWE-999999"))
        self.assertEqual(describe_cwe("CWE-999999"), "CWE-999999")
        self.assertEqual(describe_cwe("cwe-20"), "CWE-20 Improper Input Validation")


class TestExceptionCollection(unittest.TestCase):
    def test_flattens_and_tracks_fatal(self):
        inner = ExceptionCollection([FeedParseError("bad item")], fatal=True)
        outer = ExceptionCollection(message="Update failed")
        outer.add_exception(UpdateError("feed 2014"))
        outer.add_exception(inner)
        self.assertEqual(len(outer), 2)
        self.assertTrue(outer.fatal)
        self.assertIn("FeedParseError: bad item", str(outer))
        self.assertTrue(str(outer).startswith("Update failed"))

    def test_empty_collection_is_truthy(self):
        self.assertTrue(ExceptionCollection())
        self.assertFalse(ExceptionCollection().fatal)


if __name__ == '__main__':
    unittest.main()
