import sys
import tempfile
import unittest
from unittest import mock
from datetime import date
from pathlib import Path

from lxml import etree as ET

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from vuln_matcher.errors import SuppressionParseError, SuppressionSchemaError
from vuln_matcher.suppression_parser import load_suppression_files, parse_suppression_rules

CURRENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<suppressions xmlns="https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.3.xsd">
    <!-- comments are ignored -->
    <suppress>
        <notes><![CDATA[ file name: struts2-core-2.3.16.jar ]]></notes>
        <packageUrl regex="true">^pkg:maven/org\\.apache\\.struts/struts2\\-core@.*$</packageUrl>
        <cve>CVE-2014-0094</cve>
        <cwe>79</cwe>
    </suppress>
    <suppress base="true">
        <cpe>cpe:/a:microsoft:.net_framework</cpe>
        <cpe regex="true" caseSensitive="true">cpe:/a:Apache:.*</cpe>
    </suppress>
    <suppress until="2023-06-01Z">
        <sha1>384ABCD0123456789ABCDEF0123456789ABCDEF0</sha1>
        <cvssBelow>7</cvssBelow>
    </suppress>
    <suppress until="2099-01-01">
        <filePath>/libs/a.jar</filePath>
        <vulnerabilityName regex="true">CVE-2017-.*</vulnerabilityName>
    </suppress>
</suppressions>
"""

LEGACY = b"""<?xml version="1.0" encoding="UTF-8"?>
<suppressions xmlns="https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.1.xsd">
    <suppress>
        <gav regex="true">org\\.apache\\.struts:.*</gav>
        <cwe>200</cwe>
        <cvssBelow>5.5</cvssBelow>
    </suppress>
</suppressions>
"""


class TestParseSuppressionRules(unittest.TestCase):
    def test_current_schema(self):
        rules = parse_suppression_rules(CURRENT, today=date(2024, 1, 1))
        self.assertEqual(len(rules), 3)
        first, second, third = rules
        self.assertEqual(first.notes, "file name: struts2-core-2.3.16.jar")
        self.assertTrue(first.package_url.regex)
        self.assertEqual(first.cve, frozenset({"CVE-2014-0094"}))
        self.assertEqual(first.cwe, frozenset({"CWE-79"}))
        self.assertFalse(first.base)

        self.assertTrue(second.base)
        self.assertEqual([p.value for p in second.cpe], ["cpe:/a:microsoft:.net_framework", "cpe:/a:Apache:.*"])
        self.assertFalse(second.cpe[0].regex)
        self.assertTrue(second.cpe[1].regex and second.cpe[1].case_sensitive)

        self.assertEqual(third.until, date(2099, 1, 1))
        self.assertEqual(third.file_path.value, "/libs/a.jar")

    def test_expired_rules_are_dropped(self):
        with self.assertLogs("vuln_matcher.suppression_parser", level="INFO") as logs:
            rules = parse_suppression_rules(CURRENT, today=date(2024, 1, 1))
        self.assertNotIn(date(2023, 6, 1), [r.until for r in rules])
        self.assertTrue(any("expired" in line for line in logs.output))
        self.assertEqual(len(parse_suppression_rules(CURRENT, today=date(2023, 5, 1))), 4)

    def test_legacy_schema(self):
        (rule,) = parse_suppression_rules(LEGACY)
        self.assertEqual(rule.gav.value, r"org\.apache\.struts:.*")
        self.assertEqual(rule.cwe, frozenset({"CWE-200"}))
        self.assertEqual(rule.cvss_below, (5.5,))

    def test_schema_violation(self):
        invalid = CURRENT.replace(b"<cwe>79</cwe>", b"<cwe>not-a-cwe</cwe>")
        with self.assertRaises(SuppressionSchemaError):
            parse_suppression_rules(invalid)

    def test_rule_without_criteria_is_invalid(self):
        doc = CURRENT.replace(b"<cvssBelow>7</cvssBelow>", b"")
        with self.assertRaises(SuppressionSchemaError):
            parse_suppression_rules(doc)

    def test_legacy_violation(self):
        invalid = LEGACY.replace(b"<cwe>200</cwe>", b"<cwe>CWE-200</cwe>")
        with self.assertRaises(SuppressionSchemaError):
            parse_suppression_rules(invalid)

    def test_unknown_namespace(self):
        doc = CURRENT.replace(b"dependency-suppression.1.3.xsd", b"dependency-suppression.9.9.xsd")
        with self.assertRaises(SuppressionSchemaError):
            parse_suppression_rules(doc)

    def test_malformed_xml(self):
        with self.assertRaises(SuppressionParseError):
            parse_suppression_rules(b"<suppressions><suppress>")

    def test_invalid_regex(self):
        doc = CURRENT.replace(b"CVE-2017-.*", b"CVE-(2017")
        with self.assertRaises(SuppressionParseError):
            parse_suppression_rules(doc, today=date(2024, 1, 1))

    def test_external_entities_are_not_resolved(self):
        doc = b"""<?xml version="1.0"?>
<!DOCTYPE suppressions [<!ENTITY xxe SYSTEM "file:///etc/passwd">]>
<suppressions xmlns="https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.3.xsd">
    <suppress><notes>&xxe;</notes><cve>CVE-2014-0094</cve></suppress>
</suppressions>
"""
        # depending on the libxml2 build the entity is either rejected or left unexpanded
        try:
            rules = parse_suppression_rules(doc)
        except SuppressionParseError as e:
            self.assertNotIn("root:", str(e))
            return
        for rule in rules:
            self.assertNotIn("root:", rule.notes or "")

    def test_validator_failure_is_a_schema_error(self):
        schema = mock.Mock()
        schema.validate.side_effect = ET.XMLSchemaValidateError("Internal error: entity reference in the node-tree")
        with mock.patch("vuln_matcher.suppression_parser._load_schema", return_value=schema):
            with self.assertRaises(SuppressionSchemaError) as ctx:
                parse_suppression_rules(CURRENT)
        self.assertIn("entity reference", str(ctx.exception))


class TestLoadSuppressionFiles(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_multiple_files(self):
        (self.dir / "legacy.xml").write_bytes(LEGACY)
        (self.dir / "current.xml").write_bytes(CURRENT)
        rules = load_suppression_files([self.dir / "legacy.xml", str(self.dir / "current.xml")])
        self.assertEqual(len(rules), 4)
        self.assertIsNotNone(rules[0].gav)

    def test_missing_file(self):
        with self.assertRaises(SuppressionParseError):
            load_suppression_files([self.dir / "missing.xml"])


if __name__ == '__main__':
    unittest.main()
