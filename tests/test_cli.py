import json
import sys
import tempfile
import unittest
from unittest import mock
from pathlib import Path

from click.testing import CliRunner

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from feed_fixtures import struts_item, write_feed
from vulnmatch import cli

SUPPRESSION = """<?xml version="1.0" encoding="UTF-8"?>
<suppressions xmlns="https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.3.xsd">
    <suppress>
        <notes>reviewed</notes>
        <cve>CVE-2014-0094</cve>
    </suppress>
</suppressions>
"""


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.data_dir = self.dir / "data"
        self.runner = CliRunner()

    def tearDown(self):
        self.tmp.cleanup()

    def invoke(self, *args):
        return self.runner.invoke(cli, ["--config", str(self.dir / "none.yaml"), "--data-dir", str(self.data_dir),
                                        *args])

    def load_struts_feed(self):
        feed = write_feed(self.dir / "nvdcve-2.0-2014.json.gz", [struts_item()])
        return self.invoke("update", "--feed", f"2014={feed.as_uri()}")

    def test_info_before_update(self):
        result = self.invoke("info")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("The database has not been created yet.", result.output)

    def test_update_then_check(self):
        result = self.load_struts_feed()
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("2014: 1 records stored, 0 failed", result.output)

        result = self.invoke("check", "cpe:2.3:a:apache:struts:2.3.16:*:*:*:*:*:*:*")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("CVE-2014-0094", result.output)
        self.assertIn("MEDIUM", result.output)

        result = self.invoke("check", "cpe:/a:apache:struts:2.3.16.2")
        self.assertIn("No vulnerabilities found.", result.output)

        result = self.invoke("info")
        self.assertIn("nvd.lastchecked", result.output)

    def test_check_json_with_suppression(self):
        self.load_struts_feed()
        rules = self.dir / "suppress.xml"
        rules.write_text(SUPPRESSION)
        result = self.runner.invoke(cli, ["--config", str(self.dir / "none.yaml"), "--data-dir", str(self.data_dir),
                                          "check", "--format", "json", "--suppression", str(rules),
                                          "cpe:/a:apache:struts:2.3.16"])
        self.assertEqual(result.exit_code, 0, result.output)
        report = json.loads(result.stdout[result.stdout.index('{\n  "dependency"'):])
        self.assertEqual(report["vulnerabilities"], [])
        self.assertEqual(report["suppressedVulnerabilities"], ["CVE-2014-0094"])

    def test_update_failure_exit_code(self):
        result = self.invoke("update", "--feed", f"2014={(self.dir / 'missing.json.gz').as_uri()}")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("One or more NVD feeds failed to update", result.output)

    def test_update_interrupted_exit_code(self):
        feed = write_feed(self.dir / "nvdcve-2.0-2014.json.gz", [struts_item()])
        with mock.patch("vulnmatch.UpdatePipeline.run", side_effect=KeyboardInterrupt):
            result = self.invoke("update", "--feed", f"2014={feed.as_uri()}")
        self.assertEqual(result.exit_code, 130)
        self.assertIn("Update interrupted.", result.output)

    def test_invalid_feed_option(self):
        result = self.invoke("update", "--feed", "no-url")
        self.assertNotEqual(result.exit_code, 0)

    def test_invalid_cpe(self):
        result = self.invoke("check", "not-a-cpe")
        self.assertEqual(result.exit_code, 1)

    def test_purge(self):
        self.load_struts_feed()
        result = self.invoke("purge", "--yes")
        self.assertEqual(result.exit_code, 0)
        self.assertFalse((self.data_dir / "vuln_matcher.sqlite").exists())
        self.assertIn("Nothing to purge", self.invoke("purge", "--yes").output)


if __name__ == '__main__':
    unittest.main()
