import gzip
import io
import json
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from feed_fixtures import STRUTS_DESCRIPTION, cpe_match, feed_document, make_item, struts_item, write_feed
from vuln_matcher.errors import FeedParseError
from vuln_matcher.feed import (JsonArrayItemSource, is_rejected, matches_cpe_filter, open_item_source,
                               parse_cve_item)


def source_for(document) -> JsonArrayItemSource:
    data = document if isinstance(document, bytes) else json.dumps(document).encode("utf-8")
    return JsonArrayItemSource(io.BytesIO(data))


class TestJsonArrayItemSource(unittest.TestCase):
    def test_wrapped_document(self):
        items = [make_item("CVE-2020-0001"), make_item("CVE-2020-0002")]
        with source_for(feed_document(items)) as source:
            ids = [item["cve"]["id"] for item in source]
        self.assertEqual(ids, ["CVE-2020-0001", "CVE-2020-0002"])

    def test_bare_array(self):
        with source_for([make_item("CVE-2020-0001")]) as source:
            self.assertTrue(source.has_next())
            self.assertEqual(source.next()["cve"]["id"], "CVE-2020-0001")
            self.assertFalse(source.has_next())
            with self.assertRaises(StopIteration):
                source.next()

    def test_array_field_after_other_fields(self):
        document = {"format": "NVD_CVE", "nested": {"a": [1, 2, {"b": "]"}]}, "vulnerabilities": [make_item("CVE-1")]}
        with source_for(document) as source:
            self.assertEqual(len(list(source)), 1)

    def test_pretty_printed_document(self):
        items = [make_item("CVE-2020-0001"), make_item("CVE-2020-0002")]
        data = json.dumps(feed_document(items), indent=2).encode("utf-8")
        with source_for(data) as source:
            ids = [item["cve"]["id"] for item in source]
        self.assertEqual(ids, ["CVE-2020-0001", "CVE-2020-0002"])

    def test_whitespace_around_separators(self):
        data = b'{ "format" :\n  "NVD_CVE" ,\n "nested" : { "a" : 1 } ,\r\n\t"vulnerabilities" :  [ {"cve": {"id": "CVE-1"}} ] }'
        with source_for(data) as source:
            self.assertEqual([item["cve"]["id"] for item in source], ["CVE-1"])

    def test_custom_array_field(self):
        data = json.dumps({"CVE_Items": [make_item("CVE-1")]}).encode("utf-8")
        with JsonArrayItemSource(io.BytesIO(data), array_field="CVE_Items") as source:
            self.assertEqual(len(list(source)), 1)

    def test_items_spanning_buffer_boundaries(self):
        items = [make_item(f"CVE-2021-{i:05d}", description="x" * 200) for i in range(1500)]
        with source_for(feed_document(items)) as source:
            ids = [item["cve"]["id"] for item in source]
        self.assertEqual(len(ids), 1500)
        self.assertEqual(ids[-1], "CVE-2021-01499")

    def test_malformed_prelude_is_empty(self):
        for data in (b"", b"   ", b'"just a string"', b'{"foo": 1}', b'{"vulnerabilities": ',
                     b'{"vulnerabilities": {}}', b"{'single': 'quotes'}", b'{"vulnerabilities": []}', b"[]"):
            with self.subTest(data=data):
                source = source_for(data)
                self.assertFalse(source.has_next())
                self.assertEqual(list(source), [])

    def test_malformed_item_raises_from_next(self):
        data = b'[{"cve": {"id": "CVE-1"}}, {"cve": {"id": ]'
        source = source_for(data)
        self.assertEqual(source.next()["cve"]["id"], "CVE-1")
        self.assertTrue(source.has_next())
        with self.assertRaises(FeedParseError):
            source.next()
        source.close()

    def test_malformed_item_fails_without_reading_the_rest(self):
        good = json.dumps(make_item("CVE-2021-00001", description="z" * 500)).encode("utf-8")
        data = b'[{"cve": {"id": ]}, ' + b", ".join([good] * 4000) + b"]"
        stream = io.BytesIO(data)
        source = JsonArrayItemSource(stream)
        self.assertLess(stream.tell(), len(data) // 2)
        self.assertTrue(source.has_next())
        with self.assertRaises(FeedParseError):
            source.next()
        source.close()

    def test_malformed_first_item_does_not_fail_construction(self):
        source = source_for(b'[{"cve": ')
        self.assertTrue(source.has_next())
        with self.assertRaises(FeedParseError):
            next(source)

    def test_non_object_item(self):
        source = source_for(b"[1, 2]")
        with self.assertRaises(FeedParseError):
            source.next()

    def test_close_is_idempotent_and_releases_stream(self):
        stream = io.BytesIO(json.dumps([make_item("CVE-1")]).encode("utf-8"))
        source = JsonArrayItemSource(stream)
        source.close()
        source.close()
        self.assertTrue(stream.closed)
        self.assertFalse(source.has_next())


class TestOpenItemSource(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_suffix_selection(self):
        items = [make_item("CVE-1"), make_item("CVE-2")]
        cases = [
            write_feed(self.dir / "nvdcve-2.0-2020.json.gz", items),
            write_feed(self.dir / "nvdcve-2020.jsonarray.gz", items, bare_array=True),
            write_feed(self.dir / "nvdcve-2.0-2020.json", items),
        ]
        for path in cases:
            with self.subTest(path=path.name):
                with open_item_source(path) as source:
                    self.assertEqual([i["cve"]["id"] for i in source], ["CVE-1", "CVE-2"])

    def test_truncated_gzip_fails_mid_feed(self):
        path = self.dir / "broken.json.gz"
        items = [make_item(f"CVE-2021-{i:05d}", description="y" * 100) for i in range(2000)]
        data = gzip.compress(json.dumps(feed_document(items)).encode("utf-8"))
        path.write_bytes(data[: len(data) * 3 // 4])
        with open_item_source(path) as source:
            with self.assertRaises(FeedParseError):
                list(source)

    def test_truncated_gzip_prelude_is_empty(self):
        path = self.dir / "tiny.json.gz"
        data = gzip.compress(json.dumps(feed_document([make_item("CVE-1")])).encode("utf-8"))
        path.write_bytes(data[:20])
        with open_item_source(path) as source:
            self.assertFalse(source.has_next())


class TestParseCveItem(unittest.TestCase):
    def test_struts_item(self):
        vuln = parse_cve_item(struts_item())
        self.assertEqual(vuln.id, "CVE-2014-0094")
        self.assertEqual(vuln.description, STRUTS_DESCRIPTION)
        self.assertEqual(vuln.cvss_score, 5.0)
        self.assertEqual(vuln.cwes, ("CWE-20",))
        self.assertEqual(len(vuln.references), 1)
        self.assertEqual(vuln.references[0].url, "http://www.securityfocus.com/bid/65999")
        (software,) = vuln.affected
        self.assertEqual(software.cpe.product, "struts")
        self.assertEqual(software.version_start_including, "2.0.0")
        self.assertEqual(software.version_end_excluding, "2.3.16.2")
        self.assertTrue(software.vulnerable)

    def test_english_descriptions_are_joined(self):
        item = make_item("CVE-1")
        item["cve"]["descriptions"].append({"lang": "en", "value": "Second part."})
        self.assertEqual(parse_cve_item(item).description, "A test vulnerability. Second part.")

    def test_score_computed_from_vector(self):
        item = make_item("CVE-1", score=None, vector="CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H")
        vuln = parse_cve_item(item)
        self.assertEqual(vuln.cvss_score, 9.8)
        self.assertEqual(vuln.severity, "CRITICAL")

    def test_no_metrics(self):
        vuln = parse_cve_item(make_item("CVE-1", score=None, vector=None))
        self.assertIsNone(vuln.cvss_score)
        self.assertEqual(vuln.severity, "UNKNOWN")

    def test_bare_cve_object(self):
        self.assertEqual(parse_cve_item(make_item("CVE-1")["cve"]).id, "CVE-1")

    def test_missing_id(self):
        with self.assertRaises(FeedParseError):
            parse_cve_item({"cve": {"descriptions": []}})

    def test_wrong_shape_items(self):
        broken_descriptions = make_item("CVE-1")
        broken_descriptions["cve"]["descriptions"] = "oops"
        broken_configurations = make_item("CVE-2")
        broken_configurations["cve"]["configurations"] = 5
        broken_score = make_item("CVE-3", score="n/a")
        non_string_id = {"cve": {"id": ["CVE-4"]}}
        for item in (broken_descriptions, broken_configurations, broken_score, non_string_id):
            with self.subTest(item=item["cve"]["id"]):
                with self.assertRaises(FeedParseError):
                    parse_cve_item(item)

    def test_cpe_filter_wrong_shape(self):
        item = make_item("CVE-1")
        item["cve"]["configurations"] = [{"nodes": ["not-a-node"]}]
        with self.assertRaises(FeedParseError):
            matches_cpe_filter(item, "cpe:2.3:a:")

    def test_invalid_cpe_criteria(self):
        item = make_item("CVE-1", matches=[cpe_match("cpe:2.3:a:broken")])
        with self.assertRaises(FeedParseError):
            parse_cve_item(item)

    def test_rejected(self):
        self.assertTrue(is_rejected("** REJECT ** DO NOT USE THIS CANDIDATE NUMBER."))
        self.assertTrue(is_rejected("DO NOT USE THIS CANDIDATE NUMBER. ConsultIDs: CVE-2017-0001."))
        self.assertFalse(is_rejected("A real vulnerability."))
        self.assertFalse(is_rejected(None))

    def test_cpe_filter(self):
        item = make_item("CVE-1", matches=[cpe_match("cpe:2.3:o:linux:linux_kernel:*:*:*:*:*:*:*:*")])
        self.assertFalse(matches_cpe_filter(item, "cpe:2.3:a:"))
        self.assertTrue(matches_cpe_filter(item, None))
        self.assertTrue(matches_cpe_filter(struts_item(), "cpe:2.3:a:"))


if __name__ == '__main__':
    unittest.main()
