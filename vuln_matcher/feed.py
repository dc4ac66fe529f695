# vuln_matcher/feed.py
"""Streaming access to NVD CVE JSON feed documents and conversion of feed items to records."""
import gzip
import io
import json
import logging
from pathlib import Path

from cvss import CVSS2, CVSS3
from cvss.exceptions import CVSSError

from .cpe import CpeParseError
from .errors import FeedParseError
from .models import Reference, Vulnerability, VulnerableSoftware

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_WHITESPACE = " \t\n\r"
_DECODER = json.JSONDecoder()
_TRUNCATION_WINDOW = 64


class _EmptyFeed(Exception):
    """Raised internally when no item array can be located."""


class JsonArrayItemSource:
    """Lazy, forward-only iterator over the items of a JSON feed document.

    The document is either a bare array of items or an object holding the items
    in ``array_field``. The first item is read on construction so ``has_next()``
    is accurate. A document whose array cannot be found is treated as empty; a
    malformed item raises FeedParseError from ``next()``.
    """

    def __init__(self, stream, array_field: str = "vulnerabilities", name: str | None = None):
        self._stream = stream
        self._reader = io.TextIOWrapper(stream, encoding="utf-8")
        self._array_field = array_field
        self.name = name or getattr(stream, "name", "<stream>")
        self._buf = ""
        self._pos = 0
        self._eof = False
        self._closed = False
        self._done = False
        self._next_item = None
        self._pending_error: FeedParseError | None = None
        self.items_read = 0
        try:
            self._locate_array()
        except _EmptyFeed as e:
            logger.debug(f"No item array found in {self.name}: {e}")
            self._done = True
        except (EOFError, UnicodeDecodeError, OSError) as e:
            logger.warning(f"Unreadable feed document {self.name}: {e}")
            self._done = True
        if not self._done:
            self._prime()

    # --- Buffer handling ---
    def _fill(self) -> bool:
        if self._eof:
            return False
        if self._pos > CHUNK_SIZE:
            self._buf = self._buf[self._pos:]
            self._pos = 0
        chunk = self._reader.read(CHUNK_SIZE)
        if not chunk:
            self._eof = True
            return False
        self._buf += chunk
        return True

    def _peek(self) -> str | None:
        while True:
            while self._pos < len(self._buf) and self._buf[self._pos] in _WHITESPACE:
                self._pos += 1
            if self._pos < len(self._buf):
                return self._buf[self._pos]
            if not self._fill():
                return None

    def _decode_value(self):
        """Decodes one JSON value at the current position, reading more input as needed."""
        if self._peek() is None:
            raise FeedParseError(f"Unexpected end of {self.name}")
        while True:
            try:
                value, end = _DECODER.raw_decode(self._buf, self._pos)
            except json.JSONDecodeError as e:
                # only an error at the end of the buffer can be cured by more input
                if self._may_be_truncated(e) and self._fill():
                    continue
                raise FeedParseError(f"Malformed JSON in {self.name}: {e}") from e
            # a number at the end of the buffer may have been cut short
            if end == len(self._buf) and not self._eof and not isinstance(value, (dict, list, str)):
                if self._fill():
                    continue
            self._pos = end
            return value

    def _may_be_truncated(self, error: json.JSONDecodeError) -> bool:
        if error.msg.startswith("Unterminated string"):
            return True
        return len(self._buf) - error.pos < _TRUNCATION_WINDOW

    # --- Structure ---
    def _locate_array(self) -> None:
        first = self._peek()
        if first == "[":
            self._pos += 1
            return
        if first != "{":
            raise _EmptyFeed(f"unexpected token {first!r} at document start")
        self._pos += 1
        while True:
            token = self._peek()
            if token == "}" or token is None:
                raise _EmptyFeed(f"field '{self._array_field}' not present")
            if token != '"':
                raise _EmptyFeed(f"unexpected token {token!r} where a field name was expected")
            try:
                key = self._decode_value()
            except FeedParseError as e:
                raise _EmptyFeed(str(e)) from e
            if self._peek() != ":":
                raise _EmptyFeed(f"expected ':' after field '{key}'")
            self._pos += 1
            if key == self._array_field:
                if self._peek() != "[":
                    raise _EmptyFeed(f"field '{key}' is not an array")
                self._pos += 1
                return
            try:
                self._decode_value()
            except FeedParseError as e:
                raise _EmptyFeed(str(e)) from e
            token = self._peek()
            if token == ",":
                self._pos += 1
            elif token != "}":
                raise _EmptyFeed(f"unexpected token {token!r} after field '{key}'")

    def _prime(self) -> None:
        self._next_item = None
        try:
            token = self._peek()
            if token == "]" or token is None:
                if token is None:
                    logger.warning(f"Premature end of feed document {self.name}")
                self._done = True
                return
            item = self._decode_value()
            if not isinstance(item, dict):
                raise FeedParseError(f"Expected an object in {self.name}, found {type(item).__name__}")
            token = self._peek()
            if token == ",":
                self._pos += 1
            elif token != "]":
                raise FeedParseError(f"Unexpected token {token!r} after item {self.items_read + 1} in {self.name}")
            self._next_item = item
        except FeedParseError as e:
            self._pending_error = e
        except (EOFError, UnicodeDecodeError, OSError) as e:
            self._pending_error = FeedParseError(f"Error reading {self.name}: {e}")
            self._pending_error.__cause__ = e

    # --- Iterator protocol ---
    def has_next(self) -> bool:
        if self._closed:
            return False
        return self._pending_error is not None or self._next_item is not None

    def next(self) -> dict:
        if self._pending_error is not None:
            error, self._pending_error = self._pending_error, None
            self._done = True
            raise error
        if self._next_item is None:
            self.close()
            raise StopIteration
        item = self._next_item
        self.items_read += 1
        if self._done:
            self._next_item = None
        else:
            self._prime()
        return item

    __next__ = next

    def __iter__(self):
        return self

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._next_item = None
        self._pending_error = None
        try:
            self._reader.close()
        finally:
            self._stream.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def open_item_source(path: str | Path, array_field: str = "vulnerabilities") -> JsonArrayItemSource:
    """Opens a feed file, choosing decompression from its suffix (.jsonarray.gz, .gz or plain)."""
    path = Path(path)
    name = path.name.lower()
    if name.endswith(".jsonarray.gz"):
        logger.debug(f"Reading {path} as a gzip compressed bare JSON array")
        stream = gzip.open(path, "rb")
    elif name.endswith(".gz"):
        logger.debug(f"Reading {path} as a gzip compressed feed document")
        stream = gzip.open(path, "rb")
    else:
        stream = open(path, "rb")
    try:
        return JsonArrayItemSource(stream, array_field=array_field, name=str(path))
    except Exception:
        stream.close()
        raise


# --- Item conversion ---
REJECTED_PREFIXES = ("** REJECT **", "DO NOT USE THIS CANDIDATE NUMBER")


def is_rejected(description: str | None) -> bool:
    return bool(description) and description.startswith(REJECTED_PREFIXES)


def _english_description(cve: dict) -> str:
    return " ".join(d.get("value", "") for d in cve.get("descriptions", []) if d.get("lang") == "en")


def _cwes(cve: dict) -> tuple[str, ...]:
    cwes = []
    for weakness in cve.get("weaknesses", []) or []:
        for desc in weakness.get("description", []) or []:
            value = desc.get("value")
            if desc.get("lang", "en") == "en" and value and value not in cwes:
                cwes.append(value)
    return tuple(cwes)


def _score_from_vector(vector: str, version: str) -> float | None:
    try:
        if version == "2.0":
            return float(CVSS2(vector).scores()[0])
        return float(CVSS3(vector).scores()[0])
    except (CVSSError, ValueError) as e:
        logger.debug(f"Could not score CVSS vector '{vector}': {e}")
        return None


def _cvss(cve: dict) -> tuple[float | None, str | None, str | None]:
    metrics = cve.get("metrics", {}) or {}
    for key in ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2"):
        entries = metrics.get(key) or []
        if not entries:
            continue
        # prefer the primary (NVD) score over secondary sources
        entry = next((e for e in entries if e.get("type") == "Primary"), entries[0])
        data = entry.get("cvssData", {}) or {}
        vector = data.get("vectorString")
        version = data.get("version") or ("2.0" if key == "cvssMetricV2" else "3.1")
        score = data.get("baseScore")
        if score is None and vector:
            score = _score_from_vector(vector, version)
        return (float(score) if score is not None else None), vector, version
    return None, None, None


def _affected(cve: dict, cve_id: str) -> frozenset:
    software = set()
    for config in cve.get("configurations", []) or []:
        for node in config.get("nodes", []) or []:
            for match in node.get("cpeMatch", []) or []:
                criteria = match.get("criteria")
                if not criteria:
                    continue
                try:
                    software.add(VulnerableSoftware.parse(
                        criteria,
                        version_start_including=match.get("versionStartIncluding"),
                        version_start_excluding=match.get("versionStartExcluding"),
                        version_end_including=match.get("versionEndIncluding"),
                        version_end_excluding=match.get("versionEndExcluding"),
                        vulnerable=bool(match.get("vulnerable", True)),
                    ))
                except (CpeParseError, ValueError) as e:
                    raise FeedParseError(f"{cve_id}: invalid cpe match '{criteria}': {e}") from e
    return frozenset(software)


def parse_cve_item(item: dict) -> Vulnerability:
    """Converts one feed item (``{"cve": {...}}`` or the bare cve object) into a Vulnerability.

    Any item that does not have the shape of a CVE record raises FeedParseError.
    """
    if not isinstance(item, dict):
        raise FeedParseError(f"Feed item must be an object, got {type(item).__name__}")
    cve = item.get("cve", item)
    cve_id = cve.get("id") if isinstance(cve, dict) else None
    if not cve_id or not isinstance(cve_id, str):
        raise FeedParseError("Feed item has no CVE id")
    try:
        return _to_vulnerability(cve, cve_id)
    except (AttributeError, TypeError, ValueError) as e:
        raise FeedParseError(f"{cve_id}: malformed feed item: {e}") from e


def _to_vulnerability(cve: dict, cve_id: str) -> Vulnerability:
    score, vector, version = _cvss(cve)
    references = tuple(
        Reference(name=ref.get("url", ""), url=ref.get("url", ""), source=ref.get("source"))
        for ref in cve.get("references", []) or []
        if ref.get("url")
    )
    return Vulnerability(
        id=cve_id,
        description=_english_description(cve),
        cwes=_cwes(cve),
        cvss_score=score,
        cvss_vector=vector,
        cvss_version=version,
        references=references,
        affected=_affected(cve, cve_id),
        published=cve.get("published"),
        last_modified=cve.get("lastModified"),
    )


def matches_cpe_filter(item: dict, starts_with: str | None) -> bool:
    """True if any cpe match criteria of the item starts with the prefix (or no prefix is set)."""
    if not starts_with or not isinstance(item, dict):
        return True
    cve = item.get("cve", item)
    if not isinstance(cve, dict):
        return True
    try:
        for config in cve.get("configurations", []) or []:
            for node in config.get("nodes", []) or []:
                for match in node.get("cpeMatch", []) or []:
                    if (match.get("criteria") or "").startswith(starts_with):
                        return True
    except (AttributeError, TypeError) as e:
        raise FeedParseError(f"{cve.get('id')}: malformed configurations: {e}") from e
    return False
