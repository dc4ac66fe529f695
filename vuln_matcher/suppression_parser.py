# vuln_matcher/suppression_parser.py
import logging
import re
from datetime import date
from functools import lru_cache
from pathlib import Path

from lxml import etree as ET

from .errors import SuppressionParseError, SuppressionSchemaError
from .suppression import MatchPattern, SuppressionRule

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schema"

SUPPRESSION_NS_1_3 = "https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.3.xsd"
SUPPRESSION_NS_1_1 = "https://jeremylong.github.io/DependencyCheck/dependency-suppression.1.1.xsd"

CURRENT_SCHEMA = (SUPPRESSION_NS_1_3, "dependency-suppression.1.3.xsd")
LEGACY_SCHEMA = (SUPPRESSION_NS_1_1, "dependency-suppression.1.1.xsd")


@lru_cache(maxsize=None)
def _load_schema(file_name: str) -> ET.XMLSchema:
    return ET.XMLSchema(ET.parse(str(SCHEMA_DIR / file_name)))


def _secure_parser() -> ET.XMLParser:
    return ET.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)


def _bool_attr(element, name: str, default: bool = False) -> bool:
    value = element.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1")


def _text(element) -> str:
    return (element.text or "").strip()


def _pattern(element) -> MatchPattern:
    pattern = MatchPattern(_text(element), regex=_bool_attr(element, "regex"),
                           case_sensitive=_bool_attr(element, "caseSensitive"))
    if pattern.regex:
        try:
            re.compile(pattern.value)
        except re.error as e:
            raise SuppressionParseError(f"Invalid regular expression '{pattern.value}': {e}") from e
    return pattern


def _parse_until(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as e:
        raise SuppressionParseError(f"Invalid 'until' date '{value}'") from e


def _parse_rule(element, ns: str) -> SuppressionRule:
    def q(name):
        return f"{{{ns}}}{name}"

    values = {"cpe": [], "cvss_below": [], "cwe": set(), "cve": set(), "vulnerability_names": []}
    for child in element:
        tag = child.tag
        if tag == q("notes"):
            values["notes"] = _text(child)
        elif tag == q("filePath"):
            values["file_path"] = _pattern(child)
        elif tag == q("sha1"):
            values["sha1"] = _text(child)
        elif tag == q("gav"):
            values["gav"] = _pattern(child)
        elif tag == q("packageUrl"):
            values["package_url"] = _pattern(child)
        elif tag == q("cpe"):
            values["cpe"].append(_pattern(child))
        elif tag == q("cve"):
            values["cve"].add(_text(child))
        elif tag == q("vulnerabilityName"):
            values["vulnerability_names"].append(_pattern(child))
        elif tag == q("cwe"):
            values["cwe"].add(_text(child))
        elif tag == q("cvssBelow"):
            values["cvss_below"].append(float(_text(child)))
    return SuppressionRule(
        file_path=values.get("file_path"),
        sha1=values.get("sha1"),
        gav=values.get("gav"),
        package_url=values.get("package_url"),
        cpe=tuple(values["cpe"]),
        cvss_below=tuple(values["cvss_below"]),
        cwe=frozenset(values["cwe"]),
        cve=frozenset(values["cve"]),
        vulnerability_names=tuple(values["vulnerability_names"]),
        notes=values.get("notes"),
        until=_parse_until(element.get("until")),
        base=_bool_attr(element, "base"),
    )


def _validate(doc, schema_file: str) -> str | None:
    """Returns None when valid, otherwise the first schema error."""
    schema = _load_schema(schema_file)
    try:
        if schema.validate(doc):
            return None
    except ET.XMLSchemaValidateError as e:
        # lxml raises instead of reporting for content it cannot validate, such as unexpanded entities
        return str(e)
    error = schema.error_log.last_error
    return f"line {error.line}: {error.message}" if error else "schema validation failed"


def parse_suppression_rules(source, today: date | None = None) -> list[SuppressionRule]:
    """Parses and validates a suppression file (path, bytes or file object).

    The document must validate against the current schema. A document in the
    legacy namespace that fails that validation is retried once against the
    legacy schema. Either the whole file loads or SuppressionParseError is raised.
    Rules whose ``until`` date has passed are dropped.
    """
    try:
        if isinstance(source, (bytes, bytearray)):
            doc = ET.ElementTree(ET.fromstring(bytes(source), parser=_secure_parser()))
        else:
            doc = ET.parse(str(source) if isinstance(source, Path) else source, parser=_secure_parser())
    except ET.XMLSyntaxError as e:
        raise SuppressionParseError(f"Malformed suppression file: {e}") from e
    except OSError as e:
        raise SuppressionParseError(f"Unable to read suppression file {source}: {e}") from e

    root = doc.getroot()
    ns = ET.QName(root).namespace
    error = _validate(doc, CURRENT_SCHEMA[1])
    if error is not None:
        if ns == LEGACY_SCHEMA[0]:
            logger.debug(f"Suppression file is not {CURRENT_SCHEMA[0]}; retrying against the legacy schema")
            legacy_error = _validate(doc, LEGACY_SCHEMA[1])
            if legacy_error is not None:
                raise SuppressionSchemaError(f"Invalid suppression file: {legacy_error}")
        else:
            raise SuppressionSchemaError(f"Invalid suppression file: {error}")

    today = today or date.today()
    rules = []
    for element in root.iterfind(f"{{{ns}}}suppress"):
        rule = _parse_rule(element, ns)
        if rule.is_expired(today):
            logger.info(f"Suppression rule has expired (until {rule.until}) and will be ignored: {rule}")
            continue
        rules.append(rule)
    logger.debug(f"Loaded {len(rules)} suppression rules")
    return rules


def load_suppression_files(paths) -> list[SuppressionRule]:
    rules = []
    for path in paths:
        rules.extend(parse_suppression_rules(Path(path)))
    return rules
