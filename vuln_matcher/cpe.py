# vuln_matcher/cpe.py
"""Structured CPE values: parsing and binding of CPE 2.3 formatted strings and CPE 2.2 URIs."""
import re
from dataclasses import dataclass, fields
from urllib.parse import unquote

ANY = "*"
NA = "-"

CPE23_PREFIX = "cpe:2.3:"
CPE22_PREFIX = "cpe:/"

PARTS = ("a", "o", "h")

# Characters left as-is when binding a component to the 2.2 URI form
_URI_SAFE = re.compile(r"[A-Za-z0-9_.\-]")


class CpeParseError(ValueError):
    pass


def _split_escaped(value: str) -> list[str]:
    """Splits a formatted string on colons that are not backslash-escaped."""
    parts = []
    current = []
    escaped = False
    for ch in value:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            current.append(ch)
            escaped = True
        elif ch == ":":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    if escaped:
        raise CpeParseError(f"Dangling escape character in '{value}'")
    parts.append("".join(current))
    return parts


def unescape(component: str) -> str:
    """Removes formatted-string quoting, e.g. ``node\\.js`` -> ``node.js``."""
    return re.sub(r"\\(.)", r"\1", component)


def escape(component: str) -> str:
    """Quotes characters that may not appear unescaped in a formatted string component."""
    if component in (ANY, NA):
        return component
    return re.sub(r"([^A-Za-z0-9_.\-*?])", r"\\\1", component)


def _bind_uri_component(component: str) -> str:
    if component == ANY:
        return ""
    if component == NA:
        return NA
    out = []
    i = 0
    while i < len(component):
        ch = component[i]
        if ch == "\\" and i + 1 < len(component):
            nxt = component[i + 1]
            out.append(nxt if _URI_SAFE.match(nxt) else f"%{ord(nxt):02x}")
            i += 2
            continue
        if ch == "?":
            out.append("%01")
        elif ch == "*":
            out.append("%02")
        elif _URI_SAFE.match(ch):
            out.append(ch)
        else:
            out.append(f"%{ord(ch):02x}")
        i += 1
    return "".join(out)


def _unbind_uri_component(component: str) -> str:
    if component == "":
        return ANY
    if component == NA:
        return NA
    return escape(unquote(component.replace("%01", "?").replace("%02", "*")))


@dataclass(frozen=True)
class Cpe:
    """A CPE with every component held in formatted-string (escaped) form."""

    part: str
    vendor: str
    product: str
    version: str = ANY
    update: str = ANY
    edition: str = ANY
    language: str = ANY
    sw_edition: str = ANY
    target_sw: str = ANY
    target_hw: str = ANY
    other: str = ANY

    def __post_init__(self):
        if self.part not in PARTS and self.part != ANY:
            raise CpeParseError(f"Invalid CPE part '{self.part}'")
        for f in fields(self):
            if getattr(self, f.name) in (None, ""):
                object.__setattr__(self, f.name, ANY)

    @classmethod
    def parse(cls, value: str) -> "Cpe":
        """Parses either a CPE 2.3 formatted string or a CPE 2.2 URI."""
        if value is None:
            raise CpeParseError("CPE value is None")
        value = value.strip()
        if value.lower().startswith(CPE23_PREFIX):
            return cls._parse_formatted_string(value)
        if value.lower().startswith(CPE22_PREFIX):
            return cls._parse_uri(value)
        raise CpeParseError(f"Not a CPE identifier: '{value}'")

    @classmethod
    def _parse_formatted_string(cls, value: str) -> "Cpe":
        parts = _split_escaped(value)
        components = parts[2:]
        if len(components) < 3:
            raise CpeParseError(f"CPE '{value}' must contain at least part, vendor and product")
        if len(components) > 11:
            raise CpeParseError(f"CPE '{value}' has too many components")
        return cls(*components)

    @classmethod
    def _parse_uri(cls, value: str) -> "Cpe":
        body = value[len(CPE22_PREFIX):]
        components = body.split(":")
        if len(components) > 7:
            raise CpeParseError(f"CPE URI '{value}' has too many components")
        components += [""] * (7 - len(components))
        part, vendor, product, version, update, edition, language = components
        if not part or not vendor:
            raise CpeParseError(f"CPE URI '{value}' must contain part and vendor")
        sw_edition = target_sw = target_hw = other = ""
        if edition.startswith("~"):
            packed = edition.split("~")
            if len(packed) != 6:
                raise CpeParseError(f"Invalid packed edition in '{value}'")
            _, edition, sw_edition, target_sw, target_hw, other = packed
        return cls(
            part,
            _unbind_uri_component(vendor),
            _unbind_uri_component(product),
            _unbind_uri_component(version),
            _unbind_uri_component(update),
            _unbind_uri_component(edition),
            _unbind_uri_component(language),
            _unbind_uri_component(sw_edition),
            _unbind_uri_component(target_sw),
            _unbind_uri_component(target_hw),
            _unbind_uri_component(other),
        )

    def to_cpe23(self) -> str:
        return CPE23_PREFIX + ":".join(getattr(self, f.name) for f in fields(self))

    def to_cpe22_uri(self) -> str:
        edition = _bind_uri_component(self.edition)
        extended = (self.sw_edition, self.target_sw, self.target_hw, self.other)
        if any(c != ANY for c in extended):
            edition = "~" + "~".join([edition] + [_bind_uri_component(c) for c in extended])
        components = [
            self.part,
            _bind_uri_component(self.vendor),
            _bind_uri_component(self.product),
            _bind_uri_component(self.version),
            _bind_uri_component(self.update),
            edition,
            _bind_uri_component(self.language),
        ]
        while components and components[-1] == "":
            components.pop()
        return CPE22_PREFIX + ":".join(components)

    def __str__(self):
        return self.to_cpe23()

    @property
    def vendor_product(self) -> tuple[str, str]:
        return unescape(self.vendor).lower(), unescape(self.product).lower()

    def matches_vendor_product(self, other: "Cpe") -> bool:
        return self.part.lower() == other.part.lower() and self.vendor_product == other.vendor_product

    @property
    def has_concrete_version(self) -> bool:
        return self.version not in (ANY, NA)
