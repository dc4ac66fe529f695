# vuln_matcher/models.py
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from functools import total_ordering

from packageurl import PackageURL

from .cpe import Cpe


class IdentifierType(str, Enum):
    CPE = "cpe"
    PURL = "purl"
    GENERIC = "generic"


class Confidence(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    HIGHEST = 4


@total_ordering
@dataclass(frozen=True)
class Identifier:
    """A platform identifier attached to a scanned component.

    ``kind`` selects how ``value`` is interpreted: a CPE 2.3 formatted string, a
    package URL, or an opaque string. Ordering is by value, then url, then
    confidence (highest first).
    """

    kind: IdentifierType
    value: str
    confidence: Confidence = Confidence.HIGHEST
    url: str | None = None
    notes: str | None = None

    @classmethod
    def from_cpe(cls, cpe: "Cpe | str", confidence: Confidence = Confidence.HIGHEST,
                 url: str | None = None, notes: str | None = None) -> "Identifier":
        if isinstance(cpe, str):
            cpe = Cpe.parse(cpe)
        return cls(IdentifierType.CPE, cpe.to_cpe23(), confidence, url, notes)

    @classmethod
    def from_purl(cls, purl: "PackageURL | str", confidence: Confidence = Confidence.HIGHEST,
                  url: str | None = None, notes: str | None = None) -> "Identifier":
        if isinstance(purl, str):
            purl = PackageURL.from_string(purl)
        return cls(IdentifierType.PURL, purl.to_string(), confidence, url, notes)

    @classmethod
    def generic(cls, value: str, confidence: Confidence = Confidence.HIGHEST,
                url: str | None = None, notes: str | None = None) -> "Identifier":
        return cls(IdentifierType.GENERIC, value, confidence, url, notes)

    @property
    def cpe(self) -> Cpe | None:
        return Cpe.parse(self.value) if self.kind is IdentifierType.CPE else None

    @property
    def purl(self) -> PackageURL | None:
        return PackageURL.from_string(self.value) if self.kind is IdentifierType.PURL else None

    def to_gav(self) -> str | None:
        """group:artifact:version projection, only for package URLs with a namespace and version."""
        purl = self.purl
        if purl is None or not purl.namespace or not purl.version:
            return None
        return f"{purl.namespace}:{purl.name}:{purl.version}"

    def with_notes(self, notes: str | None) -> "Identifier":
        return replace(self, notes=notes)

    def _sort_key(self):
        return (self.value, self.url or "", -int(self.confidence))

    def __lt__(self, other):
        if not isinstance(other, Identifier):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class VulnerableSoftware:
    """One affected-software entry of a vulnerability: a CPE plus optional version bounds."""

    cpe: Cpe
    version_start_including: str | None = None
    version_start_excluding: str | None = None
    version_end_including: str | None = None
    version_end_excluding: str | None = None
    vulnerable: bool = True

    def __post_init__(self):
        if self.version_start_including and self.version_start_excluding:
            raise ValueError(f"{self.cpe}: only one start bound may be set")
        if self.version_end_including and self.version_end_excluding:
            raise ValueError(f"{self.cpe}: only one end bound may be set")

    @classmethod
    def parse(cls, cpe: str, **kwargs) -> "VulnerableSoftware":
        return cls(Cpe.parse(cpe), **kwargs)

    @property
    def bound_count(self) -> int:
        return sum(1 for b in (self.version_start_including, self.version_start_excluding,
                               self.version_end_including, self.version_end_excluding) if b)

    @property
    def has_range(self) -> bool:
        return self.bound_count > 0

    def to_cpe23(self) -> str:
        return self.cpe.to_cpe23()

    def __str__(self):
        bounds = []
        if self.version_start_including:
            bounds.append(f">={self.version_start_including}")
        if self.version_start_excluding:
            bounds.append(f">{self.version_start_excluding}")
        if self.version_end_including:
            bounds.append(f"<={self.version_end_including}")
        if self.version_end_excluding:
            bounds.append(f"<{self.version_end_excluding}")
        text = self.cpe.to_cpe23()
        return f"{text} ({', '.join(bounds)})" if bounds else text


@dataclass(frozen=True)
class Reference:
    name: str
    url: str
    source: str | None = None


@dataclass(frozen=True)
class Vulnerability:
    id: str
    description: str
    cwes: tuple[str, ...] = ()
    cvss_score: float | None = None
    cvss_vector: str | None = None
    cvss_version: str | None = None
    references: tuple[Reference, ...] = ()
    affected: frozenset = frozenset()
    published: str | None = None
    last_modified: str | None = None
    # filled in at query time
    cwe_names: tuple[tuple[str, str], ...] = ()
    matched_software: VulnerableSoftware | None = None
    notes: str | None = None

    @property
    def severity(self) -> str:
        if self.cvss_score is None:
            return "UNKNOWN"
        elif self.cvss_score >= 9.0:
            return "CRITICAL"
        elif self.cvss_score >= 7.0:
            return "HIGH"
        elif self.cvss_score >= 4.0:
            return "MEDIUM"
        elif self.cvss_score > 0.0:
            return "LOW"
        else:  # Score is 0.0
            return "NONE"

    @property
    def name(self) -> str:
        return self.id

    def with_notes(self, notes: str | None) -> "Vulnerability":
        return replace(self, notes=notes)


@dataclass
class Dependency:
    """A scanned component. Identifier and vulnerability sets are mutated by suppression."""

    file_path: str
    sha1: str | None = None
    sha256: str | None = None
    identifiers: set = field(default_factory=set)
    vulnerabilities: set = field(default_factory=set)
    suppressed_identifiers: set = field(default_factory=set)
    suppressed_vulnerabilities: set = field(default_factory=set)

    def add_identifier(self, identifier: Identifier) -> None:
        self.identifiers.add(identifier)

    def add_vulnerability(self, vulnerability: Vulnerability) -> None:
        self.vulnerabilities.add(vulnerability)

    def suppress_identifier(self, identifier: Identifier, notes: str | None = None) -> None:
        self.identifiers.discard(identifier)
        self.suppressed_identifiers.add(identifier.with_notes(notes) if notes else identifier)

    def suppress_vulnerability(self, vulnerability: Vulnerability, notes: str | None = None) -> None:
        self.vulnerabilities.discard(vulnerability)
        self.suppressed_vulnerabilities.add(vulnerability.with_notes(notes) if notes else vulnerability)

    def cpe_identifiers(self) -> list[Identifier]:
        return sorted(i for i in self.identifiers if i.kind is IdentifierType.CPE)

    def gavs(self) -> list[str]:
        return [gav for gav in (i.to_gav() for i in self.identifiers | self.suppressed_identifiers) if gav]

    def package_urls(self) -> list[str]:
        return [i.value for i in self.identifiers if i.kind is IdentifierType.PURL]

    @property
    def file_name(self) -> str:
        return self.file_path.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass
class ScanResult:
    dependency: Dependency
    vulnerability: Vulnerability
