# vuln_matcher/suppression.py
"""Rule-based removal of false positive identifiers and vulnerabilities from a dependency."""
import logging
import re
import threading
from dataclasses import dataclass
from datetime import date
from functools import cached_property

from .cpe import CPE22_PREFIX, CPE23_PREFIX, CpeParseError
from .cwe import normalize_cwe
from .models import Dependency, Identifier, IdentifierType, Vulnerability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchPattern:
    value: str
    regex: bool = False
    case_sensitive: bool = False

    @cached_property
    def _compiled(self) -> re.Pattern:
        return re.compile(self.value, 0 if self.case_sensitive else re.IGNORECASE)

    def matches(self, text: str | None) -> bool:
        if text is None:
            return False
        if self.regex:
            return self._compiled.fullmatch(text) is not None
        if self.case_sensitive:
            return self.value == text
        return self.value.lower() == text.lower()

    def starts(self, text: str) -> bool:
        if self.case_sensitive:
            return text.startswith(self.value)
        return text.lower().startswith(self.value.lower())

    def __str__(self):
        return f"/{self.value}/" if self.regex else self.value


@dataclass(frozen=True)
class SuppressionRule:
    file_path: MatchPattern | None = None
    sha1: str | None = None
    gav: MatchPattern | None = None
    package_url: MatchPattern | None = None
    cpe: tuple[MatchPattern, ...] = ()
    cvss_below: tuple[float, ...] = ()
    cwe: frozenset = frozenset()
    cve: frozenset = frozenset()
    vulnerability_names: tuple[MatchPattern, ...] = ()
    notes: str | None = None
    until: date | None = None
    base: bool = False

    def __post_init__(self):
        object.__setattr__(self, "cwe", frozenset(normalize_cwe(c) for c in self.cwe))
        object.__setattr__(self, "cve", frozenset(c.strip().upper() for c in self.cve))

    @property
    def is_degenerate(self) -> bool:
        """A rule without any cpe or vulnerability criteria suppresses nothing."""
        return not (self.cpe or self.cvss_below or self.cwe or self.cve or self.vulnerability_names)

    def is_expired(self, today: date | None = None) -> bool:
        return self.until is not None and self.until < (today or date.today())

    # --- Preconditions ---
    def applies_to(self, dependency: Dependency) -> bool:
        """filePath, sha1, gav and packageUrl must all match before anything is suppressed."""
        if self.file_path is not None and not self.file_path.matches(dependency.file_path.replace("\\", "/")):
            return False
        if self.sha1 is not None and (dependency.sha1 or "").lower() != self.sha1.lower():
            return False
        if self.gav is not None and not any(self.gav.matches(gav) for gav in dependency.gavs()):
            return False
        if self.package_url is not None:
            purls = [i.value for i in dependency.identifiers | dependency.suppressed_identifiers
                     if i.kind is IdentifierType.PURL]
            if not any(self.package_url.matches(p) for p in purls):
                return False
        return True

    # --- Identifier matching ---
    @staticmethod
    def _has_no_version(pattern: MatchPattern) -> bool:
        if pattern.regex:
            return False
        limit = 4 if pattern.value.lower().startswith(CPE23_PREFIX) else 3
        return pattern.value.count(":") <= limit

    def cpe_matches(self, pattern: MatchPattern, identifier: Identifier) -> bool:
        if identifier.kind is not IdentifierType.CPE:
            return False
        try:
            cpe = identifier.cpe
        except CpeParseError:
            return False
        value = identifier.value if pattern.value.lower().startswith(CPE23_PREFIX) else cpe.to_cpe22_uri()
        if pattern.matches(value):
            return True
        if self._has_no_version(pattern):
            return pattern.starts(value) and value[len(pattern.value):].startswith(":")
        return False

    def matching_identifiers(self, dependency: Dependency) -> set[Identifier]:
        matched = set()
        for identifier in dependency.identifiers:
            if any(self.cpe_matches(p, identifier) for p in self.cpe):
                matched.add(identifier)
        if self.base and matched:
            vendor_products = {i.cpe.vendor_product for i in matched}
            matched |= {i for i in dependency.identifiers
                        if i.kind is IdentifierType.CPE and i.cpe.vendor_product in vendor_products}
        return matched

    # --- Vulnerability matching ---
    def vulnerability_matches(self, vulnerability: Vulnerability) -> bool:
        if vulnerability.id.upper() in self.cve:
            return True
        if self.cwe and any(normalize_cwe(c) in self.cwe for c in vulnerability.cwes):
            return True
        if any(p.matches(vulnerability.id) for p in self.vulnerability_names):
            return True
        if self.cvss_below and vulnerability.cvss_score is not None:
            return vulnerability.cvss_score < max(self.cvss_below)
        return False

    def process(self, dependency: Dependency, identifiers: bool = True, vulnerabilities: bool = True) -> bool:
        """Moves matching entries into the dependency's suppressed sets. Returns True if anything matched."""
        if self.is_degenerate or not self.applies_to(dependency):
            return False
        matched = False
        if identifiers and self.cpe:
            for identifier in self.matching_identifiers(dependency):
                logger.debug(f"Suppressing identifier {identifier} on {dependency.file_name}")
                dependency.suppress_identifier(identifier, self.notes)
                matched = True
        if vulnerabilities:
            for vulnerability in [v for v in dependency.vulnerabilities if self.vulnerability_matches(v)]:
                logger.debug(f"Suppressing {vulnerability.id} on {dependency.file_name}")
                dependency.suppress_vulnerability(vulnerability, self.notes)
                matched = True
        return matched

    def __str__(self):
        parts = []
        for label, value in (("filePath", self.file_path), ("sha1", self.sha1), ("gav", self.gav),
                             ("packageUrl", self.package_url)):
            if value is not None:
                parts.append(f"{label}={value}")
        if self.cpe:
            parts.append("cpe=" + ",".join(str(p) for p in self.cpe))
        if self.cve:
            parts.append("cve=" + ",".join(sorted(self.cve)))
        if self.cwe:
            parts.append("cwe=" + ",".join(sorted(self.cwe)))
        if self.cvss_below:
            parts.append("cvssBelow=" + ",".join(str(c) for c in self.cvss_below))
        if self.vulnerability_names:
            parts.append("vulnerabilityName=" + ",".join(str(p) for p in self.vulnerability_names))
        if self.base:
            parts.append("base=true")
        return "SuppressionRule{" + ", ".join(parts) + "}"


class SuppressionEngine:
    """Applies an immutable, ordered list of rules to dependencies.

    The rules never change and the outcome of each call depends only on the
    rules and the dependency, so one engine may be shared across threads. The
    only state kept is ``matched_rules``, the indexes of rules that have
    suppressed something so far, which feeds ``unused_rules()``.
    """

    def __init__(self, rules=()):
        self.rules: tuple[SuppressionRule, ...] = tuple(rules)
        self.matched_rules: set[int] = set()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self.rules)

    def _apply(self, dependency: Dependency, identifiers: bool, vulnerabilities: bool) -> list[SuppressionRule]:
        matched = {}
        for index, rule in enumerate(self.rules):
            if rule.process(dependency, identifiers=identifiers, vulnerabilities=vulnerabilities):
                matched[index] = rule
        if matched:
            with self._lock:
                self.matched_rules.update(matched)
        return list(matched.values())

    def suppress_identifiers(self, dependency: Dependency) -> list[SuppressionRule]:
        return self._apply(dependency, identifiers=True, vulnerabilities=False)

    def suppress_vulnerabilities(self, dependency: Dependency) -> list[SuppressionRule]:
        return self._apply(dependency, identifiers=False, vulnerabilities=True)

    def apply(self, dependency: Dependency) -> list[SuppressionRule]:
        """Applies every rule in order; returns the rules that suppressed something."""
        return self._apply(dependency, identifiers=True, vulnerabilities=True)

    def unused_rules(self) -> list[SuppressionRule]:
        """Non-base rules that have not suppressed anything in any call so far."""
        with self._lock:
            matched = set(self.matched_rules)
        return [rule for i, rule in enumerate(self.rules) if i not in matched and not rule.base]
