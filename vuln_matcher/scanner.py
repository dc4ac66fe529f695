# vuln_matcher/scanner.py
import logging

from .cpe import Cpe, CpeParseError
from .models import Confidence, Dependency, Identifier, ScanResult
from .suppression import SuppressionEngine
from .vulndb import VulnerabilityStore

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3, "NONE": 4, "UNKNOWN": 5}


class VulnerabilityScanner:
    """Looks up vulnerabilities for a dependency's CPE identifiers and applies suppression rules.

    Identifier rules run before the lookup so a suppressed CPE never produces
    vulnerabilities; vulnerability rules run on the result.
    """

    def __init__(self, store: VulnerabilityStore, suppression: SuppressionEngine | None = None,
                 min_confidence: Confidence = Confidence.LOW):
        self.store = store
        self.suppression = suppression or SuppressionEngine()
        self.min_confidence = min_confidence

    def scan(self, dependency: Dependency) -> Dependency:
        self.suppression.suppress_identifiers(dependency)
        for identifier in dependency.cpe_identifiers():
            if identifier.confidence < self.min_confidence:
                continue
            try:
                cpe = identifier.cpe
            except CpeParseError as e:
                logger.warning(f"Skipping invalid CPE identifier '{identifier.value}' on {dependency.file_name}: {e}")
                continue
            for vulnerability in self.store.get_vulnerabilities(cpe):
                dependency.add_vulnerability(vulnerability)
        self.suppression.suppress_vulnerabilities(dependency)
        logger.debug(f"{dependency.file_name}: {len(dependency.vulnerabilities)} vulnerabilities, "
                     f"{len(dependency.suppressed_vulnerabilities)} suppressed")
        return dependency

    def check_cpe(self, cpe: Cpe | str, file_path: str | None = None) -> Dependency:
        """Scans a single CPE as though it were the only identifier of a dependency."""
        identifier = Identifier.from_cpe(cpe)
        dependency = Dependency(file_path=file_path or identifier.value)
        dependency.add_identifier(identifier)
        return self.scan(dependency)


def scan_results(dependency: Dependency) -> list[ScanResult]:
    """Active vulnerabilities of a dependency, most severe first."""
    vulns = sorted(dependency.vulnerabilities,
                   key=lambda v: (SEVERITY_ORDER.get(v.severity, 99), -(v.cvss_score or 0), v.id))
    return [ScanResult(dependency, v) for v in vulns]
