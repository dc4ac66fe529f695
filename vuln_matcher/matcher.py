# vuln_matcher/matcher.py
"""Decides which affected-software entry, if any, applies to an identified CPE."""
import logging
from collections.abc import Iterable

from .cpe import ANY, NA, Cpe, unescape
from .models import VulnerableSoftware
from .version import DependencyVersion

logger = logging.getLogger(__name__)

_COMPATIBLE_FIELDS = ("update", "edition", "language", "sw_edition", "target_sw", "target_hw", "other")


def _component_compatible(identified: str, candidate: str) -> bool:
    if identified == ANY or candidate == ANY:
        return True
    return unescape(identified).lower() == unescape(candidate).lower()


def is_compatible(identified: Cpe, candidate: Cpe) -> bool:
    """Same part/vendor/product, and every other attribute either ANY on one side or equal."""
    if not identified.matches_vendor_product(candidate):
        return False
    return all(_component_compatible(getattr(identified, f), getattr(candidate, f)) for f in _COMPATIBLE_FIELDS)


def in_range(version: DependencyVersion, software: VulnerableSoftware) -> bool:
    """Checks a version against the start/end bounds of an entry. No bounds always matches."""
    if software.version_start_including:
        if version < DependencyVersion(software.version_start_including):
            return False
    elif software.version_start_excluding:
        if version <= DependencyVersion(software.version_start_excluding):
            return False
    if software.version_end_including:
        if version > DependencyVersion(software.version_end_including):
            return False
    elif software.version_end_excluding:
        if version >= DependencyVersion(software.version_end_excluding):
            return False
    return True


def _range_preference(software: VulnerableSoftware):
    # narrowest first, then vulnerable entries, then a stable order
    return (-software.bound_count, not software.vulnerable, str(software))


def get_matching_software(identified: Cpe, candidates: Iterable[VulnerableSoftware]) -> VulnerableSoftware | None:
    """Returns the best matching entry for the identified CPE or None.

    1. An entry whose concrete version (plus concrete update) equals the identified
       version wins outright.
    2. Otherwise the narrowest matching range entry is chosen, preferring
       vulnerable entries on ties. A concrete-version entry carrying bounds is
       treated as a range; a ``*`` version without bounds covers every version.
    3. Otherwise a ``-`` (no version) entry matches, but only when no concrete
       or range entry exists for the product.
    """
    identified_version = DependencyVersion.from_cpe(identified)

    ranges = []
    sentinels = []
    concrete = 0
    for software in candidates:
        if not is_compatible(identified, software.cpe):
            continue
        version = software.cpe.version
        if software.has_range:
            ranges.append(software)
        elif version == ANY:
            ranges.append(software)
        elif version == NA:
            sentinels.append(software)
        else:
            concrete += 1
            if identified_version is not None and identified_version == DependencyVersion.from_cpe(software.cpe):
                logger.debug(f"Exact version match for {identified} on {software}")
                return software

    if identified_version is None:
        # without a version only entries that apply to every version can match
        matching = [s for s in ranges if not s.has_range]
    else:
        matching = [s for s in ranges if in_range(identified_version, s)]
    if matching:
        matching.sort(key=_range_preference)
        return matching[0]

    # the no-version entry only stands in when the product has no versioned entries at all
    if sentinels and not ranges and not concrete:
        sentinels.sort(key=lambda s: (not s.vulnerable, str(s)))
        return sentinels[0]
    return None


def is_affected(identified: Cpe, candidates: Iterable[VulnerableSoftware]) -> bool:
    match = get_matching_software(identified, candidates)
    return match is not None and match.vulnerable
