# vuln_matcher/version.py
import re
from functools import total_ordering

from .cpe import ANY, NA, Cpe, unescape

# digit runs and letter runs; '.', '-', '_', ':' and any other punctuation only separate
_TOKEN_RE = re.compile(r"\d+|[a-z]+")


@total_ordering
class DependencyVersion:
    """A loosely structured version that can be ordered across heterogeneous version schemes.

    The version is lower-cased and split into digit and letter runs. Components are
    compared numerically when both are numeric and lexically otherwise. Trailing zero
    components are not significant, so ``1.0`` equals ``1.0.0``; any other extra
    trailing component makes the longer version the greater one.
    """

    def __init__(self, version: str):
        self.raw = version
        parts = _TOKEN_RE.findall(version.lower()) if version else []
        self.parts: tuple[str, ...] = tuple(parts) if parts else ((version or "").lower(),)

    @classmethod
    def from_cpe(cls, cpe: Cpe) -> "DependencyVersion | None":
        """Version of a CPE with a concrete update appended, e.g. 4.0.0 + m1 -> 4.0.0.m1."""
        if not cpe.has_concrete_version:
            return None
        version = unescape(cpe.version)
        if cpe.update not in (ANY, NA):
            version = f"{version}.{unescape(cpe.update)}"
        return cls(version)

    @staticmethod
    def _compare_part(left: str, right: str) -> int:
        if left == right:
            return 0
        if left.isdigit() and right.isdigit():
            l, r = int(left), int(right)
        else:
            l, r = left, right
        return (l > r) - (l < r)

    def compare(self, other: "DependencyVersion") -> int:
        common = min(len(self.parts), len(other.parts))
        for i in range(common):
            result = self._compare_part(self.parts[i], other.parts[i])
            if result:
                return result
        if any(not _is_zero(p) for p in self.parts[common:]):
            return 1
        if any(not _is_zero(p) for p in other.parts[common:]):
            return -1
        return 0

    def _normalized(self) -> tuple:
        parts = [str(int(p)) if p.isdigit() else p for p in self.parts]
        while len(parts) > 1 and parts[-1] == "0":
            parts.pop()
        return tuple(parts)

    def __eq__(self, other):
        if not isinstance(other, DependencyVersion):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other):
        if not isinstance(other, DependencyVersion):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self):
        return hash(self._normalized())

    def __str__(self):
        return self.raw

    def __repr__(self):
        return f"DependencyVersion({self.raw!r})"


def _is_zero(part: str) -> bool:
    return part.isdigit() and int(part) == 0


def parse_version(value: str | None) -> DependencyVersion | None:
    """Returns None for missing, ANY and NA versions."""
    if value is None:
        return None
    value = unescape(value.strip())
    if not value or value in (ANY, NA):
        return None
    return DependencyVersion(value)
