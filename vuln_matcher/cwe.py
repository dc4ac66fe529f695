# vuln_matcher/cwe.py
import json
import re
from functools import lru_cache
from pathlib import Path

CWE_DATA_FILE = Path(__file__).parent / "data" / "cwe.json"


@lru_cache(maxsize=1)
def _cwe_names() -> dict[str, str]:
    with open(CWE_DATA_FILE, "r", encoding="utf-8") as f:
        return json.load(f)


def normalize_cwe(value: str) -> str:
    """'79', 'cwe-79' and 'CWE-79' all become 'CWE-79'. NVD placeholders are kept as-is."""
    value = value.strip()
    if value.upper().startswith("NVD-"):
        return value
    match = re.fullmatch(r"(?i)(?:cwe-)?(\d+)", value)
    return f"CWE-{match.group(1)}" if match else value


def get_cwe_name(cwe_id: str) -> str | None:
    return _cwe_names().get(normalize_cwe(cwe_id))


def describe_cwe(cwe_id: str) -> str:
    """'CWE-79 Improper Neutralization ...' or just the id when the name is unknown."""
    cwe_id = normalize_cwe(cwe_id)
    name = get_cwe_name(cwe_id)
    return f"{cwe_id} {name}" if name else cwe_id
