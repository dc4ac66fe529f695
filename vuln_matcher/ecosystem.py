# vuln_matcher/ecosystem.py
"""Maps a feed item to the package ecosystem it most likely belongs to."""
import re
from collections import Counter

from .cpe import ANY, NA, Cpe, unescape
from .models import Vulnerability

DOTNET = "dotnet"
JAVA = "java"
NATIVE = "native"
COLDFUSION = "coldfusion"
IOS = "ios"
JAVASCRIPT = "javascript"
NODEJS = "npm"
PERL = "perl"
PHP = "php"
PYTHON = "python"
RUBY = "ruby"
GOLANG = "golang"
CMAKE = "cmake"

# vendor/product pairs whose descriptions mention language bindings but which are not libraries
_NO_ECOSYSTEM = {
    ("mysql", "mysql"), ("postgresql", "postgresql"), ("picketlink", "picketlink"),
    ("libxl_project", "libxl"), ("ocaml", "postgresql-ocaml"), ("curses_project", "curses"),
    ("dalekjs", "dalekjs"), ("microsoft", "internet_explorer"), ("jenkins", "ssh_credentials"),
    ("kubernetes", "kubernetes"), ("gnome", "nautilus-python"), ("apache", "qpid_proton"),
    ("mysql-ocaml", "mysql-ocaml"), ("google", "chrome"), ("canonical", "ltsp_display_manager"),
    ("gnome", "vala"), ("apple", "safari"), ("mapbox", "npm-test-sqlite3-trunk"),
    ("apple", "webkit"), ("mozilla", "firefox"), ("apache", "thrift"), ("apache", "qpid"),
    ("mozilla", "thunderbird"), ("mozilla", "firefox_esr"), ("redhat", "jboss_amq_clients_2"),
    ("node-opencv_project", "node-opencv"), ("mozilla", "seamonkey"), ("mozilla", "thunderbird_esr"),
    ("mnet_soft_factory", "nodemanager_professional"), ("mozilla", "mozilla_suite"),
    ("theforeman", "hammer_cli"), ("ibm", "websphere_application_server"),
    ("sap", "hana_extend_application_services"), ("apache", "zookeeper"),
}

_NATIVE_PRODUCTS = {("ibm", "java"), ("oracle", "vm")}

_TARGET_SW = {
    "asp.net": DOTNET, "c#": DOTNET, ".net": DOTNET, "dotnetnuke": DOTNET,
    "android": JAVA, "java": JAVA,
    "c/c++": NATIVE, "borland_c++": NATIVE, "visual_c++": NATIVE, "gnu_c++": NATIVE,
    "linux_kernel": NATIVE, "linux": NATIVE, "unix": NATIVE, "suse_linux": NATIVE,
    "redhat_enterprise_linux": NATIVE, "debian": NATIVE,
    "coldfusion": COLDFUSION,
    "ios": IOS, "iphone": IOS, "ipad": IOS, "iphone_os": IOS,
    "jquery": JAVASCRIPT,
    "node.js": NODEJS, "nodejs": NODEJS,
    "perl": PERL,
    "joomla!": PHP, "joomla": PHP, "mybb": PHP, "simplesamlphp": PHP, "craft_cms": PHP,
    "moodle": PHP, "phpcms": PHP, "buddypress": PHP, "typo3": PHP, "php": PHP,
    "wordpress": PHP, "drupal": PHP, "mediawiki": PHP, "symfony": PHP, "openpne": PHP,
    "vbulletin3": PHP, "vbulletin4": PHP,
    "python": PYTHON,
    "ruby": RUBY,
}

_KEYWORD_HINTS = {
    "java": JAVA, "jar": JAVA, "maven": JAVA, "spring": JAVA, "servlet": JAVA,
    ".net": DOTNET, "asp.net": DOTNET, "nuget": DOTNET, "c#": DOTNET,
    "php": PHP, "wordpress": PHP, "drupal": PHP, "joomla": PHP, "composer": PHP,
    "python": PYTHON, "pypi": PYTHON, "django": PYTHON, "pip": PYTHON,
    "ruby": RUBY, "rubygems": RUBY, "rails": RUBY, "gem": RUBY,
    "node.js": NODEJS, "nodejs": NODEJS, "npm": NODEJS,
    "javascript": JAVASCRIPT, "jquery": JAVASCRIPT,
    "perl": PERL, "cpan": PERL,
    "golang": GOLANG, "go module": GOLANG,
    "cmake": CMAKE,
}

_EXTENSION_HINTS = {
    ".jsp": JAVA, ".java": JAVA, ".class": JAVA,
    ".php": PHP,
    ".py": PYTHON,
    ".rb": RUBY,
    ".pl": PERL, ".pm": PERL,
    ".js": JAVASCRIPT,
    ".aspx": DOTNET, ".cs": DOTNET, ".dll": DOTNET,
    ".c": NATIVE, ".cpp": NATIVE, ".h": NATIVE,
    ".go": GOLANG,
}

_KEYWORD_RE = re.compile(
    r"(?:^|[\s\-(\"'])(" + "|".join(re.escape(k) for k in sorted(_KEYWORD_HINTS, key=len, reverse=True)) + r")(?=$|[\s\-)\"',.:;])"
)
_EXTENSION_RE = re.compile(
    r"\b[\w\-]+(" + "|".join(re.escape(k) for k in sorted(_EXTENSION_HINTS, key=len, reverse=True)) + r")\b"
)
_URL_RE = re.compile(r"https?://\S+")


def description_ecosystem(description: str | None) -> str | None:
    """Picks the ecosystem most often hinted at by keywords and file extensions in a description."""
    if not description:
        return None
    text = _URL_RE.sub(" ", description.lower())
    counts = Counter()
    for match in _KEYWORD_RE.finditer(text):
        counts[_KEYWORD_HINTS[match.group(1)]] += 1
    for match in _EXTENSION_RE.finditer(text):
        counts[_EXTENSION_HINTS[match.group(1)]] += 1
    if CMAKE in counts and "android" in text:
        del counts[CMAKE]
    if not counts:
        return None
    best = max(counts.values())
    # ties resolve alphabetically so the result does not depend on match order
    return sorted(eco for eco, n in counts.items() if n == best)[0]


def cpe_ecosystem(base_ecosystem: str | None, cpe: Cpe) -> str | None:
    vendor, product = cpe.vendor_product
    if (vendor, product) in _NO_ECOSYSTEM:
        return None
    if (vendor, product) in _NATIVE_PRODUCTS:
        return NATIVE
    target_sw = unescape(cpe.target_sw).lower()
    if target_sw not in (ANY, NA) and target_sw in _TARGET_SW:
        return _TARGET_SW[target_sw]
    return base_ecosystem


def classify(vulnerability: Vulnerability) -> str | None:
    """Ecosystem for a whole record: the first affected entry with a decisive mapping wins."""
    base = description_ecosystem(vulnerability.description)
    result = None
    for software in sorted(vulnerability.affected, key=str):
        eco = cpe_ecosystem(base, software.cpe)
        if eco is None and software.cpe.vendor_product in _NO_ECOSYSTEM:
            return None
        if eco is not None and eco != base:
            return eco
        result = result or eco
    return result if vulnerability.affected else base
