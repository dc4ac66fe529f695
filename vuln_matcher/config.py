# vuln_matcher/config.py
import logging
import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml
from platformdirs import user_data_path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# --- Define App Name and Author for platformdirs ---
APP_NAME = "VulnMatcher"
APP_AUTHOR = "VulnMatcher"

DEFAULT_CONFIG_FILE = "vulnmatch.yaml"
DATABASE_FILE_NAME = "vuln_matcher.sqlite"

NVD_FEED_URL_TEMPLATE = "https://nvd.nist.gov/feeds/json/cve/2.0/nvdcve-2.0-{feed_id}.json.gz"


def default_data_directory() -> Path:
    return user_data_path(appname=APP_NAME, appauthor=APP_AUTHOR)


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration handed to the store, downloader and update pipeline."""

    data_directory: Path = field(default_factory=default_data_directory)
    database_file: Path | None = None
    temp_directory: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    download_threads: int = 4
    processing_threads: int = 2
    processing_queue_size: int = 4
    download_timeout: int = 60
    feed_array_field: str = "vulnerabilities"
    feed_urls: dict = field(default_factory=dict)
    nvd_api_key: str | None = None
    cache_vulnerabilities: bool = True

    def __post_init__(self):
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "data_directory", Path(self.data_directory))
        object.__setattr__(self, "temp_directory", Path(self.temp_directory))
        if self.database_file is None:
            object.__setattr__(self, "database_file", self.data_directory / DATABASE_FILE_NAME)
        else:
            object.__setattr__(self, "database_file", Path(self.database_file))
        for name in ("download_threads", "processing_threads", "processing_queue_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"'{name}' must be at least 1, got {getattr(self, name)}")

    def ensure_directories(self) -> None:
        self.data_directory.mkdir(parents=True, exist_ok=True)
        self.database_file.parent.mkdir(parents=True, exist_ok=True)

    def with_overrides(self, **overrides) -> "Settings":
        # a database file derived from the data directory follows it
        if ("data_directory" in overrides and "database_file" not in overrides
                and self.database_file == self.data_directory / DATABASE_FILE_NAME):
            overrides["database_file"] = None
        return replace(self, **overrides)


def _read_config_file(config_path: Path) -> dict:
    """Reads the YAML config file, returning an empty dict if it does not exist."""
    if not config_path.is_file():
        logger.debug(f"No config file at {config_path}, using defaults")
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse config file {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Could not read config file {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping at the top level")
    return data


def load_settings(config_path: str | Path | None = None, **overrides) -> Settings:
    """Builds Settings from an optional YAML file, the environment and explicit overrides.

    Precedence (lowest to highest): defaults, config file, NVD_API_KEY env var, overrides.
    """
    path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)
    raw = _read_config_file(path)

    known = {f.name for f in fields(Settings)}
    values = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning(f"Ignoring unknown configuration key '{key}' in {path}")
            continue
        values[key] = value

    if values.get("nvd_api_key") is None and os.environ.get("NVD_API_KEY"):
        values["nvd_api_key"] = os.environ["NVD_API_KEY"]

    values.update({k: v for k, v in overrides.items() if v is not None})
    if "feed_urls" in values and not isinstance(values["feed_urls"], dict):
        raise ConfigurationError("'feed_urls' must be a mapping of feed id to URL")
    try:
        return Settings(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
