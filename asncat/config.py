"""YAML configuration file loading and state-directory layout."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".asncat"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"

DEFAULT_REGISTRY_SOURCES: tuple[str, ...] = (
    "https://ftp.ripe.net/pub/stats/arin/delegated-arin-extended-latest",
    "https://ftp.ripe.net/pub/stats/apnic/delegated-apnic-extended-latest",
    "https://ftp.ripe.net/pub/stats/ripencc/delegated-ripencc-extended-latest",
    "https://ftp.ripe.net/pub/stats/lacnic/delegated-lacnic-extended-latest",
    "https://ftp.ripe.net/pub/stats/afrinic/delegated-afrinic-extended-latest",
)


@dataclass
class AsncatConfig:
    """Top-level configuration for the asncat tool.

    Every field has a default so a missing config file is not an error.

    Attributes:
        state_dir: Directory holding caches, logs and the default output.
        model: Chat-completions model used for classification.
        openai_base_url: Base URL of the OpenAI-compatible API.
        rdap_base_url: Base URL of the RDAP service used as fallback source.
        openai_timeout: Per-request timeout for classification calls (s).
        rdap_timeout: Per-request timeout for RDAP lookups (s).
        tokens_per_minute: Token budget enforced by the rate limiter.
        max_context_tokens: Maximum tokens allowed in one request.
        registry_ttl_hours: How long a downloaded allocation list is reused.
        registry_sources: Delegated-extended URLs used as allocation source.
        arin_api_key: ARIN API key for bulk whois downloads, or None.
        rdap_fallback: Query RDAP when the registry cache has no record.
    """

    state_dir: str = str(DEFAULT_STATE_DIR)
    model: str = "gpt-5-nano"
    openai_base_url: str = "https://api.openai.com/v1/"
    rdap_base_url: str = "https://rdap.org/"
    openai_timeout: float = 30.0
    rdap_timeout: float = 10.0
    tokens_per_minute: int = 200_000
    max_context_tokens: int = 250_000
    registry_ttl_hours: int = 168
    registry_sources: list[str] = field(
        default_factory=lambda: list(DEFAULT_REGISTRY_SOURCES)
    )
    arin_api_key: str | None = None
    rdap_fallback: bool = False


# Keys in the YAML file that map to AsncatConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {
    "state_dir": "state_dir",
    "model": "model",
    "openai_base_url": "openai_base_url",
    "rdap_base_url": "rdap_base_url",
    "openai_timeout": "openai_timeout",
    "rdap_timeout": "rdap_timeout",
    "tokens_per_minute": "tokens_per_minute",
    "max_context_tokens": "max_context_tokens",
    "registry_ttl_hours": "registry_ttl_hours",
    "registry_sources": "registry_sources",
    "arin_api_key": "arin_api_key",
    "rdap_fallback": "rdap_fallback",
}


def load_config(path: Path | str | None = None) -> AsncatConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.asncat/config.yaml``) is tried.  If the
            default file doesn't exist, an ``AsncatConfig`` with all
            defaults is returned silently.

    Returns:
        A populated ``AsncatConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML or has an unexpected
            top-level structure.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return AsncatConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        return AsncatConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


@dataclass
class StatePaths:
    """Filesystem layout under the state directory."""

    base_dir: Path

    @property
    def cache_dir(self) -> Path:
        return self.base_dir / "cache"

    @property
    def allocations_dir(self) -> Path:
        return self.cache_dir / "allocations"

    @property
    def registry_db(self) -> Path:
        return self.cache_dir / "registry-cache.ndjson"

    @property
    def request_log_dir(self) -> Path:
        return self.base_dir / "logs" / "requests"

    def output_file(self, override: Path | str | None = None) -> Path:
        if override is not None:
            return Path(override).expanduser()
        return self.base_dir / "asn-classifications.tsv"

    def ensure_directories(self) -> None:
        for directory in (self.base_dir, self.cache_dir, self.allocations_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: AsncatConfig) -> "StatePaths":
        return cls(Path(config.state_dir).expanduser())


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> AsncatConfig:
    """Map raw YAML dict to an ``AsncatConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key in raw:
            kwargs[field_name] = raw[yaml_key]

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    sources = kwargs.get("registry_sources")
    if isinstance(sources, str):
        kwargs["registry_sources"] = [s.strip() for s in sources.split(",") if s.strip()]

    return AsncatConfig(**kwargs)
