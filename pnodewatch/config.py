"""YAML configuration file loading."""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".pnodewatch"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "pnodewatch.db")

BOOTSTRAP_NODES: tuple[str, ...] = (
    "192.190.136.36",
    "192.190.136.28",
    "192.190.136.29",
    "192.190.136.37",
    "192.190.136.38",
    "173.212.203.145",
    "161.97.97.41",
    "207.244.255.1",
    "159.69.221.189",
    "178.18.250.133",
    "37.120.167.241",
    "173.249.36.181",
    "213.199.44.36",
    "62.84.180.238",
    "154.38.169.212",
    "152.53.248.235",
    "173.212.217.77",
    "195.26.241.159",
)

MAINNET_REGISTRY_URL = "https://podcredits.xandeum.network/api/mainnet-pod-credits"
DEVNET_REGISTRY_URL = "https://podcredits.xandeum.network/api/pods-credits"


@dataclass
class CrawlerConfig:
    """Top-level configuration for a crawl run.

    Every field has a default, so a crawl works without a config file.

    Attributes:
        db_path: Path to the SQLite database file.
        bootstrap_nodes: Seed IPs the breadth-first discovery starts from.
        rpc_port: Default pNode JSON-RPC port.
        rpc_fallback_port: Port tried after ``rpc_port`` when
            ``rpc_fallback_enabled`` is set.
        rpc_fallback_enabled: Feature flag for the fallback RPC port.
        gossip_port: Port of the lightweight ``/gossip`` endpoint.
        rpc_timeout: Per-call timeout for peer RPC / gossip calls (seconds).
        geo_timeout: Per-call timeout for geolocation providers (seconds).
        registry_timeout: Per-call timeout for the registry API (seconds).
        discovery_batch_size: Peers queried concurrently per BFS round.
        rpc_batch_size: Peers queried concurrently for metadata and stats.
        geo_requests_per_minute: Ceiling for new geolocation lookups.
        registry_mainnet_url: MAINNET pod-credits endpoint.
        registry_devnet_url: DEVNET pod-credits endpoint.
        registry_ttl_seconds: How long a fetched registry stays valid.
        maxmind_city_db: Optional GeoLite2-City.mmdb consulted before the
            remote providers.
        probe_enabled: Whether the classifier may probe nodes over RPC.
        delete_stale: Delete stale nodes instead of marking them ``stale``.
        stale_failed_checks_no_gossip: Failed checks that make a node stale
            when it has no gossip metadata.
        stale_failed_checks_with_gossip: Failed checks that make a node stale
            even though gossip still reports it.
        warning_uptime_hours: Uptime below which a node is in ``Warning``.
    """

    db_path: str = DEFAULT_DB_PATH
    bootstrap_nodes: list[str] = field(default_factory=lambda: list(BOOTSTRAP_NODES))
    rpc_port: int = 6000
    rpc_fallback_port: int = 9001
    rpc_fallback_enabled: bool = True
    gossip_port: int = 5000
    rpc_timeout: float = 5.0
    geo_timeout: float = 3.0
    registry_timeout: float = 10.0
    discovery_batch_size: int = 10
    rpc_batch_size: int = 100
    geo_requests_per_minute: int = 44
    registry_mainnet_url: str = MAINNET_REGISTRY_URL
    registry_devnet_url: str = DEVNET_REGISTRY_URL
    registry_ttl_seconds: float = 3600.0
    maxmind_city_db: str | None = None
    probe_enabled: bool = True
    delete_stale: bool = False
    stale_failed_checks_no_gossip: int = 2
    stale_failed_checks_with_gossip: int = 4
    warning_uptime_hours: float = 6.0

    @property
    def rpc_ports(self) -> tuple[int, ...]:
        """Ordered candidate ports for JSON-RPC calls."""
        if self.rpc_fallback_enabled and self.rpc_fallback_port != self.rpc_port:
            return (self.rpc_port, self.rpc_fallback_port)
        return (self.rpc_port,)


_CONFIG_FIELDS: dict[str, type] = {
    "db_path": str,
    "bootstrap_nodes": list,
    "rpc_port": int,
    "rpc_fallback_port": int,
    "rpc_fallback_enabled": bool,
    "gossip_port": int,
    "rpc_timeout": float,
    "geo_timeout": float,
    "registry_timeout": float,
    "discovery_batch_size": int,
    "rpc_batch_size": int,
    "geo_requests_per_minute": int,
    "registry_mainnet_url": str,
    "registry_devnet_url": str,
    "registry_ttl_seconds": float,
    "maxmind_city_db": str,
    "probe_enabled": bool,
    "delete_stale": bool,
    "stale_failed_checks_no_gossip": int,
    "stale_failed_checks_with_gossip": int,
    "warning_uptime_hours": float,
}


def load_config(path: Path | str | None = None) -> CrawlerConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.pnodewatch/config.yaml``) is tried.  If
            the default file doesn't exist, a ``CrawlerConfig`` with all
            defaults is returned silently.

    Returns:
        A populated and validated ``CrawlerConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or a value fails validation.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return validate_config(CrawlerConfig())

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        return validate_config(CrawlerConfig())

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return validate_config(_build_config(raw, source=resolved))


def validate_config(cfg: CrawlerConfig) -> CrawlerConfig:
    """Check that the settings a crawl cannot run without are present.

    Returns:
        The same ``cfg`` instance.

    Raises:
        ConfigError: On a missing required value or a non-positive size,
            timeout, or rate.
    """
    if not cfg.db_path:
        raise ConfigError("db_path is required")
    if not cfg.bootstrap_nodes:
        raise ConfigError("bootstrap_nodes must list at least one seed IP")
    if not cfg.registry_mainnet_url or not cfg.registry_devnet_url:
        raise ConfigError("both registry_mainnet_url and registry_devnet_url are required")

    for name in (
        "rpc_timeout",
        "geo_timeout",
        "registry_timeout",
        "discovery_batch_size",
        "rpc_batch_size",
        "geo_requests_per_minute",
        "stale_failed_checks_no_gossip",
        "stale_failed_checks_with_gossip",
    ):
        if getattr(cfg, name) <= 0:
            raise ConfigError(f"{name} must be positive, got {getattr(cfg, name)!r}")

    return cfg


class ConfigError(Exception):
    """Raised when a configuration file is malformed or incomplete."""


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


def _build_config(raw: dict, source: Path) -> CrawlerConfig:
    """Map raw YAML dict to a ``CrawlerConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for key, expected in _CONFIG_FIELDS.items():
        if key not in raw:
            continue
        kwargs[key] = _coerce(key, raw[key], expected, source)

    unknown = set(raw) - {f.name for f in fields(CrawlerConfig)}
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    return CrawlerConfig(**kwargs)


def _coerce(key: str, value: object, expected: type, source: Path) -> object:
    """Check a YAML value against the field's type, widening ints to floats."""
    if value is None:
        if key == "maxmind_city_db":
            return None
        raise ConfigError(f"{key} in {source} must not be empty")

    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if expected is list:
        if not isinstance(value, list):
            raise ConfigError(f"{key} in {source} must be a list")
        return [str(item) for item in value]
    if expected is int and isinstance(value, bool):
        raise ConfigError(f"{key} in {source} must be an integer")
    if not isinstance(value, expected):
        raise ConfigError(
            f"{key} in {source} must be {expected.__name__}, "
            f"got {type(value).__name__}"
        )
    return value
