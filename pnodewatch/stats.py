"""Defensive payload coercion and the gossip/RPC stats merge."""

import dataclasses
import logging
import math

from pnodewatch.models import NodeStats, PodInfo

logger = logging.getLogger(__name__)

# Fields where a positive gossip value beats the RPC value.
GOSSIP_PREFERRED_FIELDS: tuple[str, ...] = ("uptime", "storage_committed", "storage_used")

# Fields only ``get-stats`` reports.
RPC_ONLY_FIELDS: tuple[str, ...] = (
    "cpu_percent",
    "ram_used",
    "ram_total",
    "active_streams",
    "packets_sent",
    "packets_received",
    "current_index",
    "total_pages",
    "total_bytes",
    "file_size",
    "last_updated",
)

_GET_STATS_FIELDS: tuple[str, ...] = RPC_ONLY_FIELDS + ("uptime",)

LOCALHOST_NAMES = frozenset({"127.0.0.1", "localhost"})


def coerce_number(value: object) -> float:
    """Return *value* as a finite float; anything unparseable becomes 0.

    Peers report numbers as JSON numbers or as strings; booleans, ``None``,
    NaN and infinities are treated as missing.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0.0
        return parsed if math.isfinite(parsed) else 0.0
    return 0.0


def coerce_string(value: object) -> str | None:
    """Return a stripped non-empty string, or ``None``."""
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return None


def extract_ip(address: object) -> str | None:
    """Split the IP out of an ``ip:port`` address string."""
    if not isinstance(address, str):
        return None
    candidate = address.split(":")[0].strip()
    return candidate or None


def is_localhost(ip: str) -> bool:
    return ip in LOCALHOST_NAMES


def parse_stats(payload: object) -> NodeStats | None:
    """Build ``NodeStats`` from a ``get-stats`` result object.

    Returns ``None`` when *payload* is not a mapping.  Missing numeric
    fields become 0 since the node did answer.
    """
    if not isinstance(payload, dict):
        return None
    return NodeStats(**{name: coerce_number(payload.get(name)) for name in _GET_STATS_FIELDS})


def parse_pod(raw: object) -> PodInfo | None:
    """Build a ``PodInfo`` from one ``get-pods-with-stats`` entry.

    Entries without a usable address, and localhost entries, are dropped.
    """
    if not isinstance(raw, dict):
        return None
    ip = extract_ip(raw.get("address"))
    if ip is None or is_localhost(ip):
        return None

    is_public = raw.get("is_public")
    rpc_port = coerce_number(raw.get("rpc_port"))

    return PodInfo(
        ip=ip,
        version=coerce_string(raw.get("version")),
        pubkey=coerce_string(raw.get("pubkey")),
        is_public=is_public if isinstance(is_public, bool) else None,
        rpc_port=int(rpc_port) if rpc_port > 0 else None,
        storage_committed=_positive(raw.get("storage_committed")),
        storage_used=_positive(raw.get("storage_used")),
        uptime=_positive(raw.get("uptime")),
        last_seen_timestamp=_positive(raw.get("last_seen_timestamp")),
    )


def merge_pod(existing: PodInfo | None, incoming: PodInfo) -> PodInfo:
    """Combine two gossip sightings of the same IP.

    Fields already known are kept; the newer ``last_seen_timestamp`` wins.
    """
    if existing is None:
        return dataclasses.replace(incoming)

    merged = dataclasses.replace(existing)
    for f in dataclasses.fields(PodInfo):
        if f.name in ("ip", "last_seen_timestamp"):
            continue
        if getattr(merged, f.name) is None:
            setattr(merged, f.name, getattr(incoming, f.name))

    if incoming.last_seen_timestamp is not None and (
        merged.last_seen_timestamp is None
        or incoming.last_seen_timestamp > merged.last_seen_timestamp
    ):
        merged.last_seen_timestamp = incoming.last_seen_timestamp
    return merged


def merge_stats(rpc: NodeStats | None, pod: PodInfo | None) -> NodeStats:
    """Merge ``get-stats`` metrics with the gossip view of the same node.

    Precedence:

    * ``uptime``, ``storage_committed``, ``storage_used``: the gossip value
      when it is positive, otherwise the RPC value.
    * every other field: RPC only.

    A node without RPC stats gets ``file_size = storage_committed`` so
    consumers of the legacy capacity field keep seeing its commitment.
    """
    merged = dataclasses.replace(rpc) if rpc is not None else NodeStats()

    if pod is not None:
        for name in GOSSIP_PREFERRED_FIELDS:
            value = getattr(pod, name)
            if value is not None and value > 0:
                setattr(merged, name, value)

    if rpc is None and merged.storage_committed:
        merged.file_size = merged.storage_committed

    return merged


def _positive(value: object) -> float | None:
    number = coerce_number(value)
    return number if number > 0 else None
