"""Data models: node records, stats, history samples, crawl summaries."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

NodeStatus = Literal["online", "stale", "registry_only"]
NodeType = Literal["public", "private", "unknown"]
Network = Literal["MAINNET", "DEVNET", "UNKNOWN"]
NetworkConfidence = Literal["high", "medium", "low"]
ConfidenceLevel = Literal["confirmed", "validated", "discovered", "uncertain"]
HealthStatus = Literal["Excellent", "Good", "Warning", "Critical", "Private"]


@dataclass
class NodeStats:
    """Live metrics of a pNode, merged from gossip and ``get-stats``.

    ``None`` means no source reported the field.  When ``get-stats``
    answers, every RPC field is a number (missing ones coerced to 0).

    Attributes:
        cpu_percent: CPU usage in percent.
        ram_used: RAM in use (bytes).
        ram_total: Installed RAM (bytes).
        uptime: Process uptime in seconds.
        storage_committed: Capacity the node committed to the network (bytes).
        storage_used: Bytes actually stored.
        file_size: Legacy committed-capacity field of ``get-stats``.
        total_bytes: Legacy used-bytes field of ``get-stats``.
        packets_sent: Packets sent since start.
        packets_received: Packets received since start.
        active_streams: Currently open streams.
        current_index: Current page index.
        total_pages: Stored pages.
        last_updated: Node-reported timestamp of these stats.
    """

    cpu_percent: float | None = None
    ram_used: float | None = None
    ram_total: float | None = None
    uptime: float | None = None
    storage_committed: float | None = None
    storage_used: float | None = None
    file_size: float | None = None
    total_bytes: float | None = None
    packets_sent: float | None = None
    packets_received: float | None = None
    active_streams: float | None = None
    current_index: float | None = None
    total_pages: float | None = None
    last_updated: float | None = None


@dataclass
class PodInfo:
    """One entry of a ``get-pods-with-stats`` reply (the gossip view).

    Attributes:
        ip: IP part of the pod's advertised address.
        version: Software version string, if advertised.
        pubkey: Node identity, if advertised.
        is_public: Visibility flag reported by the network.
        rpc_port: Advertised JSON-RPC port.
        storage_committed: Committed capacity (bytes).
        storage_used: Used storage (bytes).
        uptime: Uptime in seconds as seen by gossip.
        last_seen_timestamp: Unix timestamp of the last gossip sighting.
    """

    ip: str
    version: str | None = None
    pubkey: str | None = None
    is_public: bool | None = None
    rpc_port: int | None = None
    storage_committed: float | None = None
    storage_used: float | None = None
    uptime: float | None = None
    last_seen_timestamp: float | None = None


@dataclass
class GeoLocation:
    """Normalized result of an IP geolocation lookup."""

    lat: float | None = None
    lng: float | None = None
    city: str | None = None
    country: str | None = None
    country_code: str | None = None


@dataclass
class NodeRecord:
    """The durable per-IP record written to the ``pnodes`` table.

    Attributes:
        ip: Primary key.
        status: Lifecycle state.
        node_type: Visibility derived from the gossip ``is_public`` flag.
        network: Sub-network membership decided by the classifier.
        network_confidence: Confidence tier of ``network``.
        network_method: Classifier rule that decided ``network``.
        pubkey: Node identity; several IPs may share one.
        version: Free-text software version.
        rpc_port: Port ``get-stats`` answered on, or the advertised one.
        stats: Merged live metrics.
        confidence_score: 0-100 source-corroboration score.
        confidence_level: Label for ``confidence_score``.
        sources: Provenance tags backing ``confidence_score``.
        failed_checks: Consecutive cycles without a ``get-stats`` answer.
        credits: Reward credits from the official registry.
        performance_score: 0-100 performance score.
        health_status: Five-tier health label.
        lat: Latitude.
        lng: Longitude.
        city: City name.
        country: Country name.
        country_code: ISO 3166-1 alpha-2 code.
        last_seen_gossip: Unix timestamp of the last gossip sighting.
        last_crawled_at: When this cycle built the record.
        has_gossip: Whether the node is in this cycle's gossip view.
            Not persisted.
    """

    ip: str
    status: NodeStatus = "online"
    node_type: NodeType = "unknown"
    network: Network = "UNKNOWN"
    network_confidence: NetworkConfidence = "low"
    network_method: str | None = None
    pubkey: str | None = None
    version: str | None = None
    rpc_port: int | None = None
    stats: NodeStats = field(default_factory=NodeStats)
    confidence_score: int = 0
    confidence_level: ConfidenceLevel = "uncertain"
    sources: list[str] = field(default_factory=list)
    failed_checks: int = 0
    credits: float = 0.0
    performance_score: int = 0
    health_status: HealthStatus = "Private"
    lat: float | None = None
    lng: float | None = None
    city: str | None = None
    country: str | None = None
    country_code: str | None = None
    last_seen_gossip: float | None = None
    last_crawled_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    has_gossip: bool = False

    def apply_location(self, geo: GeoLocation | None) -> None:
        """Copy a geolocation result onto the record's geo fields."""
        if geo is None:
            return
        self.lat = geo.lat
        self.lng = geo.lng
        self.city = geo.city
        self.country = geo.country
        self.country_code = geo.country_code


@dataclass
class HistorySample:
    """Append-only snapshot of a node's stats for one crawl cycle."""

    ip: str
    ts: int
    cpu_percent: float | None = None
    ram_used: float | None = None
    ram_total: float | None = None
    file_size: float | None = None
    uptime: float | None = None
    packets_sent: float | None = None
    packets_received: float | None = None
    storage_committed: float | None = None
    storage_used: float | None = None

    @classmethod
    def from_record(cls, record: NodeRecord, ts: int) -> "HistorySample":
        s = record.stats
        return cls(
            ip=record.ip,
            ts=ts,
            cpu_percent=s.cpu_percent,
            ram_used=s.ram_used,
            ram_total=s.ram_total,
            file_size=s.file_size,
            uptime=s.uptime,
            packets_sent=s.packets_sent,
            packets_received=s.packets_received,
            storage_committed=s.storage_committed,
            storage_used=s.storage_used,
        )


@dataclass
class NetworkMetadata:
    """Singleton coverage row: discovered vs crawled vs active nodes."""

    network_total: int
    crawled_nodes: int
    active_nodes: int
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class CrawlSummary:
    """Outcome of one crawl cycle, returned to the trigger surface.

    Attributes:
        discovered: IPs found by the breadth-first discovery.
        with_metadata: IPs present in the gossip view.
        with_stats: IPs that answered ``get-stats``.
        geolocated: IPs with a location (cached or newly resolved).
        geo_lookups: New provider lookups performed this cycle.
        nodes: Records written (after deduplication and sweep).
        stale: IPs marked stale this cycle.
        deleted: IPs deleted by the sweep.
        unseen_incremented: Known IPs not seen at all this cycle.
        persistence: Per-table write outcome (``True`` = succeeded).
        reconciliation: Registry reconciliation counts.
        duration_seconds: Wall-clock duration of the cycle.
        started_at: When the cycle started (UTC).
    """

    discovered: int = 0
    with_metadata: int = 0
    with_stats: int = 0
    geolocated: int = 0
    geo_lookups: int = 0
    nodes: list[NodeRecord] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unseen_incremented: list[str] = field(default_factory=list)
    persistence: dict[str, bool] = field(default_factory=dict)
    reconciliation: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
