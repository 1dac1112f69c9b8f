"""Performance score and five-tier health status of a node."""

import math
from dataclasses import dataclass

from pnodewatch.models import HealthStatus, NodeRecord, NodeStats

SECONDS_PER_HOUR = 3600

CPU_WEIGHT = 0.40
RAM_WEIGHT = 0.25
UPTIME_WEIGHT = 0.20
NETWORK_WEIGHT = 0.15

# (minimum uptime in hours, tier score), checked in order.
UPTIME_TIERS: tuple[tuple[float, int], ...] = (
    (30 * 24, 100),
    (7 * 24, 75),
    (24, 50),
    (1, 25),
)

# (low, high) sent/received ratio bands and their stability score.
PACKET_RATIO_BANDS: tuple[tuple[float, float, int], ...] = (
    (0.5, 2.0, 100),
    (0.3, 3.3, 80),
    (0.2, 5.0, 60),
)
PACKET_RATIO_OUTSIDE = 40
NO_PACKETS_BASELINE = 50


@dataclass(frozen=True)
class HealthThresholds:
    """Cut-offs of the health ladder.  Percentages are 0-100."""

    critical_uptime_seconds: float = 5 * 60
    critical_percent: float = 98
    critical_score: int = 20
    warning_uptime_hours: float = 6
    warning_resource_percent: float = 85
    warning_cpu_percent: float = 90
    warning_score: int = 50
    excellent_cpu_percent: float = 60
    excellent_uptime_hours: float = 168
    excellent_resource_percent: float = 70
    excellent_score: int = 85


DEFAULT_THRESHOLDS = HealthThresholds()


def clamp_percent(value: float) -> float:
    if not math.isfinite(value) or value <= 0:
        return 0.0
    return min(value, 100.0)


def _num(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return value


def ram_percent(stats: NodeStats) -> float:
    total = _num(stats.ram_total)
    if total <= 0:
        return 0.0
    return clamp_percent(_num(stats.ram_used) / total * 100)


def storage_percent(stats: NodeStats) -> float:
    """Storage usage in percent.

    Prefers the ``storage_used / storage_committed`` pair and falls back
    to the legacy ``total_bytes / file_size`` pair.
    """
    committed = _num(stats.storage_committed)
    if committed > 0 and stats.storage_used is not None:
        return clamp_percent(_num(stats.storage_used) / committed * 100)
    legacy_total = _num(stats.file_size)
    if legacy_total > 0:
        return clamp_percent(_num(stats.total_bytes) / legacy_total * 100)
    return 0.0


def uptime_tier(uptime_seconds: float) -> int:
    hours = uptime_seconds / SECONDS_PER_HOUR
    for minimum, score in UPTIME_TIERS:
        if hours >= minimum:
            return score
    return 0


def network_stability(packets_sent: float, packets_received: float) -> int:
    if packets_sent + packets_received <= 0:
        return NO_PACKETS_BASELINE
    ratio = packets_sent / (packets_received or 1)
    for low, high, score in PACKET_RATIO_BANDS:
        if low <= ratio <= high:
            return score
    return PACKET_RATIO_OUTSIDE


def performance_score(node: NodeRecord | None) -> int:
    """Weighted 0-100 score from CPU, RAM, uptime and packet balance.

    Non-public nodes and nodes without uptime score 0.
    """
    if node is None or node.node_type != "public":
        return 0
    stats = node.stats
    uptime = _num(stats.uptime)
    if uptime <= 0:
        return 0

    cpu = max(0.0, min(100.0, 100 - _num(stats.cpu_percent)))
    ram = max(0.0, min(100.0, 100 - ram_percent(stats)))
    total = (
        cpu * CPU_WEIGHT
        + ram * RAM_WEIGHT
        + uptime_tier(uptime) * UPTIME_WEIGHT
        + network_stability(_num(stats.packets_sent), _num(stats.packets_received)) * NETWORK_WEIGHT
    )
    # Half-up rounding.
    return int(math.floor(max(0.0, min(100.0, total)) + 0.5))


def health_status(
    node: NodeRecord | None,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> HealthStatus:
    """Classify *node* as Private, Critical, Warning, Excellent or Good.

    Evaluated top-down; the first matching tier wins.
    """
    if node is None or node.node_type != "public" or node.status != "online":
        return "Private"
    stats = node.stats
    if stats is None or (stats.cpu_percent is None and stats.uptime is None):
        return "Private"

    cpu = clamp_percent(_num(stats.cpu_percent))
    uptime_seconds = _num(stats.uptime)
    uptime_hours = uptime_seconds / SECONDS_PER_HOUR
    ram = ram_percent(stats)
    storage = storage_percent(stats)
    score = performance_score(node)
    has_score = score > 0
    t = thresholds

    if (
        uptime_seconds < t.critical_uptime_seconds
        or ram >= t.critical_percent
        or storage >= t.critical_percent
        or cpu >= t.critical_percent
        or (has_score and score < t.critical_score)
    ):
        return "Critical"

    if (
        uptime_hours < t.warning_uptime_hours
        or ram >= t.warning_resource_percent
        or storage >= t.warning_resource_percent
        or cpu >= t.warning_cpu_percent
        or (has_score and score < t.warning_score)
    ):
        return "Warning"

    if (
        cpu <= t.excellent_cpu_percent
        and uptime_hours >= t.excellent_uptime_hours
        and ram < t.excellent_resource_percent
        and storage < t.excellent_resource_percent
        and score >= t.excellent_score
    ):
        return "Excellent"

    return "Good"
