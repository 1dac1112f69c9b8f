"""Aggregator: network split, health distribution, lifecycle counts, versions, top countries."""

import logging
from dataclasses import dataclass, field

from pnodewatch.models import NodeRecord
from pnodewatch.versioning import consensus_version, version_family

logger = logging.getLogger(__name__)


@dataclass
class AggregatedResult:
    """Aggregated statistics computed from a crawl's node records.

    Attributes:
        network_counts: Nodes per sub-network.
        health_counts: Nodes per health status.
        status_counts: Nodes per lifecycle status.
        confidence_counts: Nodes per confidence level.
        version_family_counts: Nodes per release family label.
        consensus_version: Most common version among public nodes.
        country_distribution: ``(country_name, count)`` pairs sorted by
            count descending.
        total_credits: Sum of registry credits over all nodes.
    """

    network_counts: dict[str, int] = field(default_factory=dict)
    health_counts: dict[str, int] = field(default_factory=dict)
    status_counts: dict[str, int] = field(default_factory=dict)
    confidence_counts: dict[str, int] = field(default_factory=dict)
    version_family_counts: dict[str, int] = field(default_factory=dict)
    consensus_version: str | None = None
    country_distribution: list[tuple[str, int]] = field(default_factory=list)
    total_credits: float = 0.0


def _count(counts: dict[str, int], key: str) -> None:
    counts[key] = counts.get(key, 0) + 1


def aggregate(nodes: list[NodeRecord]) -> AggregatedResult:
    """Compute aggregate statistics from a list of node records.

    Args:
        nodes: Classified and scored node records.

    Returns:
        An ``AggregatedResult``.
    """
    result = AggregatedResult()
    country_counts: dict[str, int] = {}

    for node in nodes:
        _count(result.network_counts, node.network)
        _count(result.health_counts, node.health_status)
        _count(result.status_counts, node.status)
        _count(result.confidence_counts, node.confidence_level)
        family = version_family(node.version, is_private=node.node_type == "private")
        _count(result.version_family_counts, family.label)
        if node.country:
            _count(country_counts, node.country)
        result.total_credits += node.credits

    result.country_distribution = sorted(
        country_counts.items(), key=lambda item: item[1], reverse=True
    )
    result.consensus_version = consensus_version(nodes)
    return result


def aggregate_to_meta(nodes: list[NodeRecord]) -> dict:
    """Compute aggregate statistics and return them as a plain dict.

    Convenience wrapper around ``aggregate()`` in the shape expected by
    ``output.render``.
    """
    result = aggregate(nodes)
    return {
        "network_counts": result.network_counts,
        "health_counts": result.health_counts,
        "status_counts": result.status_counts,
        "confidence_counts": result.confidence_counts,
        "version_family_counts": result.version_family_counts,
        "consensus_version": result.consensus_version,
        "country_distribution": result.country_distribution,
        "total_credits": result.total_credits,
    }
