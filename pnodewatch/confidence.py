"""Multi-source confidence scoring.

MAINNET nodes are registry-driven: without a registry entry the score is
0.  Every other node is discovery-driven, with the DEVNET registry as a
bonus confirmation.
"""

from dataclasses import dataclass, field
from typing import Literal

from pnodewatch.models import ConfidenceLevel, NodeRecord, NodeStats
from pnodewatch.registry import RegistrySnapshot

MAINNET_REGISTRY_POINTS = 70
MAINNET_GOSSIP_POINTS = 15
MAINNET_RPC_POINTS = 15

DEVNET_GOSSIP_POINTS = 50
DEVNET_RPC_POINTS = 30
DEVNET_REGISTRY_POINTS = 20

CONFIRMED_SCORE = 85
VALIDATED_SCORE = 70
DISCOVERED_SCORE = 50


@dataclass
class ConfidenceResult:
    """Score plus the sources that produced it."""

    score: int
    sources: list[str] = field(default_factory=list)
    primary: Literal["api", "discovery"] = "discovery"
    verified: bool = False
    level: ConfidenceLevel = "uncertain"


def confidence_level(score: int) -> ConfidenceLevel:
    if score >= CONFIRMED_SCORE:
        return "confirmed"
    if score >= VALIDATED_SCORE:
        return "validated"
    if score >= DISCOVERED_SCORE:
        return "discovered"
    return "uncertain"


def has_live_metrics(stats: NodeStats | None) -> bool:
    """True if at least one core metric is a positive number.

    All-zero stats count as no data, not as an idle node.
    """
    if stats is None:
        return False
    return any(
        value is not None and value > 0
        for value in (stats.uptime, stats.cpu_percent, stats.ram_used, stats.storage_committed)
    )


def score_confidence(node: NodeRecord, snapshot: RegistrySnapshot) -> ConfidenceResult:
    """Compute the 0-100 confidence score of *node*."""
    sources: list[str] = []
    score = 0
    live = has_live_metrics(node.stats)
    visible = node.node_type != "private"

    if node.network == "MAINNET":
        if not snapshot.is_mainnet(node.pubkey):
            return ConfidenceResult(score=0, sources=[], primary="api", verified=False)

        sources += ["official_api", "mainnet_registry"]
        score += MAINNET_REGISTRY_POINTS
        if visible:
            sources.append("gossip")
            score += MAINNET_GOSSIP_POINTS
        if live:
            sources.append("rpc")
            score += MAINNET_RPC_POINTS
        primary: Literal["api", "discovery"] = "api"
    else:
        if visible:
            sources.append("gossip")
            score += DEVNET_GOSSIP_POINTS
        if live:
            sources.append("rpc")
            score += DEVNET_RPC_POINTS
        if snapshot.is_devnet(node.pubkey):
            sources += ["official_api", "devnet_registry"]
            score += DEVNET_REGISTRY_POINTS
        primary = "discovery"

    score = min(score, 100)
    return ConfidenceResult(
        score=score,
        sources=sources,
        primary=primary,
        verified=live,
        level=confidence_level(score),
    )
