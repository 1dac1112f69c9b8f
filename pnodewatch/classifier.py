"""MAINNET / DEVNET classification of discovered nodes.

Rules, first match wins:

1. Official registry membership (MAINNET list, exclusion from a loaded
   MAINNET list, DEVNET list).
2. Direct RPC probe for a self-reported cluster/version marker.
3. Weighted heuristics, only for nodes without an identity.
4. DEVNET/medium for identified nodes nothing else decided.
"""

import logging
import re
from dataclasses import dataclass, field

from pnodewatch.models import Network, NetworkConfidence
from pnodewatch.registry import RegistrySnapshot
from pnodewatch.rpc import RpcClient
from pnodewatch.versioning import normalize_version

logger = logging.getLogger(__name__)

TB = 1e12
SECONDS_PER_DAY = 86400

MAINNET_MIN_SCORE = 60
DEVNET_MIN_SCORE = 30

_STABLE_VERSION = re.compile(r"^\d+\.\d+\.\d+$")
_DEV_VERSION_MARKERS = ("trynet", "devnet", "testnet")


@dataclass(frozen=True)
class HeuristicWeights:
    """Indicator weights for anonymous-node pattern scoring."""

    mainnet_port: int = 9001
    devnet_port: int = 6000
    mainnet_port_weight: int = 45
    devnet_port_weight: int = 15
    dev_version_weight: int = 90
    stable_version_weight: int = 30
    long_uptime_days: float = 30
    long_uptime_weight: int = 20
    short_uptime_days: float = 7
    short_uptime_weight: int = 15
    # (threshold in TB, MAINNET weight), checked largest first.
    storage_tiers: tuple[tuple[float, int], ...] = ((15, 50), (10, 40), (5, 30))
    small_storage_tb: float = 1
    small_storage_weight: int = 25


DEFAULT_WEIGHTS = HeuristicWeights()


@dataclass
class Classification:
    """Network decision for one node.

    Attributes:
        network: Decided sub-network.
        confidence: Confidence tier of the decision.
        method: Rule that decided (``official_registry``,
            ``official_registry_exclusion``, ``devnet_registry``,
            ``rpc_probe``, ``pattern_analysis``, ``default_devnet``).
        reasons: Human-readable indicators behind the decision.
    """

    network: Network
    confidence: NetworkConfidence
    method: str
    reasons: list[str] = field(default_factory=list)


def analyze_patterns(
    version: str | None = None,
    uptime: float | None = None,
    port: int | None = None,
    storage_committed: float | None = None,
    weights: HeuristicWeights = DEFAULT_WEIGHTS,
) -> Classification:
    """Score heuristic indicators for a node that has no identity.

    Zero or missing uptime / storage contribute no indicator.
    """
    indicators: list[tuple[Network, int, str]] = []

    if port == weights.mainnet_port:
        indicators.append(("MAINNET", weights.mainnet_port_weight, f"port {port}"))
    elif port == weights.devnet_port:
        indicators.append(("DEVNET", weights.devnet_port_weight, f"port {port}"))

    normalized = normalize_version(version)
    if normalized:
        lowered = normalized.lower()
        if any(marker in lowered for marker in _DEV_VERSION_MARKERS):
            indicators.append(("DEVNET", weights.dev_version_weight, "dev/test version marker"))
        elif _STABLE_VERSION.match(normalized):
            indicators.append(("MAINNET", weights.stable_version_weight, "stable release version"))

    if uptime:
        days = uptime / SECONDS_PER_DAY
        if days > weights.long_uptime_days:
            indicators.append(("MAINNET", weights.long_uptime_weight, f"uptime {days:.0f}d"))
        elif days < weights.short_uptime_days:
            indicators.append(("DEVNET", weights.short_uptime_weight, f"uptime {days:.1f}d"))

    if storage_committed:
        tb = storage_committed / TB
        for threshold, weight in weights.storage_tiers:
            if tb > threshold:
                indicators.append(("MAINNET", weight, f"storage > {threshold:g}TB"))
                break
        else:
            if tb < weights.small_storage_tb:
                indicators.append(
                    ("DEVNET", weights.small_storage_weight, f"storage < {weights.small_storage_tb:g}TB")
                )

    mainnet = sum(w for net, w, _ in indicators if net == "MAINNET")
    devnet = sum(w for net, w, _ in indicators if net == "DEVNET")
    reasons = [reason for _, _, reason in indicators]

    if mainnet > devnet and mainnet >= MAINNET_MIN_SCORE:
        confidence: NetworkConfidence = "high" if mainnet > 90 else "medium" if mainnet > 70 else "low"
        return Classification("MAINNET", confidence, "pattern_analysis", reasons)
    if devnet > mainnet and devnet >= DEVNET_MIN_SCORE:
        confidence = "high" if devnet > 80 else "medium" if devnet > 50 else "low"
        return Classification("DEVNET", confidence, "pattern_analysis", reasons)

    return Classification("DEVNET", "low", "pattern_analysis", reasons + ["insufficient score"])


class NetworkClassifier:
    """Decides sub-network membership for each node.

    Built once per crawl run around the registry snapshot of that run.

    Args:
        snapshot: Official registries for this run.
        rpc: Client used for the direct probe; ``None`` disables probing.
        probe_enabled: Whether rule 2 runs at all.
        weights: Heuristic indicator weights.
    """

    def __init__(
        self,
        snapshot: RegistrySnapshot,
        rpc: RpcClient | None = None,
        probe_enabled: bool = True,
        weights: HeuristicWeights = DEFAULT_WEIGHTS,
    ) -> None:
        self.snapshot = snapshot
        self.rpc = rpc
        self.probe_enabled = probe_enabled and rpc is not None
        self.weights = weights

    def by_registry(self, pubkey: str | None) -> Classification | None:
        """Rule 1: registry membership, or ``None`` if it does not apply."""
        if not pubkey:
            return None
        if self.snapshot.is_mainnet(pubkey):
            return Classification("MAINNET", "high", "official_registry")
        if self.snapshot.mainnet_loaded:
            return Classification("DEVNET", "high", "official_registry_exclusion")
        if self.snapshot.is_devnet(pubkey):
            return Classification("DEVNET", "high", "devnet_registry")
        return None

    def fallback(
        self,
        pubkey: str | None,
        version: str | None,
        uptime: float | None,
        port: int | None,
        storage_committed: float | None,
    ) -> Classification:
        """Rules 3 and 4."""
        if not pubkey:
            return analyze_patterns(version, uptime, port, storage_committed, self.weights)
        return Classification(
            "DEVNET", "medium", "default_devnet", ["identity not in any registry"]
        )

    def classify_offline(
        self,
        pubkey: str | None = None,
        version: str | None = None,
        uptime: float | None = None,
        port: int | None = None,
        storage_committed: float | None = None,
    ) -> Classification:
        """Classify without touching the network (rules 1, 3, 4)."""
        return self.by_registry(pubkey) or self.fallback(
            pubkey, version, uptime, port, storage_committed
        )

    async def classify(
        self,
        ip: str | None = None,
        pubkey: str | None = None,
        version: str | None = None,
        uptime: float | None = None,
        port: int | None = None,
        storage_committed: float | None = None,
    ) -> Classification:
        """Classify one node, probing it over RPC when rule 1 is silent."""
        decided = self.by_registry(pubkey)
        if decided is not None:
            return decided

        if self.probe_enabled and ip:
            marker = await self.rpc.get_cluster_marker(ip, port)
            if marker is not None:
                logger.debug("Probe of %s reported %s", ip, marker)
                return Classification(marker, "high", "rpc_probe", ["self-reported cluster"])

        return self.fallback(pubkey, version, uptime, port, storage_committed)
