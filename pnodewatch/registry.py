"""Official pod-credits registries for MAINNET and DEVNET."""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from pnodewatch.config import DEVNET_REGISTRY_URL, MAINNET_REGISTRY_URL
from pnodewatch.models import NodeRecord
from pnodewatch.stats import coerce_number, coerce_string

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_TIMEOUT = 10.0


@dataclass
class RegistrySnapshot:
    """Identity → credits lookups for both sub-networks.

    Attributes:
        mainnet_credits: Credits per pod identity in the MAINNET registry.
        devnet_credits: Credits per pod identity in the DEVNET registry.
        fetched_at: When the snapshot was fetched (UTC), ``None`` if empty.
    """

    mainnet_credits: dict[str, float] = field(default_factory=dict)
    devnet_credits: dict[str, float] = field(default_factory=dict)
    fetched_at: datetime | None = None

    @property
    def mainnet_loaded(self) -> bool:
        return bool(self.mainnet_credits)

    @property
    def devnet_loaded(self) -> bool:
        return bool(self.devnet_credits)

    def is_mainnet(self, pubkey: str | None) -> bool:
        return bool(pubkey) and pubkey in self.mainnet_credits

    def is_devnet(self, pubkey: str | None) -> bool:
        return bool(pubkey) and pubkey in self.devnet_credits

    def credits_for(self, pubkey: str | None) -> float:
        """Credits for *pubkey*: MAINNET first, then DEVNET, else 0."""
        if not pubkey:
            return 0.0
        if pubkey in self.mainnet_credits:
            return self.mainnet_credits[pubkey]
        return self.devnet_credits.get(pubkey, 0.0)


@dataclass
class ReconciliationReport:
    """Differences between the crawled nodes and the official registries.

    Attributes:
        missing_mainnet: MAINNET identities the crawl never saw
            (registry-only nodes).
        missing_devnet: DEVNET identities the crawl never saw.
        wrong_network: ``(pubkey, classified, official)`` for nodes whose
            classification disagrees with the registry.
        unregistered: Identities seen by the crawl but in neither registry.
    """

    missing_mainnet: list[str] = field(default_factory=list)
    missing_devnet: list[str] = field(default_factory=list)
    wrong_network: list[tuple[str, str, str]] = field(default_factory=list)
    unregistered: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "missing_mainnet": len(self.missing_mainnet),
            "missing_devnet": len(self.missing_devnet),
            "wrong_network": len(self.wrong_network),
            "unregistered": len(self.unregistered),
        }


class RegistryClient:
    """Fetches and caches the two official registries.

    Registry data is an enrichment: a list that cannot be fetched becomes
    empty and the crawl carries on.

    Args:
        client: Shared ``httpx.AsyncClient``.
        mainnet_url: MAINNET pod-credits endpoint.
        devnet_url: DEVNET pod-credits endpoint.
        timeout: Per-request timeout in seconds.
        ttl: Seconds a snapshot stays valid.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        mainnet_url: str = MAINNET_REGISTRY_URL,
        devnet_url: str = DEVNET_REGISTRY_URL,
        timeout: float = DEFAULT_TIMEOUT,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.mainnet_url = mainnet_url
        self.devnet_url = devnet_url
        self.timeout = timeout
        self.ttl = ttl
        self._clock = clock
        self._snapshot: RegistrySnapshot | None = None
        self._expires_at: float | None = None

    @property
    def snapshot(self) -> RegistrySnapshot:
        """The last fetched snapshot (empty before the first refresh)."""
        return self._snapshot or RegistrySnapshot()

    def is_cache_valid(self) -> bool:
        return self._expires_at is not None and self._clock() < self._expires_at

    async def refresh(self, force: bool = False) -> RegistrySnapshot:
        """Return a snapshot, fetching both lists unless the cache is valid.

        Args:
            force: Bypass the validity window.
        """
        if not force and self.is_cache_valid() and self._snapshot is not None:
            logger.debug("Registry cache still valid; skipping fetch")
            return self._snapshot

        mainnet = await self._fetch(self.mainnet_url, "MAINNET")
        devnet = await self._fetch(self.devnet_url, "DEVNET")

        self._snapshot = RegistrySnapshot(
            mainnet_credits=mainnet,
            devnet_credits=devnet,
            fetched_at=datetime.now(UTC),
        )
        self._expires_at = self._clock() + self.ttl
        logger.info(
            "Official registries loaded: %d MAINNET, %d DEVNET pods",
            len(mainnet),
            len(devnet),
        )
        return self._snapshot

    async def _fetch(self, url: str, label: str) -> dict[str, float]:
        try:
            response = await self._client.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch %s registry from %s: %s", label, url, exc)
            return {}

        pods = data.get("pods_credits") if isinstance(data, dict) else None
        if not isinstance(pods, list):
            logger.warning("%s registry reply has no pods_credits array", label)
            return {}
        return parse_pod_credits(pods)


def parse_pod_credits(pods: Iterable[object]) -> dict[str, float]:
    """Build an identity → credits map from ``pods_credits`` entries."""
    credits: dict[str, float] = {}
    for pod in pods:
        if not isinstance(pod, dict):
            continue
        pod_id = coerce_string(pod.get("pod_id"))
        if pod_id:
            credits[pod_id] = coerce_number(pod.get("credits"))
    return credits


def reconcile(nodes: Iterable[NodeRecord], snapshot: RegistrySnapshot) -> ReconciliationReport:
    """Compare classified nodes against the official registries."""
    report = ReconciliationReport()
    seen: set[str] = set()
    unregistered: set[str] = set()

    for node in nodes:
        if not node.pubkey:
            continue
        seen.add(node.pubkey)
        in_mainnet = snapshot.is_mainnet(node.pubkey)
        in_devnet = snapshot.is_devnet(node.pubkey)

        if in_mainnet and node.network != "MAINNET":
            report.wrong_network.append((node.pubkey, node.network, "MAINNET"))
        elif in_devnet and not in_mainnet and node.network != "DEVNET":
            report.wrong_network.append((node.pubkey, node.network, "DEVNET"))
        elif not in_mainnet and not in_devnet:
            unregistered.add(node.pubkey)

    report.missing_mainnet = sorted(set(snapshot.mainnet_credits) - seen)
    report.missing_devnet = sorted(set(snapshot.devnet_credits) - seen)
    report.unregistered = sorted(unregistered)
    return report
