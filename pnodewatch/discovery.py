"""Crawl-cycle orchestration.

One cycle runs the phases in order: breadth-first discovery, gossip
metadata, ``get-stats``, geolocation, classification, scoring,
deduplication, zombie sweep, persistence and registry reconciliation.
"""

import asyncio
import logging
import sqlite3
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import TypeVar

import httpx

from pnodewatch.classifier import Classification, NetworkClassifier
from pnodewatch.config import CrawlerConfig
from pnodewatch.confidence import score_confidence
from pnodewatch.geolocation import GeoIPReader, GeoResolver, geolocate_all
from pnodewatch.health import HealthThresholds, health_status, performance_score
from pnodewatch.lifecycle import (
    StalePolicy,
    deduplicate,
    derive_node_type,
    has_gossip_metadata,
    next_failed_checks,
    sweep,
)
from pnodewatch.models import (
    CrawlSummary,
    GeoLocation,
    HistorySample,
    NetworkMetadata,
    NodeRecord,
    NodeStats,
    PodInfo,
)
from pnodewatch.persistence import (
    delete_nodes,
    init_db,
    load_failed_checks,
    load_known_locations,
    save_history,
    save_network_metadata,
    save_nodes,
    update_failed_checks,
)
from pnodewatch.ratelimit import MinIntervalScheduler
from pnodewatch.registry import RegistryClient, RegistrySnapshot, reconcile
from pnodewatch.rpc import RpcClient, drop_localhost
from pnodewatch.stats import is_localhost, merge_pod, merge_stats

logger = logging.getLogger(__name__)

T = TypeVar("T")


def batches(items: list[T], size: int) -> Iterable[list[T]]:
    """Yield consecutive slices of *items* of at most *size* elements."""
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def settled(coros: Iterable[Awaitable[T]]) -> list[T | None]:
    """Await all *coros*; a task that raised yields ``None``."""
    outcomes = await asyncio.gather(*coros, return_exceptions=True)
    results: list[T | None] = []
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            logger.debug("Task failed: %r", outcome)
            results.append(None)
        else:
            results.append(outcome)
    return results


class Crawler:
    """Runs crawl cycles against the pNode network.

    Every collaborator is injected so tests can swap the HTTP transport
    and the database.

    Args:
        config: Validated crawler configuration.
        conn: Open database connection (see ``persistence.init_db``).
        rpc: Peer RPC / gossip client.
        registry: Official registry client.
        resolver: Geolocation provider chain.
        scheduler: Spacing for new geolocation lookups; built from
            ``config.geo_requests_per_minute`` when omitted.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        conn: sqlite3.Connection,
        rpc: RpcClient,
        registry: RegistryClient,
        resolver: GeoResolver,
        scheduler: MinIntervalScheduler | None = None,
    ) -> None:
        self.config = config
        self.conn = conn
        self.rpc = rpc
        self.registry = registry
        self.resolver = resolver
        self.scheduler = scheduler or MinIntervalScheduler.per_minute(
            config.geo_requests_per_minute
        )
        self.policy = StalePolicy(
            failed_checks_no_gossip=config.stale_failed_checks_no_gossip,
            failed_checks_with_gossip=config.stale_failed_checks_with_gossip,
            delete_stale=config.delete_stale,
        )
        self.thresholds = HealthThresholds(warning_uptime_hours=config.warning_uptime_hours)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def discover(self) -> list[str]:
        """Breadth-first walk of the peer graph from the bootstrap nodes.

        Returns:
            Every visited IP, in visiting order.
        """
        visited: set[str] = set()
        order: list[str] = []
        queue = deque(ip for ip in self.config.bootstrap_nodes if not is_localhost(ip))

        while queue:
            batch: list[str] = []
            while queue and len(batch) < self.config.discovery_batch_size:
                ip = queue.popleft()
                if ip in visited:
                    continue
                visited.add(ip)
                order.append(ip)
                batch.append(ip)
            if not batch:
                break

            for peers in await settled(self._peers_of(ip) for ip in batch):
                for peer in peers or ():
                    if peer not in visited and not is_localhost(peer):
                        queue.append(peer)

        logger.info("Discovery found %d nodes", len(order))
        return order

    async def _peers_of(self, ip: str) -> list[str]:
        gossip, pods = await asyncio.gather(self.rpc.get_gossip_peers(ip), self.rpc.get_pods(ip))
        return drop_localhost(gossip + pods)

    async def collect_metadata(self, ips: list[str]) -> dict[str, PodInfo]:
        """Merge the gossip views of all *ips* into one map keyed by IP."""
        pods: dict[str, PodInfo] = {}
        for batch in batches(ips, self.config.rpc_batch_size):
            for views in await settled(self.rpc.get_pods_with_stats(ip) for ip in batch):
                for pod in views or ():
                    pods[pod.ip] = merge_pod(pods.get(pod.ip), pod)
        logger.info("Gossip metadata for %d nodes", len(pods))
        return pods

    async def collect_stats(
        self, ips: list[str], pods: dict[str, PodInfo]
    ) -> list[tuple[NodeStats, int] | None]:
        """Call ``get-stats`` on every IP; results align with *ips*."""
        results: list[tuple[NodeStats, int] | None] = []
        for batch in batches(ips, self.config.rpc_batch_size):
            results.extend(
                await settled(
                    self.rpc.get_stats(ip, self._ports_for(pods.get(ip))) for ip in batch
                )
            )
        logger.info(
            "get-stats answered by %d of %d nodes",
            sum(r is not None for r in results),
            len(ips),
        )
        return results

    def _ports_for(self, pod: PodInfo | None) -> tuple[int, ...]:
        defaults = self.config.rpc_ports
        if pod is None or pod.rpc_port is None:
            return defaults
        return (pod.rpc_port,) + tuple(p for p in defaults if p != pod.rpc_port)

    def build_records(
        self,
        ips: list[str],
        pods: dict[str, PodInfo],
        stats: list[tuple[NodeStats, int] | None],
        locations: list[GeoLocation | None],
        previous_checks: dict[str, int],
        snapshot: RegistrySnapshot,
        crawled_at: datetime,
    ) -> list[NodeRecord]:
        """Assemble one ``NodeRecord`` per IP from the collected phase data."""
        records = []
        for ip, answered, geo in zip(ips, stats, locations):
            pod = pods.get(ip)
            rpc_stats, port = answered if answered is not None else (None, None)
            seen = has_gossip_metadata(pod)
            reachable = rpc_stats is not None
            pubkey = pod.pubkey if pod else None

            record = NodeRecord(
                ip=ip,
                node_type=derive_node_type(pod.is_public if pod else None, reachable),
                pubkey=pubkey,
                version=pod.version if pod else None,
                rpc_port=port or (pod.rpc_port if pod else None),
                stats=merge_stats(rpc_stats, pod),
                failed_checks=next_failed_checks(previous_checks.get(ip), reachable),
                credits=snapshot.credits_for(pubkey),
                last_seen_gossip=pod.last_seen_timestamp if pod else None,
                last_crawled_at=crawled_at,
                has_gossip=seen,
            )
            record.apply_location(geo)
            records.append(record)
        return records

    async def classify_all(
        self, records: list[NodeRecord], classifier: NetworkClassifier
    ) -> None:
        """Set the network fields of every record."""
        for batch in batches(records, self.config.rpc_batch_size):
            decisions = await settled(
                classifier.classify(
                    ip=r.ip,
                    pubkey=r.pubkey,
                    version=r.version,
                    uptime=r.stats.uptime,
                    port=r.rpc_port,
                    storage_committed=r.stats.storage_committed,
                )
                for r in batch
            )
            for record, decision in zip(batch, decisions):
                if decision is None:
                    decision = classifier.classify_offline(
                        record.pubkey,
                        record.version,
                        record.stats.uptime,
                        record.rpc_port,
                        record.stats.storage_committed,
                    )
                _apply_classification(record, decision)

    def score(self, records: list[NodeRecord], snapshot: RegistrySnapshot) -> None:
        """Confidence, performance and health of every record."""
        for record in records:
            result = score_confidence(record, snapshot)
            record.confidence_score = result.score
            record.confidence_level = result.level
            record.sources = result.sources
            record.performance_score = performance_score(record)
            record.health_status = health_status(record, self.thresholds)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, force_registry: bool = False) -> CrawlSummary:
        """Run one full crawl cycle.

        Args:
            force_registry: Refetch the official registries even if the
                cached snapshot is still valid.

        Returns:
            A ``CrawlSummary`` describing the cycle.
        """
        started = time.monotonic()
        summary = CrawlSummary()
        crawled_at = summary.started_at

        snapshot = await self.registry.refresh(force=force_registry)

        ips = await self.discover()
        summary.discovered = len(ips)

        pods = await self.collect_metadata(ips)
        summary.with_metadata = sum(1 for ip in ips if ip in pods)

        stats = await self.collect_stats(ips, pods)
        summary.with_stats = sum(1 for s in stats if s is not None)

        known_locations = self._read(load_known_locations, {})
        locations, summary.geo_lookups = await geolocate_all(
            ips, known_locations, self.resolver, self.scheduler
        )
        summary.geolocated = sum(1 for g in locations if g is not None)

        previous_checks = self._read(load_failed_checks, {})
        records = self.build_records(
            ips, pods, stats, locations, previous_checks, snapshot, crawled_at
        )

        classifier = NetworkClassifier(snapshot, self.rpc, probe_enabled=self.config.probe_enabled)
        await self.classify_all(records, classifier)

        records = deduplicate(records)
        records, summary.stale, to_delete = sweep(records, self.policy, gossip_ips=pods)
        self.score(records, snapshot)
        summary.nodes = records

        ts = int(crawled_at.timestamp())
        summary.persistence["pnodes"] = self._write("pnodes", save_nodes, records)
        summary.persistence["pnode_history"] = self._write(
            "pnode_history", save_history, [HistorySample.from_record(r, ts) for r in records]
        )
        summary.persistence["network_metadata"] = self._write(
            "network_metadata",
            save_network_metadata,
            NetworkMetadata(
                network_total=len(ips),
                crawled_nodes=len(records),
                active_nodes=sum(1 for r in records if r.status == "online"),
                last_updated=crawled_at,
            ),
        )

        crawled = set(ips)
        unseen = {ip: count + 1 for ip, count in previous_checks.items() if ip not in crawled}
        summary.unseen_incremented = sorted(unseen)
        unseen_stale = sorted(
            ip for ip, count in unseen.items() if count >= self.policy.failed_checks_no_gossip
        )
        summary.stale = summary.stale + unseen_stale
        if self.policy.delete_stale:
            to_delete = to_delete + unseen_stale
            for ip in unseen_stale:
                del unseen[ip]
            unseen_stale = []
        if unseen:
            summary.persistence["unseen"] = self._write(
                "unseen", update_failed_checks, unseen, unseen_stale
            )

        if to_delete:
            summary.persistence["deleted"] = self._write("deleted", delete_nodes, to_delete)
            summary.deleted = list(to_delete)

        report = reconcile(records, snapshot)
        summary.reconciliation = report.counts()
        if report.missing_mainnet:
            logger.info(
                "%d MAINNET registry pods were not reached by the crawl",
                len(report.missing_mainnet),
            )
        if report.wrong_network:
            logger.warning(
                "%d nodes classified against their registry", len(report.wrong_network)
            )

        summary.duration_seconds = time.monotonic() - started
        logger.info(
            "Crawl cycle done in %.1fs: %d discovered, %d written, %d stale",
            summary.duration_seconds,
            summary.discovered,
            len(summary.nodes),
            len(summary.stale),
        )
        return summary

    def _read(self, func: Callable[[sqlite3.Connection], T], default: T) -> T:
        try:
            return func(self.conn)
        except sqlite3.Error as exc:
            logger.error("Reading %s failed: %s", func.__name__, exc)
            return default

    def _write(self, table: str, func: Callable[..., object], *args: object) -> bool:
        try:
            func(self.conn, *args)
        except sqlite3.Error as exc:
            self.conn.rollback()
            logger.error("Writing %s failed: %s", table, exc)
            return False
        return True


def _apply_classification(record: NodeRecord, decision: Classification) -> None:
    record.network = decision.network
    record.network_confidence = decision.confidence
    record.network_method = decision.method


async def run_crawl(
    config: CrawlerConfig,
    force_registry: bool = False,
    client: httpx.AsyncClient | None = None,
) -> CrawlSummary:
    """Build every collaborator from *config* and run one cycle.

    Args:
        config: Validated crawler configuration.
        force_registry: Bypass the registry cache.
        client: Optional shared ``httpx.AsyncClient`` (tests inject one
            backed by ``httpx.MockTransport``).  Not closed when given.

    Returns:
        The cycle's ``CrawlSummary``.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=config.rpc_timeout)
    conn = init_db(config.db_path)
    local_db = GeoIPReader(config.maxmind_city_db) if config.maxmind_city_db else None

    try:
        crawler = Crawler(
            config,
            conn,
            rpc=RpcClient(
                timeout=config.rpc_timeout,
                ports=config.rpc_ports,
                gossip_port=config.gossip_port,
                client=client,
            ),
            registry=RegistryClient(
                client,
                mainnet_url=config.registry_mainnet_url,
                devnet_url=config.registry_devnet_url,
                timeout=config.registry_timeout,
                ttl=config.registry_ttl_seconds,
            ),
            resolver=GeoResolver(client, timeout=config.geo_timeout, local_db=local_db),
        )
        return await crawler.run_cycle(force_registry=force_registry)
    finally:
        if local_db is not None:
            local_db.close()
        conn.close()
        if owns_client:
            await client.aclose()
