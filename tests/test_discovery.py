"""End-to-end tests for pnodewatch.discovery against a simulated network."""

import asyncio
import json
import sqlite3
from unittest.mock import MagicMock

import httpx
import pytest

from pnodewatch.config import CrawlerConfig
from pnodewatch.discovery import Crawler, batches, run_crawl, settled
from pnodewatch.geolocation import GeoResolver
from pnodewatch.health import health_status, performance_score
from pnodewatch.models import CrawlSummary, NetworkMetadata, NodeRecord
from pnodewatch.persistence import (
    init_db,
    load_network_metadata,
    load_nodes,
    save_network_metadata,
    save_nodes,
)
from pnodewatch.ratelimit import MinIntervalScheduler
from pnodewatch.registry import RegistryClient
from pnodewatch.rpc import RpcClient

DAY = 86400
A, B, C = "10.0.0.1", "10.0.0.2", "10.0.0.3"

LIVE_STATS = {
    "cpu_percent": 10,
    "ram_used": 2e9,
    "ram_total": 8e9,
    "uptime": 40 * DAY,
    "packets_sent": 1000,
    "packets_received": 1000,
}


def _pod(ip: str, **fields: object) -> dict:
    return {"address": f"{ip}:9001", **fields}


GOSSIP_VIEW = [
    _pod(
        A,
        pubkey="pkA",
        version="0.8.0",
        is_public=True,
        rpc_port=6000,
        storage_committed=2e12,
        storage_used=1e11,
        last_seen_timestamp=1_700_000_000,
    ),
    _pod(B, pubkey="pkB", version="1.0.0", is_public=True, rpc_port=9001, storage_committed=2e12),
    _pod(C, pubkey="pkC", is_public=False),
    _pod("127.0.0.1", pubkey="self"),
]


def _default_nodes() -> dict[str, dict]:
    """A answers everything, B answers get-stats only on 9001, C is unreachable."""
    return {
        A: {"gossip": [B], "pods": [C, "127.0.0.1"], "view": GOSSIP_VIEW, "stats": LIVE_STATS},
        B: {"gossip": [A], "pods": [], "view": [], "stats": LIVE_STATS, "stats_port": 9001},
    }


class FakeNetwork:
    """``httpx.MockTransport`` handler simulating peers and upstream APIs."""

    def __init__(
        self,
        nodes: dict[str, dict] | None = None,
        mainnet: dict[str, float] | None = None,
        devnet: dict[str, float] | None = None,
    ) -> None:
        self.nodes = _default_nodes() if nodes is None else nodes
        self.mainnet = {"pkB": 12.0} if mainnet is None else mainnet
        self.devnet = {"pkA": 3.0} if devnet is None else devnet
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.requests.append(f"{host}:{request.url.port}{request.url.path}")

        if host == "registry.test":
            credits = self.mainnet if request.url.path == "/mainnet" else self.devnet
            return httpx.Response(
                200,
                json={"pods_credits": [{"pod_id": k, "credits": v} for k, v in credits.items()]},
            )
        if host == "ipwho.is":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "latitude": 52.37,
                    "longitude": 4.89,
                    "city": "Amsterdam",
                    "country": "Netherlands",
                    "country_code": "NL",
                },
            )

        node = self.nodes.get(host)
        if node is None:
            raise httpx.ConnectError("unreachable", request=request)

        if request.url.path == "/gossip":
            return httpx.Response(200, json={"pnodes": [{"ip": ip} for ip in node["gossip"]]})

        method = json.loads(request.content)["method"]
        if method == "get-pods":
            return _result({"pods": [{"address": f"{ip}:9001"} for ip in node["pods"]]})
        if method == "get-pods-with-stats":
            return _result({"pods": node["view"]})
        if method == "get-stats":
            if node.get("stats") is None or request.url.port != node.get("stats_port", 6000):
                raise httpx.ConnectError("refused", request=request)
            return _result(node["stats"])
        return httpx.Response(200, json={"error": {"message": "method not found"}})


def _result(payload: object) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": payload})


def _config(**overrides: object) -> CrawlerConfig:
    defaults: dict = {
        "db_path": ":memory:",
        "bootstrap_nodes": [A],
        "registry_mainnet_url": "https://registry.test/mainnet",
        "registry_devnet_url": "https://registry.test/devnet",
    }
    defaults.update(overrides)
    return CrawlerConfig(**defaults)


def _crawl(
    network: FakeNetwork,
    conn: sqlite3.Connection,
    config: CrawlerConfig | None = None,
    rounds: int = 1,
) -> list[CrawlSummary]:
    cfg = config or _config()

    async def no_sleep(_: float) -> None:
        return None

    async def main() -> list[CrawlSummary]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(network)) as client:
            crawler = Crawler(
                cfg,
                conn,
                rpc=RpcClient(ports=cfg.rpc_ports, client=client),
                registry=RegistryClient(
                    client,
                    mainnet_url=cfg.registry_mainnet_url,
                    devnet_url=cfg.registry_devnet_url,
                ),
                resolver=GeoResolver(client),
                scheduler=MinIntervalScheduler(1.0, sleep=no_sleep),
            )
            return [await crawler.run_cycle() for _ in range(rounds)]

    return asyncio.run(main())


def _by_ip(records: list[NodeRecord]) -> dict[str, NodeRecord]:
    return {r.ip: r for r in records}


@pytest.fixture()
def conn() -> sqlite3.Connection:
    connection = init_db(":memory:")
    yield connection
    connection.close()


# ---------------------------------------------------------------------------
# Tests: helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_batches(self) -> None:
        assert list(batches([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(batches([], 3)) == []

    def test_settled_turns_exceptions_into_none(self) -> None:
        async def ok() -> int:
            return 1

        async def boom() -> int:
            raise RuntimeError("boom")

        async def main() -> list[int | None]:
            return await settled([ok(), boom(), ok()])

        assert asyncio.run(main()) == [1, None, 1]


# ---------------------------------------------------------------------------
# Tests: one cycle
# ---------------------------------------------------------------------------


class TestCycle:
    """A single cycle against the simulated network."""

    def test_phase_counts(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(), conn)

        assert summary.discovered == 3
        assert summary.with_metadata == 3
        assert summary.with_stats == 2
        assert summary.geolocated == 0
        assert summary.geo_lookups == 0
        assert [n.ip for n in summary.nodes] == [A, B, C]
        assert summary.persistence == {
            "pnodes": True,
            "pnode_history": True,
            "network_metadata": True,
        }

    def test_localhost_never_crawled(self, conn: sqlite3.Connection) -> None:
        network = FakeNetwork()
        _crawl(network, conn)
        assert not any(r.startswith("127.0.0.1") for r in network.requests)

    def test_stats_use_advertised_port(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(), conn)
        nodes = _by_ip(summary.nodes)

        assert nodes[A].rpc_port == 6000
        assert nodes[B].rpc_port == 9001
        assert nodes[B].stats.cpu_percent == 10.0

    def test_classification_follows_registries(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(), conn)
        nodes = _by_ip(summary.nodes)

        assert (nodes[B].network, nodes[B].network_method) == ("MAINNET", "official_registry")
        assert nodes[A].network == "DEVNET"
        assert nodes[C].network == "DEVNET"
        assert nodes[A].credits == 3.0
        assert nodes[B].credits == 12.0
        assert nodes[C].credits == 0.0

    def test_scores(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(), conn)
        nodes = _by_ip(summary.nodes)

        assert nodes[A].node_type == "public"
        assert nodes[A].confidence_score == 100
        assert nodes[B].confidence_score == 100
        assert nodes[B].confidence_level == "confirmed"
        assert nodes[A].performance_score == 90
        assert nodes[A].health_status == "Excellent"

        assert nodes[C].node_type == "private"
        assert nodes[C].performance_score == 0
        assert nodes[C].health_status == "Private"
        assert nodes[C].confidence_score == 0

    def test_gossip_values_win_merge(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(), conn)
        stats = _by_ip(summary.nodes)[A].stats

        assert stats.storage_committed == 2e12
        assert stats.storage_used == 1e11
        assert stats.cpu_percent == 10.0

    def test_persisted(self, conn: sqlite3.Connection) -> None:
        _crawl(FakeNetwork(), conn)

        assert {n.ip for n in load_nodes(conn)} == {A, B, C}
        (history,) = conn.execute("SELECT COUNT(*) FROM pnode_history").fetchone()
        assert history == 3
        meta = load_network_metadata(conn)
        assert (meta.network_total, meta.crawled_nodes, meta.active_nodes) == (3, 3, 3)

    def test_reconciliation(self, conn: sqlite3.Connection) -> None:
        network = FakeNetwork(mainnet={"pkB": 1.0, "pkZ": 1.0})
        (summary,) = _crawl(network, conn)

        assert summary.reconciliation["missing_mainnet"] == 1
        assert summary.reconciliation["wrong_network"] == 0

    def test_unreachable_bootstrap(self, conn: sqlite3.Connection) -> None:
        (summary,) = _crawl(FakeNetwork(nodes={}), conn)

        assert summary.discovered == 1
        assert summary.with_stats == 0
        (node,) = summary.nodes
        assert node.node_type == "unknown"
        assert node.failed_checks == 1


# ---------------------------------------------------------------------------
# Tests: across cycles
# ---------------------------------------------------------------------------


class TestAcrossCycles:
    def test_idempotent(self, conn: sqlite3.Connection) -> None:
        first, second = _crawl(FakeNetwork(), conn, rounds=2)

        for a, b in zip(first.nodes, second.nodes):
            assert (a.network, a.confidence_score, a.health_status) == (
                b.network,
                b.confidence_score,
                b.health_status,
            )
        assert len(load_nodes(conn)) == 3
        (history,) = conn.execute("SELECT COUNT(*) FROM pnode_history").fetchone()
        assert history == 6

    def test_node_without_metadata_goes_stale(self, conn: sqlite3.Connection) -> None:
        nodes = _default_nodes()
        nodes[A]["pods"] = [C, "10.0.0.4"]

        first, second = _crawl(FakeNetwork(nodes=nodes), conn, rounds=2)

        assert _by_ip(first.nodes)["10.0.0.4"].failed_checks == 1
        assert "10.0.0.4" not in first.stale
        assert second.stale == ["10.0.0.4"]
        assert _by_ip(second.nodes)["10.0.0.4"].status == "stale"
        assert _by_ip(load_nodes(conn))["10.0.0.4"].status == "stale"

    def test_unseen_known_node(self, conn: sqlite3.Connection) -> None:
        save_nodes(conn, [NodeRecord(ip="10.9.9.9", failed_checks=1, network="MAINNET")])

        (summary,) = _crawl(FakeNetwork(), conn)

        assert summary.unseen_incremented == ["10.9.9.9"]
        assert "10.9.9.9" in summary.stale
        row = _by_ip(load_nodes(conn))["10.9.9.9"]
        assert row.failed_checks == 2
        assert row.status == "stale"
        assert row.network == "MAINNET"

    def test_unseen_node_deleted_when_configured(self, conn: sqlite3.Connection) -> None:
        save_nodes(conn, [NodeRecord(ip="10.9.9.9", failed_checks=1)])

        (summary,) = _crawl(FakeNetwork(), conn, config=_config(delete_stale=True))

        assert summary.deleted == ["10.9.9.9"]
        assert "10.9.9.9" not in _by_ip(load_nodes(conn))

    def test_answered_stats_resets_counter(self, conn: sqlite3.Connection) -> None:
        save_nodes(conn, [NodeRecord(ip=A, failed_checks=3), NodeRecord(ip=C, failed_checks=1)])

        (summary,) = _crawl(FakeNetwork(), conn)
        nodes = _by_ip(summary.nodes)

        assert nodes[A].failed_checks == 0
        assert nodes[C].failed_checks == 2
        assert nodes[C].status == "online"

    def test_unreachable_gossip_node_goes_stale(self, conn: sqlite3.Connection) -> None:
        summaries = _crawl(FakeNetwork(), conn, rounds=4)

        nodes = [_by_ip(s.nodes)[C] for s in summaries]
        assert [n.failed_checks for n in nodes] == [1, 2, 3, 4]
        assert [n.status for n in nodes] == ["online", "online", "online", "stale"]
        assert summaries[-1].stale == [C]
        assert _by_ip(load_nodes(conn))[C].status == "stale"

    def test_answering_node_outside_gossip_stays_online(self, conn: sqlite3.Connection) -> None:
        nodes = _default_nodes()
        nodes[A]["pods"] = [C, "10.0.0.4"]
        nodes["10.0.0.4"] = {"gossip": [], "pods": [], "view": [], "stats": LIVE_STATS}

        summaries = _crawl(FakeNetwork(nodes=nodes), conn, rounds=3)

        for summary in summaries:
            node = _by_ip(summary.nodes)["10.0.0.4"]
            assert node.failed_checks == 0
            assert node.status == "online"
            assert "10.0.0.4" not in summary.stale

    def test_stale_node_persisted_with_matching_health(self, conn: sqlite3.Connection) -> None:
        nodes = _default_nodes()
        nodes[A]["pods"] = [C, "10.0.0.4"]
        nodes["10.0.0.4"] = {
            "gossip": [],
            "pods": [],
            "view": [],
            "stats": {**LIVE_STATS, "uptime": 0},
        }

        (summary,) = _crawl(FakeNetwork(nodes=nodes), conn)

        assert summary.stale == ["10.0.0.4"]
        stored = _by_ip(load_nodes(conn))["10.0.0.4"]
        assert stored.status == "stale"
        assert stored.health_status == "Private"
        assert stored.health_status == health_status(stored)
        assert stored.performance_score == performance_score(stored)


# ---------------------------------------------------------------------------
# Tests: persistence failures
# ---------------------------------------------------------------------------


class TestBestEffortPersistence:
    def test_one_table_failure_does_not_stop_others(self, conn: sqlite3.Connection) -> None:
        conn.execute("DROP TABLE pnode_history")

        (summary,) = _crawl(FakeNetwork(), conn)

        assert summary.persistence["pnode_history"] is False
        assert summary.persistence["pnodes"] is True
        assert summary.persistence["network_metadata"] is True
        assert len(load_nodes(conn)) == 3

    def test_failed_write_rolled_back_before_next_table(self, conn: sqlite3.Connection) -> None:
        crawler = Crawler(
            _config(), conn, rpc=MagicMock(), registry=MagicMock(), resolver=MagicMock()
        )
        records = [NodeRecord(ip="10.7.7.1"), NodeRecord(ip="10.7.7.2", status=None)]

        assert crawler._write("pnodes", save_nodes, records) is False
        meta = NetworkMetadata(network_total=2, crawled_nodes=2, active_nodes=1)
        assert crawler._write("network_metadata", save_network_metadata, meta) is True

        assert load_nodes(conn) == []
        assert load_network_metadata(conn).network_total == 2


# ---------------------------------------------------------------------------
# Tests: run_crawl
# ---------------------------------------------------------------------------


class TestRunCrawl:
    def test_builds_collaborators_and_persists(self, tmp_path: pytest.TempPathFactory) -> None:
        public_ip = "8.8.4.4"
        network = FakeNetwork(
            nodes={
                public_ip: {
                    "gossip": [],
                    "pods": [],
                    "view": [_pod(public_ip, pubkey="pkP", is_public=True)],
                    "stats": LIVE_STATS,
                }
            }
        )
        db_path = tmp_path / "pnodes.db"
        cfg = _config(db_path=str(db_path), bootstrap_nodes=[public_ip])

        async def main() -> CrawlSummary:
            async with httpx.AsyncClient(transport=httpx.MockTransport(network)) as client:
                return await run_crawl(cfg, client=client)

        summary = asyncio.run(main())

        assert summary.geo_lookups == 1
        (node,) = summary.nodes
        assert node.city == "Amsterdam"

        conn = init_db(str(db_path))
        try:
            (stored,) = load_nodes(conn)
        finally:
            conn.close()
        assert stored.country_code == "NL"
