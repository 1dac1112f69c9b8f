"""Tests for pnodewatch.confidence — multi-source confidence scoring."""

import pytest

from pnodewatch.confidence import confidence_level, has_live_metrics, score_confidence
from pnodewatch.models import NodeRecord, NodeStats
from pnodewatch.registry import RegistrySnapshot

LIVE = NodeStats(uptime=3600, cpu_percent=10)


def _make_node(**overrides: object) -> NodeRecord:
    defaults: dict = {"ip": "1.2.3.4", "pubkey": "pk", "node_type": "public", "network": "DEVNET"}
    defaults.update(overrides)
    return NodeRecord(**defaults)


class TestConfidenceLevel:
    @pytest.mark.parametrize(
        ("score", "level"),
        [
            (100, "confirmed"),
            (85, "confirmed"),
            (84, "validated"),
            (70, "validated"),
            (69, "discovered"),
            (50, "discovered"),
            (49, "uncertain"),
            (0, "uncertain"),
        ],
    )
    def test_bands(self, score: int, level: str) -> None:
        assert confidence_level(score) == level


class TestHasLiveMetrics:
    def test_all_zero_is_no_data(self) -> None:
        assert has_live_metrics(NodeStats(uptime=0, cpu_percent=0, ram_used=0)) is False

    def test_missing(self) -> None:
        assert has_live_metrics(None) is False
        assert has_live_metrics(NodeStats()) is False

    def test_one_positive(self) -> None:
        assert has_live_metrics(NodeStats(storage_committed=1)) is True


class TestDevnetScoring:
    """Discovery-driven scoring for every non-MAINNET node."""

    def test_gossip_and_rpc_is_validated(self) -> None:
        result = score_confidence(_make_node(stats=LIVE), RegistrySnapshot())
        assert result.score == 80
        assert result.level == "validated"
        assert result.sources == ["gossip", "rpc"]
        assert result.primary == "discovery"
        assert result.verified is True

    def test_devnet_registry_bonus(self) -> None:
        snap = RegistrySnapshot(devnet_credits={"pk": 1})
        result = score_confidence(_make_node(stats=LIVE), snap)
        assert result.score == 100
        assert result.level == "confirmed"
        assert result.sources == ["gossip", "rpc", "official_api", "devnet_registry"]

    def test_private_node_without_metrics(self) -> None:
        result = score_confidence(_make_node(node_type="private"), RegistrySnapshot())
        assert result.score == 0
        assert result.level == "uncertain"
        assert result.verified is False

    def test_unknown_visibility_counts_as_gossip(self) -> None:
        result = score_confidence(_make_node(node_type="unknown"), RegistrySnapshot())
        assert result.score == 50
        assert result.level == "discovered"

    def test_unclassified_node_uses_devnet_rules(self) -> None:
        result = score_confidence(_make_node(network="UNKNOWN", stats=LIVE), RegistrySnapshot())
        assert result.score == 80


class TestMainnetScoring:
    """Registry-driven scoring for MAINNET nodes."""

    def test_full_score(self) -> None:
        snap = RegistrySnapshot(mainnet_credits={"pk": 1})
        result = score_confidence(_make_node(network="MAINNET", stats=LIVE), snap)
        assert result.score == 100
        assert result.primary == "api"
        assert result.sources == ["official_api", "mainnet_registry", "gossip", "rpc"]

    def test_registry_only(self) -> None:
        snap = RegistrySnapshot(mainnet_credits={"pk": 1})
        result = score_confidence(_make_node(network="MAINNET", node_type="private"), snap)
        assert result.score == 70
        assert result.level == "validated"

    def test_not_in_registry_scores_zero(self) -> None:
        result = score_confidence(_make_node(network="MAINNET", stats=LIVE), RegistrySnapshot())
        assert result.score == 0
        assert result.sources == []
        assert result.level == "uncertain"
