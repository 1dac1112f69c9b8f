"""Tests for pnodewatch.versioning — version labels, families and consensus."""

import pytest

from pnodewatch.models import NodeRecord
from pnodewatch.versioning import (
    HERRENBERG,
    INGOLSTADT,
    PRIVATE,
    STUTTGART,
    UNVERIFIED,
    consensus_version,
    normalize_version,
    version_family,
)


def _make_node(**overrides: object) -> NodeRecord:
    defaults: dict = {"ip": "1.2.3.4", "node_type": "public"}
    defaults.update(overrides)
    return NodeRecord(**defaults)


class TestNormalizeVersion:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("v1.2.3", "1.2.3"),
            (" 0.8.0 ", "0.8.0"),
            ("unknown", None),
            ("", None),
            (None, None),
            ("velvet", "velvet"),
        ],
    )
    def test_values(self, raw: str | None, expected: str | None) -> None:
        assert normalize_version(raw) == expected


class TestVersionFamily:
    """Release-line mapping."""

    @pytest.mark.parametrize(
        ("raw", "family"),
        [
            ("0.4.2", HERRENBERG),
            ("v0.5.1", INGOLSTADT),
            ("V0.6", STUTTGART),
            ("0.6.0-trynet.1", STUTTGART),
            ("0.7.0", UNVERIFIED),
            ("0.40.0", UNVERIFIED),
        ],
    )
    def test_known_lines(self, raw: str, family: object) -> None:
        assert version_family(raw) is family

    def test_private_without_version(self) -> None:
        assert version_family(None, is_private=True) is PRIVATE
        assert version_family("unknown", is_private=True) is PRIVATE

    def test_private_with_version_uses_version(self) -> None:
        assert version_family("0.5.0", is_private=True) is INGOLSTADT

    def test_public_without_version_is_unverified(self) -> None:
        assert version_family(None) is UNVERIFIED


class TestConsensusVersion:
    def test_most_common_public_version(self) -> None:
        nodes = [
            _make_node(ip="1.0.0.1", version="0.6.0"),
            _make_node(ip="1.0.0.2", version="v0.6.0"),
            _make_node(ip="1.0.0.3", version="0.5.1"),
        ]
        assert consensus_version(nodes) == "0.6.0"

    def test_private_nodes_ignored(self) -> None:
        nodes = [
            _make_node(ip="1.0.0.1", version="0.5.1"),
            _make_node(ip="1.0.0.2", version="0.6.0", node_type="private"),
            _make_node(ip="1.0.0.3", version="0.6.0", node_type="private"),
        ]
        assert consensus_version(nodes) == "0.5.1"

    def test_tie_keeps_first_seen(self) -> None:
        nodes = [
            _make_node(ip="1.0.0.1", version="0.5.1"),
            _make_node(ip="1.0.0.2", version="0.6.0"),
        ]
        assert consensus_version(nodes) == "0.5.1"

    def test_none_without_versions(self) -> None:
        assert consensus_version([]) is None
        assert consensus_version([_make_node(version="unknown")]) is None
