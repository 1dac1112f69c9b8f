"""Node lifecycle rules: deduplication, failure counting, zombie detection."""

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass

from pnodewatch.models import NodeRecord, NodeType, PodInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StalePolicy:
    """When a node counts as a zombie and what happens to it.

    Attributes:
        failed_checks_no_gossip: Threshold for nodes without gossip metadata.
        failed_checks_with_gossip: Threshold even while gossip reports it.
        delete_stale: Delete stale nodes instead of marking them.
    """

    failed_checks_no_gossip: int = 2
    failed_checks_with_gossip: int = 4
    delete_stale: bool = False


DEFAULT_POLICY = StalePolicy()


def derive_node_type(is_public: bool | None, answered_stats: bool) -> NodeType:
    """Visibility from the gossip flag, falling back to ``get-stats`` reachability."""
    if is_public is True:
        return "public"
    if is_public is False:
        return "private"
    return "public" if answered_stats else "unknown"


def has_gossip_metadata(pod: PodInfo | None) -> bool:
    """A node answered for itself in gossip if its version or identity is known."""
    return pod is not None and (pod.version is not None or pod.pubkey is not None)


def next_failed_checks(previous: int | None, answered_stats: bool) -> int:
    """Reset when ``get-stats`` answered, otherwise count one more failure."""
    if answered_stats:
        return 0
    return (previous or 0) + 1


def committed_storage(record: NodeRecord) -> float:
    return record.stats.storage_committed or 0.0


def deduplicate(records: Iterable[NodeRecord]) -> list[NodeRecord]:
    """Keep one record per IP: the one with the larger committed storage.

    On a tie the first record wins.  Output order follows first appearance.
    """
    by_ip: dict[str, NodeRecord] = {}
    total = 0
    for record in records:
        total += 1
        existing = by_ip.get(record.ip)
        if existing is None:
            by_ip[record.ip] = record
        elif committed_storage(record) > committed_storage(existing):
            by_ip[record.ip] = record

    removed = total - len(by_ip)
    if removed > 0:
        logger.info("Removed %d duplicate node records", removed)
    return list(by_ip.values())


def is_stale(
    record: NodeRecord,
    policy: StalePolicy = DEFAULT_POLICY,
    in_gossip_view: bool | None = None,
) -> bool:
    """Zombie rule.

    Stale when any of:

    * ``failed_checks >= failed_checks_no_gossip`` and no gossip metadata;
    * ``failed_checks >= failed_checks_with_gossip``;
    * reported uptime is exactly 0 and the node is not in the gossip set.

    Args:
        record: The node to judge.
        policy: Thresholds to apply.
        in_gossip_view: Whether any peer listed the IP this cycle, even
            without version or identity.  Defaults to ``record.has_gossip``.
    """
    if in_gossip_view is None:
        in_gossip_view = record.has_gossip
    if record.failed_checks >= policy.failed_checks_no_gossip and not record.has_gossip:
        return True
    if record.failed_checks >= policy.failed_checks_with_gossip:
        return True
    if record.stats.uptime == 0 and not in_gossip_view:
        return True
    return False


def sweep(
    records: list[NodeRecord],
    policy: StalePolicy = DEFAULT_POLICY,
    gossip_ips: Collection[str] | None = None,
) -> tuple[list[NodeRecord], list[str], list[str]]:
    """Apply the zombie rule to this cycle's records.

    Stale records are marked ``status = "stale"`` or, with
    ``policy.delete_stale``, removed.  *gossip_ips* is the set of IPs
    present in this cycle's gossip view; when omitted each record's
    ``has_gossip`` flag stands in for it.

    Returns:
        ``(records_to_write, stale_ips, ips_to_delete)``.
    """
    keep: list[NodeRecord] = []
    stale: list[str] = []
    delete: list[str] = []

    for record in records:
        in_view = None if gossip_ips is None else record.ip in gossip_ips
        if not is_stale(record, policy, in_view):
            keep.append(record)
            continue
        stale.append(record.ip)
        if policy.delete_stale:
            delete.append(record.ip)
        else:
            record.status = "stale"
            keep.append(record)

    if stale:
        logger.info(
            "Zombie sweep: %d stale node(s) (%s)",
            len(stale),
            "deleted" if policy.delete_stale else "marked stale",
        )
    return keep, stale, delete
