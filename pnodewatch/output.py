"""Output renderer: rich table formatter, JSON formatter, output-mode dispatch."""

import dataclasses
import json
import logging
import sys
from io import StringIO

from rich.console import Console
from rich.table import Table

from pnodewatch.aggregator import aggregate_to_meta
from pnodewatch.models import CrawlSummary

logger = logging.getLogger(__name__)

# (header, attribute) pairs of the node table.
_NODE_COLUMNS = [
    ("IP", "ip"),
    ("Network", "network"),
    ("Method", "network_method"),
    ("Status", "status"),
    ("Health", "health_status"),
    ("Perf", "performance_score"),
    ("Conf", "confidence_score"),
    ("Version", "version"),
    ("Country", "country"),
]

_SUMMARY_ROWS = [
    ("Discovered", "discovered"),
    ("With gossip metadata", "with_metadata"),
    ("Answered get-stats", "with_stats"),
    ("Geolocated", "geolocated"),
    ("New geo lookups", "geo_lookups"),
]

# How many entries to show in top-N tables.
_TOP_N = 10


def render(
    summary: CrawlSummary,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
    show_nodes: bool = True,
) -> None:
    """Dispatch output to the appropriate formatter.

    Args:
        summary: Crawl cycle summary to render.
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).
        show_nodes: Include the per-node table in table mode.

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(summary, file=file, width=width, show_nodes=show_nodes)
    elif fmt == "json":
        render_json(summary, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    summary: CrawlSummary,
    *,
    file: object | None = None,
    width: int | None = None,
    show_nodes: bool = True,
) -> None:
    """Render *summary* as ``rich`` tables to *file*.

    Prints the cycle counters, the per-table persistence outcome, the
    node table and the aggregate breakdowns.
    """
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)
    meta = aggregate_to_meta(summary.nodes)

    t = Table(title=f"Crawl cycle ({summary.duration_seconds:.1f}s)")
    t.add_column("Phase")
    t.add_column("Nodes", justify="right")
    for label, attr in _SUMMARY_ROWS:
        t.add_row(label, str(getattr(summary, attr)))
    t.add_row("Written", str(len(summary.nodes)))
    t.add_row("Stale", str(len(summary.stale)))
    t.add_row("Deleted", str(len(summary.deleted)))
    console.print(t)

    failed = [table for table, ok in summary.persistence.items() if not ok]
    if failed:
        console.print(f"  [red]Persistence failed for: {', '.join(failed)}[/red]")

    if show_nodes and summary.nodes:
        _render_node_table(console, summary)

    _render_counts(console, "Networks", "Network", meta["network_counts"])
    _render_counts(console, "Health", "Status", meta["health_counts"])
    _render_counts(console, "Versions", "Family", meta["version_family_counts"])
    if meta["consensus_version"]:
        console.print(f"  Consensus version: {meta['consensus_version']}")

    country_dist = meta["country_distribution"]
    if country_dist:
        t = Table(title="Top countries")
        t.add_column("Country")
        t.add_column("Nodes", justify="right")
        for country, count in country_dist[:_TOP_N]:
            t.add_row(country, str(count))
        console.print(t)

    if summary.reconciliation:
        _render_counts(console, "Registry reconciliation", "Check", summary.reconciliation)


def _render_node_table(console: Console, summary: CrawlSummary) -> None:
    table = Table(title=f"{len(summary.nodes)} nodes")
    for header, _ in _NODE_COLUMNS:
        table.add_column(header)

    for node in summary.nodes:
        table.add_row(*[_fmt(getattr(node, attr)) for _, attr in _NODE_COLUMNS])

    console.print(table)


def _render_counts(console: Console, title: str, header: str, counts: dict[str, int]) -> None:
    if not counts:
        return
    t = Table(title=title)
    t.add_column(header)
    t.add_column("Nodes", justify="right")
    for key, count in sorted(counts.items(), key=lambda item: item[1], reverse=True):
        t.add_row(key, str(count))
    console.print(t)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def render_json(summary: CrawlSummary, *, file: object | None = None) -> None:
    """Render *summary* as JSON to *file*.

    The object holds every ``CrawlSummary`` field plus an ``aggregate``
    key with the breakdowns from ``aggregator.aggregate_to_meta``.
    """
    out = file or sys.stdout
    payload = dataclasses.asdict(summary)
    payload["aggregate"] = aggregate_to_meta(summary.nodes)
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(value: object) -> str:
    """``None`` becomes ``"—"``, everything else is stringified."""
    if value is None:
        return "—"
    return str(value)


def render_to_string(summary: CrawlSummary, fmt: str, *, width: int = 200) -> str:
    """Render to a string instead of stdout, for tests."""
    buf = StringIO()
    render(summary, fmt, file=buf, width=width)
    return buf.getvalue()
