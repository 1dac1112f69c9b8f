"""SQLite persistence: pnodes upserts, pnode_history inserts, network metadata."""

import dataclasses
import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from pnodewatch.models import (
    GeoLocation,
    HistorySample,
    NetworkMetadata,
    NodeRecord,
    NodeStats,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS pnodes (
    ip                  TEXT PRIMARY KEY,
    status              TEXT NOT NULL,
    node_type           TEXT NOT NULL,
    network             TEXT NOT NULL,
    network_confidence  TEXT NOT NULL,
    network_method      TEXT,
    pubkey              TEXT,
    version             TEXT,
    rpc_port            INTEGER,
    stats               TEXT NOT NULL DEFAULT '{}',
    confidence_score    INTEGER NOT NULL DEFAULT 0,
    confidence_level    TEXT NOT NULL DEFAULT 'uncertain',
    sources             TEXT NOT NULL DEFAULT '[]',
    failed_checks       INTEGER NOT NULL DEFAULT 0,
    credits             REAL NOT NULL DEFAULT 0,
    performance_score   INTEGER NOT NULL DEFAULT 0,
    health_status       TEXT NOT NULL DEFAULT 'Private',
    lat                 REAL,
    lng                 REAL,
    city                TEXT,
    country             TEXT,
    country_code        TEXT,
    last_seen_gossip    REAL,
    last_crawled_at     TEXT NOT NULL,
    first_seen          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pnodes_pubkey ON pnodes (pubkey);

CREATE TABLE IF NOT EXISTS pnode_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    ip                  TEXT NOT NULL,
    ts                  INTEGER NOT NULL,
    cpu_percent         REAL,
    ram_used            REAL,
    ram_total           REAL,
    file_size           REAL,
    uptime              REAL,
    packets_sent        REAL,
    packets_received    REAL,
    storage_committed   REAL,
    storage_used        REAL
);

CREATE INDEX IF NOT EXISTS idx_pnode_history_ip_ts ON pnode_history (ip, ts);

CREATE TABLE IF NOT EXISTS network_metadata (
    id              INTEGER PRIMARY KEY CHECK (id = 1),
    network_total   INTEGER NOT NULL,
    crawled_nodes   INTEGER NOT NULL,
    active_nodes    INTEGER NOT NULL,
    last_updated    TEXT NOT NULL
);
"""

_NODE_COLUMNS = (
    "ip",
    "status",
    "node_type",
    "network",
    "network_confidence",
    "network_method",
    "pubkey",
    "version",
    "rpc_port",
    "stats",
    "confidence_score",
    "confidence_level",
    "sources",
    "failed_checks",
    "credits",
    "performance_score",
    "health_status",
    "lat",
    "lng",
    "city",
    "country",
    "country_code",
    "last_seen_gossip",
    "last_crawled_at",
    "first_seen",
)

_HISTORY_COLUMNS = tuple(f.name for f in dataclasses.fields(HistorySample))


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database (useful in tests).  Missing parent
            directories are created.

    Returns:
        An open ``sqlite3.Connection`` with WAL journal mode.
    """
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


def save_nodes(conn: sqlite3.Connection, records: list[NodeRecord]) -> None:
    """Upsert node records into ``pnodes`` keyed by IP.

    On first insert ``first_seen`` is set to the current UTC time.  On
    conflict every column is overwritten except ``first_seen``.
    """
    now = datetime.now(UTC).isoformat()
    rows = [_node_row(r, now) for r in records]
    placeholders = ", ".join("?" for _ in _NODE_COLUMNS)
    updates = ",\n            ".join(
        f"{col} = excluded.{col}" for col in _NODE_COLUMNS if col not in ("ip", "first_seen")
    )
    conn.executemany(
        f"""\
        INSERT INTO pnodes ({", ".join(_NODE_COLUMNS)})
        VALUES ({placeholders})
        ON CONFLICT (ip) DO UPDATE SET
            {updates}
        """,
        rows,
    )
    conn.commit()


def save_history(conn: sqlite3.Connection, samples: list[HistorySample]) -> None:
    """Append history samples; rows are never updated or deleted here."""
    conn.executemany(
        f"INSERT INTO pnode_history ({', '.join(_HISTORY_COLUMNS)}) "
        f"VALUES ({', '.join('?' for _ in _HISTORY_COLUMNS)})",
        [tuple(getattr(s, col) for col in _HISTORY_COLUMNS) for s in samples],
    )
    conn.commit()


def save_network_metadata(conn: sqlite3.Connection, meta: NetworkMetadata) -> None:
    """Upsert the singleton coverage row (``id = 1``)."""
    conn.execute(
        """\
        INSERT INTO network_metadata (id, network_total, crawled_nodes, active_nodes, last_updated)
        VALUES (1, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            network_total = excluded.network_total,
            crawled_nodes = excluded.crawled_nodes,
            active_nodes  = excluded.active_nodes,
            last_updated  = excluded.last_updated
        """,
        (
            meta.network_total,
            meta.crawled_nodes,
            meta.active_nodes,
            meta.last_updated.isoformat(),
        ),
    )
    conn.commit()


def load_known_locations(conn: sqlite3.Connection) -> dict[str, GeoLocation]:
    """Locations already resolved for known IPs (the geolocation cache).

    Only rows with coordinates and a country code count as cached.
    """
    rows = conn.execute(
        "SELECT ip, lat, lng, city, country, country_code FROM pnodes "
        "WHERE lat IS NOT NULL AND lng IS NOT NULL AND country_code IS NOT NULL"
    ).fetchall()
    return {
        row["ip"]: GeoLocation(
            lat=row["lat"],
            lng=row["lng"],
            city=row["city"],
            country=row["country"],
            country_code=row["country_code"],
        )
        for row in rows
    }


def load_failed_checks(conn: sqlite3.Connection) -> dict[str, int]:
    """Current ``failed_checks`` of every known IP."""
    rows = conn.execute("SELECT ip, failed_checks FROM pnodes").fetchall()
    return {row["ip"]: row["failed_checks"] or 0 for row in rows}


def update_failed_checks(
    conn: sqlite3.Connection,
    counters: dict[str, int],
    stale_ips: Iterable[str] = (),
) -> None:
    """Set ``failed_checks`` of nodes not rewritten this cycle.

    IPs in *stale_ips* also get ``status = 'stale'``; no other column
    is touched.
    """
    stale = set(stale_ips)
    conn.executemany(
        "UPDATE pnodes SET failed_checks = ? WHERE ip = ?",
        [(count, ip) for ip, count in counters.items()],
    )
    if stale:
        conn.executemany(
            "UPDATE pnodes SET status = 'stale' WHERE ip = ?",
            [(ip,) for ip in stale],
        )
    conn.commit()


def delete_nodes(conn: sqlite3.Connection, ips: Iterable[str]) -> int:
    """Delete node rows; history rows are left untouched.

    Returns:
        Number of rows deleted.
    """
    cur = conn.executemany("DELETE FROM pnodes WHERE ip = ?", [(ip,) for ip in ips])
    conn.commit()
    return cur.rowcount


def load_nodes(conn: sqlite3.Connection) -> list[NodeRecord]:
    """Read every node row back into ``NodeRecord`` objects."""
    rows = conn.execute("SELECT * FROM pnodes ORDER BY ip").fetchall()
    return [_row_to_record(row) for row in rows]


def load_network_metadata(conn: sqlite3.Connection) -> NetworkMetadata | None:
    row = conn.execute("SELECT * FROM network_metadata WHERE id = 1").fetchone()
    if row is None:
        return None
    return NetworkMetadata(
        network_total=row["network_total"],
        crawled_nodes=row["crawled_nodes"],
        active_nodes=row["active_nodes"],
        last_updated=datetime.fromisoformat(row["last_updated"]),
    )


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _node_row(r: NodeRecord, now: str) -> tuple:
    return (
        r.ip,
        r.status,
        r.node_type,
        r.network,
        r.network_confidence,
        r.network_method,
        r.pubkey,
        r.version,
        r.rpc_port,
        json.dumps(dataclasses.asdict(r.stats)),
        r.confidence_score,
        r.confidence_level,
        json.dumps(r.sources),
        r.failed_checks,
        r.credits,
        r.performance_score,
        r.health_status,
        r.lat,
        r.lng,
        r.city,
        r.country,
        r.country_code,
        r.last_seen_gossip,
        r.last_crawled_at.isoformat(),
        now,  # first_seen (only used on INSERT)
    )


def _row_to_record(row: sqlite3.Row) -> NodeRecord:
    stats_raw = json.loads(row["stats"] or "{}")
    known = {f.name for f in dataclasses.fields(NodeStats)}
    return NodeRecord(
        ip=row["ip"],
        status=row["status"],
        node_type=row["node_type"],
        network=row["network"],
        network_confidence=row["network_confidence"],
        network_method=row["network_method"],
        pubkey=row["pubkey"],
        version=row["version"],
        rpc_port=row["rpc_port"],
        stats=NodeStats(**{k: v for k, v in stats_raw.items() if k in known}),
        confidence_score=row["confidence_score"],
        confidence_level=row["confidence_level"],
        sources=json.loads(row["sources"] or "[]"),
        failed_checks=row["failed_checks"],
        credits=row["credits"],
        performance_score=row["performance_score"],
        health_status=row["health_status"],
        lat=row["lat"],
        lng=row["lng"],
        city=row["city"],
        country=row["country"],
        country_code=row["country_code"],
        last_seen_gossip=row["last_seen_gossip"],
        last_crawled_at=datetime.fromisoformat(row["last_crawled_at"]),
    )


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
