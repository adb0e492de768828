"""
PostgreSQL storage for reflections and insights.

The engine talks to storage through a small port (see ``memory_store`` for the
in-process implementation of the same methods). This module is the durable
implementation:
  - Uniqueness: a partial unique index allows one non-closed insight per
    cluster key. Inserts that hit it raise DuplicateClusterError so the
    engine can retry as a merge.
  - Atomicity: ``transaction()`` wraps a lifecycle step; rows read with
    ``for_update=True`` stay locked until commit.
  - Storage errors other than the uniqueness conflict propagate unmodified.
"""

import json
import os
import sys
from contextlib import contextmanager
from datetime import datetime

import psycopg2
import psycopg2.errors
import psycopg2.extras

from insight_engine.errors import DuplicateClusterError
from insight_engine.models import Insight, Reflection

OPEN_CLUSTER_INDEX = "uq_insights_open_cluster"


def resolve_database_url(config: dict | None = None) -> str:
    """Resolve DATABASE_URL from env or config.

    Resolution order:
      1. DATABASE_URL environment variable
      2. ``config["storage"]["database_url"]`` (if config provided)
    """
    url = os.environ.get("DATABASE_URL")
    if url:
        return url

    if config:
        url = config.get("storage", {}).get("database_url")
        if url:
            return url

    print(
        "Error: Could not resolve database URL.\n"
        "  Set DATABASE_URL or storage.database_url in config.yaml",
        file=sys.stderr,
    )
    sys.exit(1)


def _migrate(conn):
    """Run pending schema migrations inside an explicit transaction.

    pg_try_advisory_xact_lock releases on COMMIT/ROLLBACK, so a process that
    dies mid-migration leaves no stale lock behind.
    """
    old_autocommit = conn.autocommit
    try:
        conn.autocommit = False
        with conn.cursor() as cur:
            cur.execute("SET lock_timeout = '5s'")
            cur.execute("SET statement_timeout = '30s'")

            cur.execute("SELECT pg_try_advisory_xact_lock(4711)")
            acquired = cur.fetchone()[0]
            if not acquired:
                conn.rollback()
                return

            try:
                cur.execute(
                    "CREATE TABLE IF NOT EXISTS _insight_schema ("
                    "  id INTEGER PRIMARY KEY DEFAULT 1 CHECK(id = 1),"
                    "  version INTEGER NOT NULL DEFAULT 0"
                    ")"
                )
                cur.execute(
                    "INSERT INTO _insight_schema (id, version) VALUES (1, 0) "
                    "ON CONFLICT (id) DO NOTHING"
                )
                cur.execute("SELECT version FROM _insight_schema WHERE id = 1")
                current = cur.fetchone()[0]

                if current >= SCHEMA_VERSION:
                    conn.commit()
                    return

                for version, statements in MIGRATIONS:
                    if version <= current:
                        continue
                    for stmt in statements:
                        cur.execute(stmt)

                cur.execute(
                    "UPDATE _insight_schema SET version = %s WHERE id = 1",
                    (SCHEMA_VERSION,),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    finally:
        conn.autocommit = old_autocommit


# ── Schema migrations ────────────────────────────────────────────────────
#
# Each migration is a (version, statements) tuple. Versions are monotonic.
# To add a migration: append a new entry with version = SCHEMA_VERSION + 1,
# then bump SCHEMA_VERSION to match.

SCHEMA_VERSION = 2

MIGRATIONS: list[tuple[int, list[str]]] = [
    # ── v1: Reflections + insights ───────────────────────────────────
    (1, [
        """CREATE TABLE IF NOT EXISTS reflections (
            id              TEXT PRIMARY KEY,
            pain            TEXT NOT NULL,
            impact          TEXT,
            evidence        TEXT NOT NULL DEFAULT '[]',
            went_well       TEXT,
            suspected_why   TEXT,
            proposed_fix    TEXT,
            confidence      INTEGER NOT NULL CHECK(confidence BETWEEN 0 AND 10),
            role_type       TEXT NOT NULL,
            severity        TEXT CHECK(severity IN ('low','medium','high','critical')),
            author          TEXT NOT NULL,
            tags            TEXT,
            team_id         TEXT,
            task_id         TEXT,
            created_at      TIMESTAMPTZ NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS insights (
            id                  TEXT PRIMARY KEY,
            cluster_key         TEXT NOT NULL,
            workflow_stage      TEXT NOT NULL,
            failure_family      TEXT NOT NULL,
            impacted_unit       TEXT NOT NULL,
            title               TEXT NOT NULL,
            status              TEXT NOT NULL CHECK(status IN
                ('candidate','promoted','pending_triage','task_created','cooldown','closed')),
            score               REAL NOT NULL CHECK(score >= 0 AND score <= 10),
            priority            TEXT NOT NULL CHECK(priority IN ('P0','P1','P2','P3')),
            reflection_ids      TEXT NOT NULL DEFAULT '[]',
            independent_count   INTEGER NOT NULL DEFAULT 0,
            evidence_refs       TEXT NOT NULL DEFAULT '[]',
            authors             TEXT NOT NULL DEFAULT '[]',
            promotion_readiness TEXT NOT NULL DEFAULT 'not_ready'
                CHECK(promotion_readiness IN ('not_ready','ready','promoted','override')),
            recurring_candidate BOOLEAN NOT NULL DEFAULT FALSE,
            cooldown_until      TIMESTAMPTZ,
            cooldown_reason     TEXT,
            severity_max        TEXT,
            task_id             TEXT,
            metadata            TEXT,
            created_at          TIMESTAMPTZ NOT NULL,
            updated_at          TIMESTAMPTZ NOT NULL
        )""",
        f"CREATE UNIQUE INDEX IF NOT EXISTS {OPEN_CLUSTER_INDEX} "
        "ON insights(cluster_key) WHERE status <> 'closed'",
        "CREATE INDEX IF NOT EXISTS idx_insights_cluster ON insights(cluster_key, created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_insights_status ON insights(status)",
    ]),
    # ── v2: Listing sort + orphan lookup ─────────────────────────────
    (2, [
        "CREATE INDEX IF NOT EXISTS idx_insights_score ON insights(score DESC, created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_insights_task ON insights(status) WHERE task_id IS NULL",
    ]),
]

_INSIGHT_COLUMNS = (
    "id", "cluster_key", "workflow_stage", "failure_family", "impacted_unit",
    "title", "status", "score", "priority", "reflection_ids", "independent_count",
    "evidence_refs", "authors", "promotion_readiness", "recurring_candidate",
    "cooldown_until", "cooldown_reason", "severity_max", "task_id", "metadata",
    "created_at", "updated_at",
)

_LIST_FILTERS = ("status", "priority", "workflow_stage", "failure_family", "impacted_unit")


class InsightStorage:
    """PostgreSQL-backed reflection and insight store."""

    _schema_ready = False

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.conn = psycopg2.connect(database_url)
        self.conn.autocommit = True
        self._tx_depth = 0
        if not InsightStorage._schema_ready:
            _migrate(self.conn)
            InsightStorage._schema_ready = True

    def close(self):
        if not self.conn.closed:
            self.conn.close()

    @contextmanager
    def transaction(self):
        """Run the enclosed calls as one transaction. Nested calls join the outer one."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        old = self.conn.autocommit
        self.conn.autocommit = False
        self._tx_depth = 1
        try:
            yield self
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            self._tx_depth = 0
            self.conn.autocommit = old

    # ── Reflections ─────────────────────────────────────────────────

    def insert_reflection(self, reflection: Reflection):
        with self.conn.cursor() as cur:
            cur.execute(
                """INSERT INTO reflections
                (id, pain, impact, evidence, went_well, suspected_why, proposed_fix,
                 confidence, role_type, severity, author, tags, team_id, task_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING""",
                (
                    reflection.id,
                    reflection.pain,
                    reflection.impact,
                    json.dumps(reflection.evidence),
                    reflection.went_well,
                    reflection.suspected_why,
                    reflection.proposed_fix,
                    reflection.confidence,
                    reflection.role_type,
                    reflection.severity,
                    reflection.author,
                    json.dumps(reflection.tags) if reflection.tags is not None else None,
                    reflection.team_id,
                    reflection.task_id,
                    reflection.created_at,
                ),
            )

    def get_reflection(self, reflection_id: str) -> Reflection | None:
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute("SELECT * FROM reflections WHERE id = %s", (reflection_id,))
            row = cur.fetchone()
        return _row_to_reflection(row) if row else None

    def get_reflections_by_ids(self, ids: list[str]) -> list[Reflection]:
        """Fetch reflections, returned in the order of ``ids``. Unknown ids are skipped."""
        if not ids:
            return []
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute("SELECT * FROM reflections WHERE id = ANY(%s)", (list(ids),))
            rows = {row["id"]: row for row in cur.fetchall()}
        return [_row_to_reflection(rows[i]) for i in ids if i in rows]

    # ── Insights ────────────────────────────────────────────────────

    def get_insight(self, insight_id: str, for_update: bool = False) -> Insight | None:
        sql = "SELECT * FROM insights WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, (insight_id,))
            row = cur.fetchone()
        return _row_to_insight(row) if row else None

    def find_by_cluster(self, cluster_key: str, for_update: bool = False) -> Insight | None:
        """Most recent non-closed insight for a cluster key."""
        sql = (
            "SELECT * FROM insights WHERE cluster_key = %s AND status <> 'closed' "
            "ORDER BY created_at DESC LIMIT 1"
        )
        if for_update:
            sql += " FOR UPDATE"
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, (cluster_key,))
            row = cur.fetchone()
        return _row_to_insight(row) if row else None

    def insert_insight(self, insight: Insight):
        placeholders = ", ".join(["%s"] * len(_INSIGHT_COLUMNS))
        with self.conn.cursor() as cur:
            try:
                cur.execute(
                    f"INSERT INTO insights ({', '.join(_INSIGHT_COLUMNS)}) VALUES ({placeholders})",
                    _insight_params(insight),
                )
            except psycopg2.errors.UniqueViolation as e:
                if e.diag.constraint_name == OPEN_CLUSTER_INDEX:
                    raise DuplicateClusterError(insight.cluster_key) from e
                raise

    def save_insight(self, insight: Insight):
        """Overwrite every mutable column of an existing insight."""
        columns = [c for c in _INSIGHT_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        params = dict(zip(_INSIGHT_COLUMNS, _insight_params(insight)))
        with self.conn.cursor() as cur:
            try:
                cur.execute(
                    f"UPDATE insights SET {assignments} WHERE id = %s",
                    [params[c] for c in columns] + [insight.id],
                )
            except psycopg2.errors.UniqueViolation as e:
                if e.diag.constraint_name == OPEN_CLUSTER_INDEX:
                    raise DuplicateClusterError(insight.cluster_key) from e
                raise

    def close_insight(self, insight_id: str, now: datetime) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE insights SET status = 'closed', updated_at = %s "
                "WHERE id = %s AND status <> 'closed'",
                (now, insight_id),
            )
            return cur.rowcount > 0

    def update_insight_status(
        self, insight_id: str, status: str, now: datetime, task_id: str | None = None
    ) -> bool:
        # Candidates have never been promoted, so they carry no cooldown.
        assignments = ["status = %s", "updated_at = %s"]
        params = [status, now]
        if task_id:
            assignments.append("task_id = %s")
            params.append(task_id)
        if status == "candidate":
            assignments.append("cooldown_until = NULL")
        with self.conn.cursor() as cur:
            cur.execute(
                f"UPDATE insights SET {', '.join(assignments)} WHERE id = %s",
                params + [insight_id],
            )
            return cur.rowcount > 0

    # ── Cooldown sweep ──────────────────────────────────────────────

    def cool_expired_promotions(self, now: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE insights SET status = 'cooldown', cooldown_reason = 'auto-cooldown', "
                "updated_at = %s "
                "WHERE status = 'promoted' AND cooldown_until IS NOT NULL AND cooldown_until <= %s",
                (now, now),
            )
            return cur.rowcount

    def close_stale_cooldowns(self, cutoff: datetime, now: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE insights SET status = 'closed', updated_at = %s "
                "WHERE status = 'cooldown' AND updated_at < %s",
                (now, cutoff),
            )
            return cur.rowcount

    # ── Listing / stats ─────────────────────────────────────────────

    def list_insights(self, filters: dict, limit: int, offset: int) -> tuple[list[Insight], int]:
        where, params = [], []
        for field in _LIST_FILTERS:
            value = filters.get(field)
            if not value or (field == "status" and value == "all"):
                continue
            where.append(f"{field} = %s")
            params.append(value)
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""

        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(f"SELECT COUNT(*) AS c FROM insights {where_clause}", params)
            total = cur.fetchone()["c"]
            cur.execute(
                f"SELECT * FROM insights {where_clause} "
                "ORDER BY score DESC, created_at DESC LIMIT %s OFFSET %s",
                params + [limit, offset],
            )
            rows = cur.fetchall()
        return [_row_to_insight(r) for r in rows], total

    def insight_stats(self) -> dict:
        with self.conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM insights")
            total = cur.fetchone()[0]
            cur.execute("SELECT status, COUNT(*) FROM insights GROUP BY status")
            by_status = dict(cur.fetchall())
            cur.execute("SELECT priority, COUNT(*) FROM insights GROUP BY priority")
            by_priority = dict(cur.fetchall())
            cur.execute(
                "SELECT failure_family, COUNT(*) AS c FROM insights "
                "GROUP BY failure_family ORDER BY c DESC, failure_family LIMIT 20"
            )
            by_family = dict(cur.fetchall())
        return {
            "total": total,
            "by_status": by_status,
            "by_priority": by_priority,
            "by_failure_family": by_family,
        }

    def get_orphaned_insights(self) -> list[Insight]:
        """Promoted or task_created insights with no linked task."""
        with self.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(
                "SELECT * FROM insights WHERE status IN ('promoted', 'task_created') "
                "AND (task_id IS NULL OR task_id = '') ORDER BY score DESC"
            )
            rows = cur.fetchall()
        return [_row_to_insight(r) for r in rows]


def _insight_params(insight: Insight) -> tuple:
    return (
        insight.id,
        insight.cluster_key,
        insight.workflow_stage,
        insight.failure_family,
        insight.impacted_unit,
        insight.title,
        insight.status,
        insight.score,
        insight.priority,
        json.dumps(insight.reflection_ids),
        insight.independent_count,
        json.dumps(insight.evidence_refs),
        json.dumps(insight.authors),
        insight.promotion_readiness,
        insight.recurring_candidate,
        insight.cooldown_until,
        insight.cooldown_reason,
        insight.severity_max,
        insight.task_id,
        json.dumps(insight.metadata, default=str),
        insight.created_at,
        insight.updated_at,
    )


def _json_list(value) -> list:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return parsed if isinstance(parsed, list) else []


def _row_to_insight(row) -> Insight:
    data = dict(row)
    for field in ("reflection_ids", "evidence_refs", "authors"):
        data[field] = _json_list(data.get(field))
    try:
        data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else {}
    except json.JSONDecodeError:
        data["metadata"] = {}
    data["score"] = round(float(data["score"]), 1)
    return Insight(**data)


def _row_to_reflection(row) -> Reflection:
    data = dict(row)
    data["evidence"] = _json_list(data.get("evidence"))
    data["tags"] = _json_list(data["tags"]) if data.get("tags") is not None else None
    return Reflection(**data)
