"""SQLite backed persistence used by the send scheduler."""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import ACTIVE_STATUSES, TERMINAL_STATUSES, ItemStatus, check_transition, coerce_status

# Columns a transition may write besides status, updated_ts and attempts.
TRANSITION_FIELDS = frozenset({"scheduled_ts", "last_error", "sent_ts"})

_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))


def _now_epoch() -> int:
    return int(time.time())


class Persistence:
    """Helper class responsible for reading and writing service state."""

    def __init__(self, db_path: str = "/data/send_scheduler.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS instances (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    status TEXT NOT NULL DEFAULT 'disconnected',
                    created_ts INTEGER,
                    updated_ts INTEGER
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS recipients (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    phone TEXT,
                    created_ts INTEGER
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_items (
                    id TEXT PRIMARY KEY,
                    recipient_ref TEXT NOT NULL,
                    instance_ref TEXT NOT NULL,
                    payload TEXT,
                    scheduled_ts INTEGER NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    last_error TEXT,
                    sent_ts INTEGER,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_ts INTEGER NOT NULL,
                    updated_ts INTEGER NOT NULL
                )
                """
            )
            try:
                await db.execute("ALTER TABLE scheduled_items ADD COLUMN version INTEGER NOT NULL DEFAULT 0")
            except aiosqlite.OperationalError:
                pass
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_due ON scheduled_items(status, scheduled_ts, id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_instance ON scheduled_items(instance_ref)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS cron_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cron_kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    details TEXT,
                    duration_ms INTEGER,
                    occurred_ts INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_cron_logs_time ON cron_logs(occurred_ts)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_cron_logs_kind ON cron_logs(cron_kind, occurred_ts)"
            )
            await db.commit()

    # Instances ----------------------------------------------------------------
    async def add_instance(self, instance: Dict[str, Any]) -> None:
        """Insert or update a sending instance."""
        now = _now_epoch()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO instances (id, name, status, created_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    updated_ts = excluded.updated_ts
                """,
                (
                    instance["id"],
                    instance.get("name") or instance["id"],
                    instance.get("status") or "disconnected",
                    now,
                    now,
                ),
            )
            await db.commit()

    async def set_instance_status(self, instance_id: str, status: str) -> bool:
        """Record the health reported for an instance."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE instances SET status=?, updated_ts=? WHERE id=?",
                (status, _now_epoch(), instance_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_instance(self, instance_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single instance or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, name, status, created_ts, updated_ts FROM instances WHERE id=?",
                (instance_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def list_instances(self) -> List[Dict[str, Any]]:
        """Return all known instances."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, name, status, created_ts, updated_ts FROM instances ORDER BY id"
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # Recipients ---------------------------------------------------------------
    async def add_recipient(self, recipient: Dict[str, Any]) -> None:
        """Insert or replace a recipient used by reporting listings."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO recipients (id, name, phone, created_ts)
                VALUES (?, ?, ?, ?)
                """,
                (recipient["id"], recipient.get("name"), recipient.get("phone"), _now_epoch()),
            )
            await db.commit()

    # Scheduled items ----------------------------------------------------------
    @staticmethod
    def _decode_item_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        payload = data.get("payload")
        if payload is not None:
            try:
                data["payload"] = json.loads(payload)
            except json.JSONDecodeError:
                data["payload"] = {"raw_payload": payload}
        return data

    async def insert_items(self, entries: Sequence[Dict[str, Any]], now_ts: Optional[int] = None) -> List[str]:
        """Persist new items in ``pending`` state, returning the ids that were stored.

        Existing ids are left untouched: an item's lifecycle is owned by the
        dispatch engine and the operator control once it exists.
        """
        if not entries:
            return []
        now = _now_epoch() if now_ts is None else int(now_ts)
        inserted: List[str] = []
        async with aiosqlite.connect(self.db_path) as db:
            for entry in entries:
                payload = entry.get("payload")
                cursor = await db.execute(
                    """
                    INSERT INTO scheduled_items
                        (id, recipient_ref, instance_ref, payload, scheduled_ts, attempts, status, created_ts, updated_ts)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (
                        entry["id"],
                        entry["recipient_ref"],
                        entry["instance_ref"],
                        json.dumps(payload) if payload is not None else None,
                        int(entry["scheduled_ts"]),
                        ItemStatus.PENDING.value,
                        now,
                        now,
                    ),
                )
                if cursor.rowcount:
                    inserted.append(entry["id"])
            await db.commit()
        return inserted

    async def existing_item_ids(self, ids: Iterable[str]) -> set[str]:
        """Return the subset of ids that already exist in storage."""
        id_list = [iid for iid in ids if iid]
        if not id_list:
            return set()
        placeholders = ",".join("?" for _ in id_list)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT id FROM scheduled_items WHERE id IN ({placeholders})",
                id_list,
            ) as cur:
                rows = await cur.fetchall()
        return {row[0] for row in rows}

    async def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single scheduled item or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM scheduled_items WHERE id=?", (item_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_item_row(row, cols)

    async def list_due(self, now_ts: int, limit: int) -> List[Dict[str, Any]]:
        """Return active items whose scheduled time has passed, earliest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT id, recipient_ref, instance_ref, payload, scheduled_ts, attempts, status, version
                FROM scheduled_items
                WHERE status IN ({_ACTIVE_SQL})
                  AND scheduled_ts <= ?
                ORDER BY scheduled_ts ASC, id ASC
                LIMIT ?
                """,
                (int(now_ts), int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_item_row(row, cols) for row in rows]

    async def transition(
        self,
        item_id: str,
        from_status: ItemStatus | str,
        to_status: ItemStatus | str,
        fields: Optional[Dict[str, Any]] = None,
        *,
        increment_attempts: bool = False,
        expected_version: Optional[int] = None,
        now_ts: Optional[int] = None,
    ) -> bool:
        """Move an item to ``to_status`` only if it is still in ``from_status``.

        This is the single mutation primitive for items. The guard lives in the
        ``WHERE`` clause of one ``UPDATE`` statement, so among concurrent
        callers racing on the same id and prior status exactly one applies.
        Every applied transition bumps ``version``; passing the version read
        with the item also rejects writes based on a stale read. A transition
        that keeps the status (``rescheduled`` to ``rescheduled``) leaves the
        status guard satisfied after it applies, so it requires
        ``expected_version``. ``attempts`` is only ever incremented in SQL.
        """
        source, target = check_transition(from_status, to_status)
        if source is target and expected_version is None:
            raise ValueError(f"Transition {source.value} -> {target.value} requires expected_version")
        extra = dict(fields or {})
        unknown = set(extra) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
        assignments = ["status=?", "updated_ts=?", "version=version + 1"]
        params: List[Any] = [target.value, _now_epoch() if now_ts is None else int(now_ts)]
        for column in sorted(extra):
            assignments.append(f"{column}=?")
            params.append(extra[column])
        if increment_attempts:
            assignments.append("attempts=attempts + 1")
        where = "id=? AND status=?"
        params.extend([item_id, source.value])
        if expected_version is not None:
            where += " AND version=?"
            params.append(int(expected_version))
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE scheduled_items SET {', '.join(assignments)} WHERE {where}",
                params,
            )
            await db.commit()
            return cursor.rowcount == 1

    async def purge_items_older_than(self, threshold_ts: int, statuses: Iterable[ItemStatus | str]) -> int:
        """Delete terminal items scheduled before ``threshold_ts``.

        Statuses outside the terminal set are ignored, so active items are
        never removed whatever their age.
        """
        wanted = sorted({coerce_status(s).value for s in statuses} & {s.value for s in TERMINAL_STATUSES})
        if not wanted:
            return 0
        placeholders = ",".join("?" for _ in wanted)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                DELETE FROM scheduled_items
                WHERE scheduled_ts < ?
                  AND status IN ({placeholders})
                """,
                (int(threshold_ts), *wanted),
            )
            await db.commit()
            return cursor.rowcount

    async def list_items(self, *, active_only: bool = False) -> List[Dict[str, Any]]:
        """Return items for inspection purposes."""
        query = "SELECT * FROM scheduled_items"
        if active_only:
            query += f" WHERE status IN ({_ACTIVE_SQL})"
        query += " ORDER BY scheduled_ts ASC, id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_item_row(row, cols) for row in rows]

    async def count_active_items(self) -> int:
        """Return the number of items still awaiting dispatch."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT COUNT(*) FROM scheduled_items WHERE status IN ({_ACTIVE_SQL})"
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def list_upcoming_items(self, now_ts: int, horizon_seconds: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Active items due within the horizon, joined with recipient and instance names."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT si.id, si.scheduled_ts, si.attempts, si.status,
                       si.recipient_ref, r.name AS recipient_name, r.phone AS recipient_phone,
                       si.instance_ref, i.name AS instance_name, i.status AS instance_status,
                       (si.scheduled_ts - ?) / 60 AS minutes_until_due,
                       si.created_ts, si.updated_ts
                FROM scheduled_items si
                LEFT JOIN recipients r ON r.id = si.recipient_ref
                LEFT JOIN instances i ON i.id = si.instance_ref
                WHERE si.status IN ({_ACTIVE_SQL})
                  AND si.scheduled_ts >= ?
                  AND si.scheduled_ts <= ?
                ORDER BY si.scheduled_ts ASC, si.id ASC
                LIMIT ?
                """,
                (now_ts, now_ts, now_ts + horizon_seconds, limit),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def upcoming_by_instance(self, now_ts: int, horizon_seconds: int) -> List[Dict[str, Any]]:
        """Per-instance count of upcoming items and the earliest next send."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT si.instance_ref, i.name AS instance_name, i.status AS instance_status,
                       COUNT(*) AS total_scheduled, MIN(si.scheduled_ts) AS next_send_ts
                FROM scheduled_items si
                LEFT JOIN instances i ON i.id = si.instance_ref
                WHERE si.status IN ({_ACTIVE_SQL})
                  AND si.scheduled_ts >= ?
                  AND si.scheduled_ts <= ?
                GROUP BY si.instance_ref, i.name, i.status
                ORDER BY next_send_ts ASC
                """,
                (now_ts, now_ts + horizon_seconds),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def item_statistics(self, now_ts: int, window_seconds: int = 24 * 3600) -> Dict[str, int]:
        """Status breakdown of items scheduled since ``now - window``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT
                    COUNT(*) AS total_scheduled,
                    COUNT(CASE WHEN status = 'pending' THEN 1 END) AS pending,
                    COUNT(CASE WHEN status = 'rescheduled' THEN 1 END) AS rescheduled,
                    COUNT(CASE WHEN status = 'sent' THEN 1 END) AS sent,
                    COUNT(CASE WHEN status = 'failed' THEN 1 END) AS failed,
                    COUNT(CASE WHEN status = 'cancelled' THEN 1 END) AS cancelled,
                    COUNT(CASE WHEN scheduled_ts < :now AND status IN ({_ACTIVE_SQL}) THEN 1 END) AS overdue,
                    COUNT(CASE WHEN scheduled_ts BETWEEN :now AND :now + 3600 THEN 1 END) AS next_hour,
                    COUNT(CASE WHEN attempts > 0 THEN 1 END) AS with_attempts
                FROM scheduled_items
                WHERE scheduled_ts >= :since
                """,
                {"now": now_ts, "since": now_ts - window_seconds},
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return {col: int(value or 0) for col, value in zip(cols, row or ())}

    # Execution log ------------------------------------------------------------
    async def insert_cron_log(self, entry: Dict[str, Any]) -> int:
        """Append an execution log entry and return its id."""
        details = entry.get("details")
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO cron_logs (cron_kind, status, message, details, duration_ms, occurred_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry["cron_kind"],
                    entry["status"],
                    entry.get("message"),
                    json.dumps(details) if details is not None else None,
                    entry.get("duration_ms"),
                    int(entry.get("occurred_ts") or _now_epoch()),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    @staticmethod
    def _cron_filters(
        cron_kind: Optional[str], since_ts: Optional[int], until_ts: Optional[int]
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if cron_kind:
            clauses.append("cron_kind = ?")
            params.append(cron_kind)
        if since_ts is not None:
            clauses.append("occurred_ts >= ?")
            params.append(int(since_ts))
        if until_ts is not None:
            clauses.append("occurred_ts <= ?")
            params.append(int(until_ts))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_cron_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        cron_kind: Optional[str] = None,
        since_ts: Optional[int] = None,
        until_ts: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return log entries newest first."""
        where, params = self._cron_filters(cron_kind, since_ts, until_ts)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT id, cron_kind, status, message, details, duration_ms, occurred_ts
                FROM cron_logs{where}
                ORDER BY occurred_ts DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, int(limit), int(offset)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result = []
        for row in rows:
            entry = dict(zip(cols, row))
            if entry["details"] is not None:
                try:
                    entry["details"] = json.loads(entry["details"])
                except json.JSONDecodeError:
                    pass
            result.append(entry)
        return result

    async def count_cron_logs(
        self,
        *,
        cron_kind: Optional[str] = None,
        since_ts: Optional[int] = None,
        until_ts: Optional[int] = None,
    ) -> int:
        """Count log entries matching the filters."""
        where, params = self._cron_filters(cron_kind, since_ts, until_ts)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"SELECT COUNT(*) FROM cron_logs{where}", params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def cron_kind_statistics(self, since_ts: int) -> List[Dict[str, Any]]:
        """Per-kind execution counts and average duration since ``since_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT cron_kind,
                       COUNT(*) AS total_runs,
                       COUNT(CASE WHEN status = 'success' THEN 1 END) AS successes,
                       COUNT(CASE WHEN status = 'error' THEN 1 END) AS errors,
                       AVG(duration_ms) AS avg_duration_ms
                FROM cron_logs
                WHERE occurred_ts >= ?
                GROUP BY cron_kind
                ORDER BY total_runs DESC, cron_kind ASC
                """,
                (since_ts,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def cron_recent_runs(self, since_ts: int) -> List[Dict[str, Any]]:
        """Per kind and status counts since ``since_ts`` with the latest run time."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT cron_kind, status,
                       COUNT(*) AS runs,
                       AVG(duration_ms) AS avg_duration_ms,
                       MAX(occurred_ts) AS last_run_ts
                FROM cron_logs
                WHERE occurred_ts >= ?
                GROUP BY cron_kind, status
                ORDER BY last_run_ts DESC
                """,
                (since_ts,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def cron_latest_per_kind(self) -> List[Dict[str, Any]]:
        """Most recent entry of every cron kind."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT cl.cron_kind, cl.status, cl.message, cl.duration_ms, cl.occurred_ts
                FROM cron_logs cl
                INNER JOIN (
                    SELECT cron_kind, MAX(id) AS max_id
                    FROM cron_logs
                    GROUP BY cron_kind
                ) latest ON latest.max_id = cl.id
                ORDER BY cl.occurred_ts DESC, cl.id DESC
                """
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def cron_totals(self, since_ts: int) -> Dict[str, Any]:
        """Global totals across all kinds since ``since_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(DISTINCT cron_kind) AS active_kinds,
                       COUNT(*) AS total_runs,
                       COUNT(CASE WHEN status = 'success' THEN 1 END) AS total_successes,
                       COUNT(CASE WHEN status = 'error' THEN 1 END) AS total_errors,
                       AVG(duration_ms) AS avg_duration_ms,
                       MAX(occurred_ts) AS last_activity_ts
                FROM cron_logs
                WHERE occurred_ts >= ?
                """,
                (since_ts,),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row or ()))

    async def purge_cron_logs_before(self, threshold_ts: int) -> int:
        """Delete log entries older than ``threshold_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM cron_logs WHERE occurred_ts < ?", (int(threshold_ts),))
            await db.commit()
            return cursor.rowcount
