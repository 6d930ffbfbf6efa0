from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from psycopg2.extras import execute_values

from src.adapters.postgres import db as pg
from src.domain.models.changes import ChangeRecord, ChangeStatistics, StatusUpdate, SyncStatus

COLUMNS = """
    id, table_name, operation, entity_id, old_data, new_data, changed_at, change_source,
    processed, processed_at, sync_status, error_message, attempt_count, last_attempt_at
"""

_VALUES_TEMPLATE = "(%s::bigint, %s::int, %s::text, %s::timestamptz)"

# PENDING, or RETRY whose retry delay has passed; takes the cutoff as a parameter.
_ELIGIBLE = (
    "({alias}.sync_status = 'PENDING' OR ({alias}.sync_status = 'RETRY' "
    "AND ({alias}.last_attempt_at IS NULL OR {alias}.last_attempt_at <= %s)))"
)

_MARK_SUCCESS = """
UPDATE external_changes AS ec
SET processed = true,
    processed_at = v.at,
    sync_status = 'SUCCESS',
    error_message = NULL,
    attempt_count = GREATEST(ec.attempt_count, v.attempt_count),
    last_attempt_at = v.at
FROM (VALUES %s) AS v(id, attempt_count, error_message, at)
WHERE ec.id = v.id AND ec.sync_status <> 'SUCCESS';
"""

_MARK_RETRY = """
UPDATE external_changes AS ec
SET processed = false,
    processed_at = NULL,
    sync_status = 'RETRY',
    error_message = v.error_message,
    attempt_count = GREATEST(ec.attempt_count, v.attempt_count),
    last_attempt_at = v.at
FROM (VALUES %s) AS v(id, attempt_count, error_message, at)
WHERE ec.id = v.id AND ec.sync_status IN ('PENDING', 'RETRY');
"""

_MARK_FAILED = """
UPDATE external_changes AS ec
SET processed = true,
    processed_at = v.at,
    sync_status = 'FAILED',
    error_message = v.error_message,
    attempt_count = GREATEST(ec.attempt_count, v.attempt_count),
    last_attempt_at = v.at
FROM (VALUES %s) AS v(id, attempt_count, error_message, at)
WHERE ec.id = v.id AND ec.sync_status <> 'SUCCESS';
"""


class ChangeLogStore:
    """Postgres access to the trigger-populated ``external_changes`` table.

    The table schema (and the triggers that insert rows) are owned elsewhere;
    this class only reads, updates status and deletes retained rows.
    """

    def __init__(self, pool: pg.PostgresPool):
        self.pool = pool

    def fetch_pending(
        self,
        limit: int,
        retry_ready_before: datetime,
        table_names: Optional[Sequence[str]] = None,
    ) -> List[ChangeRecord]:
        """Eligible changes oldest first.

        A change is held back while an older unprocessed change for the same
        entity is still waiting out its retry delay, so entity order survives
        across batches.
        """
        filters = [
            "ec.processed = false",
            _ELIGIBLE.format(alias="ec"),
            f"""NOT EXISTS (
                SELECT 1
                FROM external_changes AS e2
                WHERE e2.table_name = ec.table_name
                  AND e2.entity_id = ec.entity_id
                  AND e2.processed = false
                  AND (e2.changed_at, e2.id) < (ec.changed_at, ec.id)
                  AND NOT {_ELIGIBLE.format(alias="e2")}
            )""",
        ]
        params: list = [retry_ready_before, retry_ready_before]
        if table_names:
            filters.append("ec.table_name = ANY(%s)")
            params.append(list(table_names))

        sql = f"""
        SELECT {COLUMNS}
        FROM external_changes AS ec
        WHERE {" AND ".join(filters)}
        ORDER BY ec.changed_at ASC, ec.id ASC
        LIMIT %s;
        """
        params.append(limit)
        with self.pool.transaction() as conn:
            rows = pg.fetch_all(conn, sql, tuple(params))
        return [ChangeRecord.from_row(row) for row in rows]

    def count_unprocessed(self, table_names: Optional[Sequence[str]] = None) -> int:
        where, params = _unprocessed_where(table_names)
        sql = f"SELECT COUNT(*) AS n FROM external_changes WHERE {where};"
        with self.pool.transaction() as conn:
            return pg.fetch_one(conn, sql, params)["n"]

    def oldest_unprocessed_changed_at(self, table_names: Optional[Sequence[str]] = None) -> Optional[datetime]:
        where, params = _unprocessed_where(table_names)
        sql = f"SELECT MIN(changed_at) AS oldest FROM external_changes WHERE {where};"
        with self.pool.transaction() as conn:
            return pg.fetch_one(conn, sql, params)["oldest"]

    def count_changed_before(self, threshold: datetime, table_names: Optional[Sequence[str]] = None) -> int:
        where, params = _unprocessed_where(table_names)
        sql = f"SELECT COUNT(*) AS n FROM external_changes WHERE {where} AND changed_at < %s;"
        with self.pool.transaction() as conn:
            return pg.fetch_one(conn, sql, params + (threshold,))["n"]

    def count_failed(self) -> int:
        sql = "SELECT COUNT(*) AS n FROM external_changes WHERE sync_status = 'FAILED';"
        with self.pool.transaction() as conn:
            return pg.fetch_one(conn, sql)["n"]

    def statistics(self, since: Optional[datetime] = None) -> ChangeStatistics:
        sql = """
        SELECT
            COUNT(*) AS total,
            COUNT(*) FILTER (WHERE processed = false) AS unprocessed,
            COUNT(*) FILTER (WHERE sync_status = 'PENDING') AS pending,
            COUNT(*) FILTER (WHERE sync_status = 'RETRY') AS retry,
            COUNT(*) FILTER (WHERE sync_status = 'SUCCESS') AS success,
            COUNT(*) FILTER (WHERE sync_status = 'FAILED') AS failed,
            MIN(changed_at) FILTER (WHERE processed = false) AS oldest_unprocessed_at,
            AVG(EXTRACT(EPOCH FROM (processed_at - changed_at))) FILTER (WHERE processed = true)
                AS avg_processing_seconds
        FROM external_changes
        WHERE %s::timestamptz IS NULL OR changed_at >= %s;
        """
        with self.pool.transaction() as conn:
            row = pg.fetch_one(conn, sql, (since, since))
        avg = row["avg_processing_seconds"]
        return ChangeStatistics(
            total=row["total"],
            unprocessed=row["unprocessed"],
            pending=row["pending"],
            retry=row["retry"],
            success=row["success"],
            failed=row["failed"],
            oldest_unprocessed_at=row["oldest_unprocessed_at"],
            avg_processing_seconds=float(avg) if avg is not None else None,
        )

    def commit_outcomes(
        self,
        succeeded: Sequence[StatusUpdate],
        retried: Sequence[StatusUpdate],
        failed: Sequence[StatusUpdate],
        at: datetime,
    ) -> None:
        """Write one statement per outcome class, all in a single transaction."""
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                for sql, updates in ((_MARK_SUCCESS, succeeded), (_MARK_RETRY, retried), (_MARK_FAILED, failed)):
                    if not updates:
                        continue
                    rows = [(u.change_id, u.attempt_count, _truncate(u.error_message), at) for u in updates]
                    execute_values(cur, sql, rows, template=_VALUES_TEMPLATE)

    def delete_processed_before(self, cutoff: datetime, limit: int) -> int:
        sql = """
        DELETE FROM external_changes
        WHERE id IN (
            SELECT id
            FROM external_changes
            WHERE processed = true AND processed_at IS NOT NULL AND processed_at < %s
            ORDER BY id
            LIMIT %s
        );
        """
        with self.pool.transaction() as conn:
            return pg.execute(conn, sql, (cutoff, limit))

    def reset_failed(self, change_id: int) -> bool:
        sql = """
        UPDATE external_changes
        SET processed = false,
            processed_at = NULL,
            sync_status = 'PENDING',
            error_message = NULL,
            attempt_count = 0,
            last_attempt_at = NULL
        WHERE id = %s AND sync_status = 'FAILED';
        """
        with self.pool.transaction() as conn:
            return pg.execute(conn, sql, (change_id,)) == 1

    def get_change(self, change_id: int) -> Optional[ChangeRecord]:
        sql = f"SELECT {COLUMNS} FROM external_changes WHERE id = %s;"
        with self.pool.transaction() as conn:
            row = pg.fetch_one(conn, sql, (change_id,))
        return ChangeRecord.from_row(row) if row else None

    def list_changes(
        self,
        status: Optional[SyncStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ChangeRecord]:
        sql = f"SELECT {COLUMNS} FROM external_changes"
        params: list = []
        if status is not None:
            sql += " WHERE sync_status = %s"
            params.append(SyncStatus(status).value)
        sql += " ORDER BY changed_at DESC, id DESC LIMIT %s OFFSET %s;"
        params.extend([limit, offset])
        with self.pool.transaction() as conn:
            rows = pg.fetch_all(conn, sql, tuple(params))
        return [ChangeRecord.from_row(row) for row in rows]


def _truncate(message: Optional[str], limit: int = 1000) -> Optional[str]:
    if message is None:
        return None
    return message[:limit]


def _unprocessed_where(table_names: Optional[Sequence[str]]) -> Tuple[str, tuple]:
    if table_names:
        return "processed = false AND table_name = ANY(%s)", (list(table_names),)
    return "processed = false", ()
