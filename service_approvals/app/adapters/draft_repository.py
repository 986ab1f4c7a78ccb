"""
PostgreSQL-backed draft repository.
"""

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..models import Draft, DraftStatus


TRANSIENT_DB_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    OSError,
    asyncio.TimeoutError,
)
# a create that times out may already be committed
CONNECT_DB_ERRORS = (
    ConnectionRefusedError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
)

# keyword -> column; "content" is stored as plan_data
UPDATABLE_COLUMNS = {
    "content": "plan_data",
    "status": "status",
    "golden_record_id": "golden_record_id",
    "submission_id": "submission_id",
    "conflict_metadata": "conflict_metadata",
    "updated_by": "updated_by",
}
JSON_COLUMNS = {"plan_data", "conflict_metadata"}


class DraftRepository:
    """Working copies of plans, one row per draft.

    There is no optimistic lock column: the last write wins, and version
    conflicts are detected against the golden record instead.
    """

    def __init__(self,
                 dsn: str,
                 min_size: int = 2,
                 max_size: int = 10,
                 command_timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=(RetryError,) + TRANSIENT_DB_ERRORS,
            name="draft_store"
        )
        self.metrics = metrics
        self.logger = get_logger("approvals.draft_repository")
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_settings(cls, settings, metrics: Optional[MetricsCollector] = None) -> "DraftRepository":
        return cls(
            settings.draft_store_dsn,
            min_size=settings.draft_store_min_pool,
            max_size=settings.draft_store_max_pool,
            command_timeout=settings.request_timeout_seconds,
            retry_config=RetryConfig.from_settings(settings),
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.breaker_failure_threshold,
                recovery_timeout=settings.breaker_recovery_timeout,
                expected_exception=(RetryError,) + TRANSIENT_DB_ERRORS,
                name="draft_store"
            ),
            metrics=metrics,
        )

    async def start(self):
        """Open the connection pool and make sure the tables exist."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to start draft repository", error=str(e))
            raise StoreUnavailable("draft_store", f"Could not connect to draft store: {e}")

        self.logger.info("Draft repository started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("Draft repository stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS benefit_plan_drafts (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    golden_record_id VARCHAR(255),
                    plan_data JSONB NOT NULL,
                    created_by VARCHAR(255) NOT NULL,
                    updated_by VARCHAR(255) NOT NULL,
                    status VARCHAR(50) NOT NULL DEFAULT 'draft'
                        CHECK (status IN ('draft', 'submitted', 'approved', 'rejected')),
                    submission_id VARCHAR(255),
                    conflict_metadata JSONB,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_draft_user ON benefit_plan_drafts(created_by);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_draft_status ON benefit_plan_drafts(status);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS draft_comments (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    draft_id UUID NOT NULL REFERENCES benefit_plan_drafts(id) ON DELETE CASCADE,
                    user_id VARCHAR(255) NOT NULL,
                    comment TEXT NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

    async def get(self, draft_id: str) -> Optional[Draft]:
        """Load one draft; ``None`` when the id is unknown or malformed."""
        key = _parse_id(draft_id)
        if key is None:
            return None

        async def _fetch(conn):
            return await conn.fetchrow("SELECT * FROM benefit_plan_drafts WHERE id = $1", key)

        row = await self._run("get_draft", _fetch)
        return _row_to_draft(row) if row else None

    async def create(self, content: Dict[str, Any], created_by: str,
                     golden_record_id: Optional[str] = None) -> Draft:
        async def _insert(conn):
            return await conn.fetchrow("""
                INSERT INTO benefit_plan_drafts (golden_record_id, plan_data, created_by, updated_by, status)
                VALUES ($1, $2::jsonb, $3, $3, $4)
                RETURNING *
            """, golden_record_id, json.dumps(content), created_by, DraftStatus.DRAFT.value)

        row = await self._run("create_draft", _insert, idempotent=False)
        draft = _row_to_draft(row)
        self.logger.info("Draft created", draft_id=draft.id, created_by=created_by,
                         golden_record_id=golden_record_id)
        return draft

    async def update(self, draft_id: str, **changes) -> Optional[Draft]:
        """Write only the given fields; ``updated_at`` always moves.

        Returns the stored draft, or ``None`` if it does not exist.
        """
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise TypeError(f"Cannot update draft field(s): {', '.join(sorted(unknown))}")
        key = _parse_id(draft_id)
        if key is None:
            return None

        assignments = []
        values: List[Any] = [key]
        for name, value in changes.items():
            column = UPDATABLE_COLUMNS[name]
            values.append(_encode_column(column, value))
            cast = "::jsonb" if column in JSON_COLUMNS else ""
            assignments.append(f"{column} = ${len(values)}{cast}")
        assignments.append("updated_at = NOW()")

        query = (
            f"UPDATE benefit_plan_drafts SET {', '.join(assignments)} "
            f"WHERE id = $1 RETURNING *"
        )

        async def _update(conn):
            return await conn.fetchrow(query, *values)

        row = await self._run("update_draft", _update)
        if not row:
            return None

        self.logger.info("Draft updated", draft_id=draft_id, fields=sorted(changes))
        return _row_to_draft(row)

    async def list(self, created_by: Optional[str] = None,
                   status: Optional[DraftStatus] = None) -> List[Draft]:
        """Drafts, newest first, optionally filtered by author and status."""
        clauses = []
        values: List[Any] = []
        if created_by:
            values.append(created_by)
            clauses.append(f"created_by = ${len(values)}")
        if status:
            values.append(DraftStatus(status).value)
            clauses.append(f"status = ${len(values)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM benefit_plan_drafts{where} ORDER BY updated_at DESC"

        async def _fetch(conn):
            return await conn.fetch(query, *values)

        rows = await self._run("list_drafts", _fetch)
        return [_row_to_draft(row) for row in rows]

    async def add_comment(self, draft_id: str, user_id: str, comment: str):
        """Attach a reviewer comment to a draft."""
        key = _parse_id(draft_id)
        if key is None:
            return

        async def _insert(conn):
            await conn.execute(
                "INSERT INTO draft_comments (draft_id, user_id, comment) VALUES ($1, $2, $3)",
                key, user_id, comment
            )

        await self._run("add_comment", _insert, idempotent=False)

    async def _run(self, operation: str, func: Callable[[Any], Awaitable[Any]], idempotent: bool = True) -> Any:
        if self.pool is None:
            raise StoreUnavailable("draft_store", "Draft repository is not started")

        async def _attempt():
            async with self.pool.acquire() as conn:
                return await func(conn)

        retry_on = TRANSIENT_DB_ERRORS if idempotent else CONNECT_DB_ERRORS
        attempt = retry_on_exception(retry_on, self.retry_config)(_attempt)

        try:
            if self.metrics:
                with self.metrics.time_operation(
                    "external_call_duration_seconds", system="draft_store", operation=operation
                ):
                    return await self.circuit_breaker.call(attempt)
            return await self.circuit_breaker.call(attempt)
        except RetryError as e:
            self.logger.error("Draft store call failed after retries", operation=operation,
                              attempts=e.attempts, error=str(e.last_exception))
            raise StoreUnavailable(
                "draft_store",
                f"{operation} failed after {e.attempts} attempts",
                {"operation": operation, "error": str(e.last_exception)}
            )
        except CircuitBreakerOpenException as e:
            self.logger.warning("Circuit breaker open", operation=operation)
            raise StoreUnavailable("draft_store", str(e), {
                "operation": operation, "circuit_breaker": "open", "retry_after": round(e.retry_after, 1)
            })
        except TRANSIENT_DB_ERRORS + (asyncpg.PostgresError,) as e:
            self.logger.error("Draft store call failed", operation=operation, error=str(e))
            raise StoreUnavailable(
                "draft_store",
                f"{operation} failed: {e}",
                {"operation": operation, "error": str(e), "outcome_unknown": not idempotent}
            )


def _parse_id(draft_id: Any) -> Optional[uuid.UUID]:
    if isinstance(draft_id, uuid.UUID):
        return draft_id
    try:
        return uuid.UUID(str(draft_id))
    except ValueError:
        return None


def _encode_column(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        return json.dumps(value) if value is not None else None
    if isinstance(value, DraftStatus):
        return value.value
    return value


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_draft(row) -> Draft:
    return Draft(
        id=str(row["id"]),
        content=_decode_json(row["plan_data"]) or {},
        status=DraftStatus(row["status"]),
        golden_record_id=row["golden_record_id"],
        submission_id=row["submission_id"],
        conflict_metadata=_decode_json(row["conflict_metadata"]),
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
