"""Batch and execution metadata persistence.

Backed by SQLAlchemy async (aiosqlite by default). Persistence is best
effort: if the database cannot be opened the store reports itself
unavailable, every method becomes a no-op returning an empty default,
and the engine keeps running from memory. Query failures are logged,
never raised.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from core.constants import BatchStatus
from db.base import utcnow
from db.database import close_db, create_db_engine, create_session_factory, ensure_sqlite_directory, init_db
from db.models.batch import BatchRecord, ExecutionRecord

logger = structlog.get_logger(__name__)

_BATCH_COLUMNS = {c.name for c in BatchRecord.__table__.columns}
_EXECUTION_COLUMNS = {c.name for c in ExecutionRecord.__table__.columns}
_COUNT_FIELDS = ("completed", "running", "queued", "failed")


def _pick(values: dict, columns: set) -> dict:
    return {k: v for k, v in values.items() if k in columns}


class BatchStore:
    """Stores batch metadata and per-execution records."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or get_settings().DATABASE_URL
        self.echo = echo
        self.available = False
        self._engine = None
        self._session_factory = None

    async def initialize(self) -> bool:
        """Open the database and create tables. Returns availability."""
        if self.available:
            return True
        try:
            ensure_sqlite_directory(self.database_url)
            engine = create_db_engine(self.database_url, echo=self.echo)
            await init_db(engine)
        except Exception as e:
            logger.error("Batch persistence unavailable", database_url=self.database_url, error=str(e))
            self.available = False
            return False

        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self.available = True
        logger.info("Batch persistence initialized", database_url=self.database_url)
        return True

    async def close(self) -> None:
        if self._engine is not None:
            try:
                await close_db(self._engine)
            except SQLAlchemyError as e:
                logger.error("Failed to close batch persistence", error=str(e))
        self._engine = None
        self._session_factory = None
        self.available = False

    # ─── Writes ───────────────────────────────────────────────

    async def save_batch(self, batch: dict) -> None:
        """Insert or replace a batch row; ``batch`` uses the BatchRecord.to_dict() keys."""
        if not self.available:
            return
        values = _pick(batch, _BATCH_COLUMNS)
        values["id"] = batch.get("batch_id") or batch.get("id")
        try:
            async with self._session_factory() as session:
                await session.merge(BatchRecord(**values))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save batch", batch_id=values["id"], error=str(e))

    async def save_execution(self, execution: dict) -> None:
        """Insert or replace an execution row."""
        if not self.available:
            return
        values = _pick(execution, _EXECUTION_COLUMNS)
        values["id"] = execution.get("execution_id") or execution.get("id")
        try:
            async with self._session_factory() as session:
                await session.merge(ExecutionRecord(**values))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save execution", execution_id=values["id"], error=str(e))

    async def update_execution(self, execution_id: str, **fields: Any) -> None:
        """Update selected columns (status, worker_id, end_time, error, report_path)."""
        values = _pick(fields, _EXECUTION_COLUMNS - {"id"})
        await self._update(ExecutionRecord, execution_id, values)

    async def update_batch_progress(self, batch_id: str, counts: dict, **fields: Any) -> None:
        """Write the progress counters, plus optional status / end_time."""
        values = {k: counts[k] for k in _COUNT_FIELDS if counts.get(k) is not None}
        values.update(_pick(fields, _BATCH_COLUMNS - {"id"}))
        await self._update(BatchRecord, batch_id, values)

    async def mark_batch_stopped(self, batch_id: str) -> None:
        """Mark a batch stopped (crash recovery).

        Members that were running or queued count as failed, so the
        counters still add up to ``total_workflows``.
        """
        await self._update(
            BatchRecord,
            batch_id,
            {
                "status": BatchStatus.STOPPED.value,
                "running": 0,
                "queued": 0,
                "failed": BatchRecord.total_workflows - BatchRecord.completed,
                "end_time": utcnow(),
            },
        )

    async def _update(self, model, record_id: str, values: dict) -> None:
        if not self.available or not values:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(update(model).where(model.id == record_id).values(**values))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to update record", table=model.__tablename__, record_id=record_id, error=str(e))

    # ─── Reads ────────────────────────────────────────────────

    async def get_batch(self, batch_id: str) -> Optional[dict]:
        if not self.available:
            return None
        try:
            async with self._session_factory() as session:
                batch = await session.get(BatchRecord, batch_id)
                return batch.to_dict() if batch else None
        except SQLAlchemyError as e:
            logger.error("Failed to get batch", batch_id=batch_id, error=str(e))
            return None

    async def get_batches(
        self,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        """Query batch history, newest first.

        Returns:
            (batches, total) where total ignores pagination.
        """
        if not self.available:
            return [], 0

        conditions = []
        if status:
            conditions.append(BatchRecord.status == status)
        if start_date:
            conditions.append(BatchRecord.created_at >= start_date)
        if end_date:
            conditions.append(BatchRecord.created_at <= end_date)

        query = select(BatchRecord).where(*conditions).order_by(BatchRecord.created_at.desc())
        if limit is not None:
            query = query.limit(limit).offset(offset)
        elif offset:
            query = query.offset(offset)

        try:
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(BatchRecord).where(*conditions)
                )
                rows = (await session.scalars(query)).all()
                return [row.to_dict() for row in rows], total or 0
        except SQLAlchemyError as e:
            logger.error("Failed to query batches", error=str(e))
            return [], 0

    async def get_batch_executions(self, batch_id: str) -> list[dict]:
        if not self.available:
            return []
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(ExecutionRecord)
                    .where(ExecutionRecord.batch_id == batch_id)
                    .order_by(ExecutionRecord.start_time.asc())
                )
                return [row.to_dict() for row in rows.all()]
        except SQLAlchemyError as e:
            logger.error("Failed to get batch executions", batch_id=batch_id, error=str(e))
            return []

    async def get_execution(self, execution_id: str) -> Optional[dict]:
        if not self.available:
            return None
        try:
            async with self._session_factory() as session:
                execution = await session.get(ExecutionRecord, execution_id)
                return execution.to_dict() if execution else None
        except SQLAlchemyError as e:
            logger.error("Failed to get execution", execution_id=execution_id, error=str(e))
            return None

    async def load_active_batches(self) -> list[dict]:
        """Batches persisted as running or queued, newest first."""
        if not self.available:
            return []
        active = (BatchStatus.RUNNING.value, BatchStatus.QUEUED.value)
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(BatchRecord)
                    .where(BatchRecord.status.in_(active))
                    .order_by(BatchRecord.created_at.desc())
                )
                return [row.to_dict() for row in rows.all()]
        except SQLAlchemyError as e:
            logger.error("Failed to load active batches", error=str(e))
            return []

    # ─── Deletes ──────────────────────────────────────────────

    async def delete_batch(self, batch_id: str) -> bool:
        """Delete a batch and its executions. Returns True if a batch row was removed."""
        if not self.available:
            return False
        try:
            async with self._session_factory() as session:
                await session.execute(delete(ExecutionRecord).where(ExecutionRecord.batch_id == batch_id))
                result = await session.execute(delete(BatchRecord).where(BatchRecord.id == batch_id))
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Failed to delete batch", batch_id=batch_id, error=str(e))
            return False

    async def cleanup_old_batches(self, retention_days: Optional[int] = None) -> int:
        """Delete batches older than the retention window. Returns the count removed."""
        if not self.available:
            return 0
        if retention_days is None:
            retention_days = get_settings().BATCH_RETENTION_DAYS
        cutoff = utcnow() - timedelta(days=retention_days)
        try:
            async with self._session_factory() as session:
                old_ids = select(BatchRecord.id).where(BatchRecord.created_at < cutoff)
                await session.execute(delete(ExecutionRecord).where(ExecutionRecord.batch_id.in_(old_ids)))
                result = await session.execute(delete(BatchRecord).where(BatchRecord.created_at < cutoff))
                await session.commit()
                removed = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error("Failed to clean up old batches", error=str(e))
            return 0

        if removed:
            logger.info("Old batches removed", count=removed, retention_days=retention_days)
        return removed

    async def clear_all_batches(self) -> dict:
        """Delete every batch and execution record."""
        empty = {"batches_deleted": 0, "executions_deleted": 0}
        if not self.available:
            return empty
        try:
            async with self._session_factory() as session:
                executions = await session.scalar(select(func.count()).select_from(ExecutionRecord))
                batches = await session.scalar(select(func.count()).select_from(BatchRecord))
                await session.execute(delete(ExecutionRecord))
                await session.execute(delete(BatchRecord))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to clear batches", error=str(e))
            return empty
        return {"batches_deleted": batches or 0, "executions_deleted": executions or 0}
