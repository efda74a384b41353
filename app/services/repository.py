"""Batch persistence: the narrow repository the workflow services write through.

All writes are partial-field updates.  ``update_batch`` carries the version
the caller read; a mismatch raises ``ConcurrentUpdateError`` instead of
silently overwriting a concurrent change.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

from pydantic_core import to_jsonable_python
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.batch import BatchLog, ProductionBatch
from app.models.enums import BatchStatusEnum
from app.schemas.batch import BatchLogEntry, BatchRecord
from app.services.errors import ConcurrentUpdateError

_JSON_COLUMNS = frozenset(
	{
		"calculated_inputs",
		"measurements",
		"measurement_history",
		"active_timers",
		"active_reminders",
		"scheduled_alerts",
		"history",
	}
)
_READ_ONLY = frozenset({"id", "version", "updated_at"})


class BatchRepository(Protocol):
	async def get_batch(self, batch_id: uuid.UUID) -> BatchRecord | None: ...

	async def create_batch(self, record: BatchRecord) -> BatchRecord: ...

	async def update_batch(
		self,
		batch_id: uuid.UUID,
		fields: dict[str, Any],
		expected_version: int,
	) -> BatchRecord: ...

	async def append_log(self, entry: BatchLogEntry) -> None: ...

	async def commit(self) -> None: ...

	async def list_active(self, include_paused: bool = False) -> list[BatchRecord]: ...

	async def list_logs(self, batch_id: uuid.UUID, limit: int = 200) -> list[BatchLogEntry]: ...


def to_columns(fields: dict[str, Any]) -> dict[str, Any]:
	"""Convert typed batch fields into values the ORM columns accept."""
	columns: dict[str, Any] = {}
	for name, value in fields.items():
		if name in _READ_ONLY:
			continue
		columns[name] = to_jsonable_python(value) if name in _JSON_COLUMNS else value
	return columns


def to_record(row: ProductionBatch) -> BatchRecord:
	return BatchRecord.model_validate(row, from_attributes=True)


class SqlBatchRepository:
	def __init__(self, db: AsyncSession):
		self.db = db

	async def get_batch(self, batch_id: uuid.UUID) -> BatchRecord | None:
		row = await self.db.get(ProductionBatch, batch_id, populate_existing=True)
		if row is None:
			return None
		return to_record(row)

	async def create_batch(self, record: BatchRecord) -> BatchRecord:
		row = ProductionBatch(id=record.id, **to_columns(record.model_dump(exclude={"id", "version", "updated_at"})))
		self.db.add(row)
		await self.db.flush()
		await self.db.refresh(row)
		return to_record(row)

	async def update_batch(
		self,
		batch_id: uuid.UUID,
		fields: dict[str, Any],
		expected_version: int,
	) -> BatchRecord:
		stmt = (
			update(ProductionBatch)
			.where(ProductionBatch.id == batch_id, ProductionBatch.version == expected_version)
			.values(**to_columns(fields), version=ProductionBatch.version + 1)
			.returning(ProductionBatch)
			.execution_options(synchronize_session=False)
		)
		row = (await self.db.execute(stmt)).scalar_one_or_none()
		if row is None:
			raise ConcurrentUpdateError(f"batch {batch_id} changed since version {expected_version}")
		await self.db.refresh(row)
		return to_record(row)

	async def append_log(self, entry: BatchLogEntry) -> None:
		row = BatchLog(
			batch_id=entry.batch_id,
			stage_id=entry.stage_id,
			action=entry.action,
			details=to_jsonable_python(entry.details),
		)
		if entry.timestamp is not None:
			row.timestamp = entry.timestamp
		self.db.add(row)
		await self.db.flush()

	async def commit(self) -> None:
		"""Called by the workflow services before they release the batch lock."""
		await self.db.commit()

	async def list_active(self, include_paused: bool = False) -> list[BatchRecord]:
		statuses = [BatchStatusEnum.active, BatchStatusEnum.paused] if include_paused else [BatchStatusEnum.active]
		rows = await self.db.execute(
			select(ProductionBatch)
			.where(ProductionBatch.status.in_(statuses))
			.order_by(ProductionBatch.started_at.desc())
		)
		return [to_record(row) for row in rows.scalars().all()]

	async def list_logs(self, batch_id: uuid.UUID, limit: int = 200) -> list[BatchLogEntry]:
		rows = await self.db.execute(
			select(BatchLog)
			.where(BatchLog.batch_id == batch_id)
			.order_by(BatchLog.timestamp.asc(), BatchLog.id.asc())
			.limit(limit)
		)
		return [BatchLogEntry.model_validate(row, from_attributes=True) for row in rows.scalars().all()]
