"""Assemble an owner's records into the current export envelope."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recordkeeper.api.schemas.envelope import ExportEnvelope, ExportMetadata, ExportRecord
from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.exceptions import ExportError
from recordkeeper.services.import_engine import ProgressCallback
from recordkeeper.services.record_store import RecordStore
from recordkeeper.utils.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class ExportStreamer:
    def __init__(
        self,
        db: Session,
        *,
        chunk_size: int = 500,
        progress: ProgressCallback | None = None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.db = db
        self.chunk_size = chunk_size
        self.progress = progress

    def _emit(self, update: ProgressUpdate) -> None:
        if self.progress is not None:
            self.progress(update)

    async def export(self, owner_id: str) -> ExportEnvelope:
        """Page through the owner's records in creation order.

        Read-only; a storage failure aborts the whole export with ExportError.
        Queries run in worker threads so the event loop keeps serving requests.
        """
        store = RecordStore(self.db, owner_id)
        records: list[ExportRecord] = []
        total = 0
        try:
            self._emit(ProgressUpdate(status="started", current_operation="Starting export"))
            total = await asyncio.to_thread(store.count)
            self._emit(
                ProgressUpdate(
                    status="processing",
                    total=total,
                    current_operation="Counting records",
                    log=f"Found {total} records to export",
                )
            )
            rules = await asyncio.to_thread(store.normalization_rules)
            self._emit(
                ProgressUpdate(
                    status="processing",
                    total=total,
                    current_operation="Loading normalization settings",
                )
            )

            cursor = None
            while True:
                page = await asyncio.to_thread(store.page, cursor, self.chunk_size)
                if not page:
                    break
                records.extend(
                    ExportRecord(
                        content=record.content,
                        created_at=format_timestamp(record.created_at),
                        updated_at=format_timestamp(record.updated_at),
                    )
                    for record in page
                )
                cursor = (page[-1].created_at, page[-1].id)
                total = max(total, len(records))
                self._emit(
                    ProgressUpdate(
                        status="processing",
                        processed=len(records),
                        total=total,
                        current_operation=f"Exported {len(records)} of {total} records",
                    )
                )
                if len(page) < self.chunk_size:
                    break
                await asyncio.sleep(0)
        except SQLAlchemyError as exc:
            logger.error(f"Export for owner {owner_id} failed: {exc}", exc_info=True)
            self._emit(
                ProgressUpdate(
                    status="error",
                    processed=len(records),
                    total=total,
                    current_operation="Export failed",
                    log="Export failed due to a storage error",
                )
            )
            raise ExportError("Export failed due to a storage error") from exc

        envelope = ExportEnvelope(
            records=records,
            metadata=ExportMetadata(
                exported_at=format_timestamp(utcnow()),
                record_count=len(records),
                normalization_rules=rules,
            ),
        )
        self._emit(
            ProgressUpdate(
                status="completed",
                processed=len(records),
                total=total,
                current_operation="Export complete",
                export_data=envelope.to_wire(),
            )
        )
        logger.info(f"Exported {len(records)} records for owner {owner_id}")
        return envelope
