"""Reclassification batches.

A batch executes its items strictly in ``execution_order``. With
``pause_on_error`` the first failing item stops the run and records its
order in ``paused_at_item``; everything before it succeeded and
everything after it is untouched. Re-running ``execute_batch`` picks up
the remaining ``validated``/``pending`` items.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from . import db
from .db.helpers import _now_iso
from .errors import InvalidStateError, MediaSortError, NotFoundError, PermanentValidationError
from .models import Batch, BatchItem
from .reclassification import ReclassificationService

logger = logging.getLogger("mediasort.batch")

EXECUTABLE_ITEM_STATUSES = ("validated", "pending")
VALIDATABLE_ITEM_STATUSES = ("pending", "validated", "invalid")
CANCELLABLE_ITEM_STATUSES = ("pending", "validated", "invalid")
EXECUTE_FROM_STATUSES = ("pending", "validated", "validation_failed", "paused", "completed")
VALIDATE_FROM_STATUSES = ("pending", "validated", "validation_failed", "paused")


def batch_progress(batch: Batch) -> Dict[str, Any]:
    total = batch.total_items
    done = batch.completed_items + batch.failed_items + batch.skipped_items
    percentage = math.floor(batch.completed_items * 100 / total + 0.5) if total else 0
    return {
        "total": total,
        "completed": batch.completed_items,
        "failed": batch.failed_items,
        "skipped": batch.skipped_items,
        "remaining": max(0, total - done),
        "percentage": percentage,
    }


class BatchOrchestrator:
    def __init__(self, reclassifier: ReclassificationService) -> None:
        self._reclassifier = reclassifier

    async def _require(self, batch_id: int) -> Batch:
        batch = await db.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    async def _require_item(self, batch_id: int, item_id: int) -> BatchItem:
        item = await db.get_batch_item(batch_id, item_id)
        if item is None:
            raise NotFoundError("Batch item", item_id)
        return item

    async def create_batch(
        self,
        items: Sequence[Dict[str, Any]],
        *,
        pause_on_error: bool = True,
        created_by: Optional[str] = None,
    ) -> Batch:
        if not items:
            raise PermanentValidationError("A batch needs at least one item")
        pairs = []
        for index, item in enumerate(items, start=1):
            try:
                pairs.append((int(item["classification_id"]), int(item["target_library_id"])))
            except (KeyError, TypeError, ValueError):
                raise PermanentValidationError(
                    f"Item {index} needs integer classification_id and target_library_id"
                )
        for classification_id, library_id in pairs:
            if await db.get_classification(classification_id) is None:
                raise NotFoundError("Classification", classification_id)
            if await db.get_library(library_id) is None:
                raise NotFoundError("Library", library_id)
        batch_id = await db.insert_batch(pairs, pause_on_error, created_by)
        logger.info("Created batch %s with %s items (pause_on_error=%s)", batch_id, len(pairs), pause_on_error)
        return await self._require(batch_id)

    async def validate_batch(self, batch_id: int) -> Batch:
        batch = await self._require(batch_id)
        if batch.status not in VALIDATE_FROM_STATUSES:
            raise InvalidStateError(f"Batch {batch_id} is {batch.status} and cannot be validated")
        await db.update_batch(batch_id, status="validating")

        invalid = 0
        for item in await db.list_batch_items(batch_id, VALIDATABLE_ITEM_STATUSES):
            try:
                preview = await self._reclassifier.preview(item.classification_id, item.target_library_id)
            except MediaSortError as exc:
                preview = {"can_proceed": False, "warning": exc.message}
            ok = bool(preview.get("can_proceed"))
            if not ok:
                invalid += 1
            await db.update_batch_item(
                item.id,
                "validated" if ok else "invalid",
                validation_result=preview,
                error_message=None if ok else preview.get("warning"),
            )

        status = "validated" if invalid == 0 else "validation_failed"
        await db.update_batch(batch_id, status=status)
        logger.info("Batch %s validation finished: %s (%s invalid)", batch_id, status, invalid)
        return await self._require(batch_id)

    async def _execute_item(self, batch: Batch, item: BatchItem) -> Dict[str, Any]:
        try:
            return await self._reclassifier.execute(
                item.classification_id,
                item.target_library_id,
                corrected_by=batch.created_by or f"batch:{batch.id}",
            )
        except MediaSortError as exc:
            return {"success": False, "error": exc.message}
        except Exception as exc:
            logger.exception("Batch %s item %s raised", batch.id, item.id)
            return {"success": False, "error": f"{exc.__class__.__name__}: {exc}"}

    async def execute_batch(self, batch_id: int) -> Batch:
        batch = await self._require(batch_id)
        started = await db.update_batch(
            batch_id,
            status="executing",
            error_message=None,
            paused_at_item=None,
            started_at_if_missing=_now_iso(),
            completed_at=None,
            expected_status=EXECUTE_FROM_STATUSES,
        )
        if not started:
            raise InvalidStateError(f"Batch {batch_id} is {batch.status} and cannot be executed")

        for item in await db.list_batch_items(batch_id, EXECUTABLE_ITEM_STATUSES):
            current = await self._require(batch_id)
            if current.status != "executing":
                logger.info("Batch %s is %s; stopping before item %s", batch_id, current.status, item.execution_order)
                return current

            await db.update_batch_item(item.id, "executing")
            result = await self._execute_item(batch, item)

            if result.get("success"):
                await db.update_batch_item(item.id, "completed", execution_result=result, error_message=None)
                await db.update_batch(batch_id, increments={"completed_items": 1})
                continue

            error = result.get("error") or "Reclassification failed"
            await db.update_batch_item(item.id, "failed", execution_result={"error": error}, error_message=error)
            await db.update_batch(batch_id, increments={"failed_items": 1})
            logger.warning("Batch %s item %s failed: %s", batch_id, item.execution_order, error)
            if batch.pause_on_error:
                await db.update_batch(
                    batch_id,
                    status="paused",
                    paused_at_item=item.execution_order,
                    error_message=f"Paused at item {item.execution_order}: {error}",
                    expected_status=("executing",),
                )
                logger.info("Batch %s paused at item %s", batch_id, item.execution_order)
                return await self._require(batch_id)

        await db.update_batch(
            batch_id,
            status="completed",
            completed_at=_now_iso(),
            expected_status=("executing",),
        )
        final = await self._require(batch_id)
        logger.info(
            "Batch %s finished: %s completed, %s failed, %s skipped",
            batch_id,
            final.completed_items,
            final.failed_items,
            final.skipped_items,
        )
        return final

    async def pause_batch(self, batch_id: int) -> Batch:
        batch = await self._require(batch_id)
        if batch.status == "paused":
            return batch
        if not await db.update_batch(batch_id, status="paused", expected_status=("executing",)):
            raise InvalidStateError(f"Batch {batch_id} is {batch.status}; only executing batches can be paused")
        logger.info("Batch %s pause requested", batch_id)
        return await self._require(batch_id)

    async def resume_batch(self, batch_id: int) -> Batch:
        return await self.execute_batch(batch_id)

    async def cancel_batch(self, batch_id: int) -> Batch:
        batch = await self._require(batch_id)
        if batch.status == "cancelled":
            return batch
        if batch.status == "completed":
            raise InvalidStateError(f"Batch {batch_id} already completed")
        cancelled = await db.cancel_open_items(batch_id, list(CANCELLABLE_ITEM_STATUSES))
        await db.update_batch(batch_id, status="cancelled", completed_at=_now_iso())
        logger.info("Batch %s cancelled (%s items)", batch_id, cancelled)
        return await self._require(batch_id)

    async def skip_item(self, batch_id: int, item_id: int) -> BatchItem:
        item = await self._require_item(batch_id, item_id)
        if item.status == "skipped":
            return item
        if not await db.update_batch_item(item.id, "skipped", expected_status=("failed",)):
            raise InvalidStateError(f"Item {item_id} is {item.status}; only failed items can be skipped")
        await db.update_batch(batch_id, increments={"skipped_items": 1, "failed_items": -1})
        return await self._require_item(batch_id, item_id)

    async def retry_item(self, batch_id: int, item_id: int) -> BatchItem:
        item = await self._require_item(batch_id, item_id)
        if not await db.update_batch_item(
            item.id,
            "validated",
            execution_result=None,
            error_message=None,
            expected_status=("failed",),
        ):
            raise InvalidStateError(f"Item {item_id} is {item.status}; only failed items can be retried")
        await db.update_batch(batch_id, increments={"failed_items": -1})
        return await self._require_item(batch_id, item_id)

    async def get_batch_status(self, batch_id: int) -> Dict[str, Any]:
        batch = await self._require(batch_id)
        items: List[BatchItem] = await db.list_batch_items(batch_id)
        return {
            "batch": batch,
            "items": items,
            "progress": batch_progress(batch),
        }

    async def get_batch_progress(self, batch_id: int) -> Dict[str, Any]:
        batch = await self._require(batch_id)
        return {
            "batch_id": batch.id,
            "status": batch.status,
            "progress": batch_progress(batch),
            "paused_at_item": batch.paused_at_item,
            "error_message": batch.error_message,
        }

    async def list_batches(self, limit: int = 20) -> List[Batch]:
        return await db.list_batches(limit)
