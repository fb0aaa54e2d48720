import logging
from typing import Any, Dict, Optional

from . import db
from .errors import NotFoundError, PermanentValidationError
from .learning import PATTERN_CONFIDENCE_CAP, PATTERN_CONFIDENCE_STEP, patterns_from_metadata
from .library_router import ARR_FOR_MEDIA_TYPE, LibraryRouter
from .models import ClassificationRecord, Library

logger = logging.getLogger("mediasort.classification")


def _routing_item(record: ClassificationRecord) -> Dict[str, Any]:
    item = dict(record.metadata)
    item.setdefault("external_id", record.external_id)
    item.setdefault("media_type", record.media_type)
    item["title"] = item.get("title") or record.title
    return item


class ReclassificationService:
    """Applies a library change to an existing classification record.

    Live corrections and batch items both go through ``execute``.
    """

    def __init__(self, router: LibraryRouter) -> None:
        self._router = router

    async def _load(self, classification_id: int, target_library_id: int) -> tuple[ClassificationRecord, Library]:
        record = await db.get_classification(classification_id)
        if record is None:
            raise NotFoundError("Classification", classification_id)
        library = await db.get_library(target_library_id)
        if library is None:
            raise NotFoundError("Library", target_library_id)
        return record, library

    async def _check_target(self, record: ClassificationRecord, library: Library) -> Optional[str]:
        if library.media_type != record.media_type:
            return (
                f"Cannot move {record.media_type} '{record.title}' into "
                f"{library.media_type} library '{library.name}'"
            )
        if not library.enabled:
            return f"Library '{library.name}' is disabled"
        mapping = await db.get_library_mapping(library.id)
        if mapping is None:
            return f"No routing mapping configured for library '{library.name}'"
        if ARR_FOR_MEDIA_TYPE.get(record.media_type) != mapping.arr_type:
            return f"Library '{library.name}' routes to {mapping.arr_type}, which cannot hold {record.media_type}"
        return None

    async def preview(self, classification_id: int, target_library_id: int) -> Dict[str, Any]:
        record, library = await self._load(classification_id, target_library_id)
        warning = await self._check_target(record, library)
        target_path = None
        if warning is None:
            route_preview = await self._router.preview(library.id)
            warning = route_preview.warning
            target_path = route_preview.target_path
        return {
            "classification_id": record.id,
            "title": record.title,
            "media_type": record.media_type,
            "current_library_id": record.library_id,
            "current_library": record.library_name,
            "target_library_id": library.id,
            "target_library": library.name,
            "target_path": target_path,
            "can_proceed": warning is None,
            "warning": warning,
        }

    async def execute(
        self,
        classification_id: int,
        target_library_id: int,
        corrected_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Move in the Arr instance first; only a successful move is followed by the database change."""
        record, library = await self._load(classification_id, target_library_id)
        problem = await self._check_target(record, library)
        if problem:
            raise PermanentValidationError(problem)

        item = _routing_item(record)
        result = await self._router.move(library.id, item)
        if not result.success:
            logger.warning("Reclassification of %s to %s failed: %s", record.id, library.name, result.error)
            return {"success": False, "error": result.error, "transient": result.transient}

        patterns = patterns_from_metadata(item, library.id)
        correction_id = await db.apply_reclassification(
            record.id,
            record.library_id,
            library.id,
            corrected_by,
            patterns,
            PATTERN_CONFIDENCE_STEP,
            PATTERN_CONFIDENCE_CAP,
        )
        logger.info(
            "Reclassified %s '%s' from %s to %s",
            record.media_type,
            record.title,
            record.library_name,
            library.name,
        )
        return {
            "success": True,
            "message": f"Moved '{record.title}' to {library.name}",
            "details": {
                "classification_id": record.id,
                "correction_id": correction_id,
                "from_library_id": record.library_id,
                "to_library_id": library.id,
                "patterns_updated": len(patterns),
                **result.details,
            },
        }
