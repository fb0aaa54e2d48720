import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .. import db
from ..errors import PermanentValidationError
from .decision import AIClassifier, Decision, DecisionPolicy, DecisionStore, SQLiteDecisionStore, decide

logger = logging.getLogger("mediasort.classification")

MEDIA_TYPES = ("movie", "tv")


@dataclass(frozen=True)
class ClassificationRequest:
    external_id: str
    media_type: str
    title: Optional[str] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class ClassificationOutcome:
    classification_id: int
    decision: Decision
    routed: bool
    routing_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification_id": self.classification_id,
            **asdict(self.decision),
            "routed": self.routed,
            "routing_error": self.routing_error,
        }


def parse_classification_payload(payload: Dict[str, Any]) -> ClassificationRequest:
    """Accept a direct request or an Overseerr-style webhook body."""
    media = payload.get("media") if isinstance(payload.get("media"), dict) else {}
    external_id = payload.get("external_id") or payload.get("tmdb_id") or media.get("tmdbId")
    if not external_id:
        for extra in payload.get("extra") or []:
            if isinstance(extra, dict) and extra.get("value"):
                external_id = extra["value"]
                break
    media_type = payload.get("media_type") or media.get("media_type")
    subject = str(payload.get("subject") or "")
    if not media_type and subject:
        media_type = "movie" if "movie" in subject.lower() else "tv"
    if not external_id:
        raise PermanentValidationError("Classification payload has no external id")
    media_type = str(media_type or "").lower()
    if media_type not in MEDIA_TYPES:
        raise PermanentValidationError(f"Unsupported media type: {media_type or 'missing'}")
    return ClassificationRequest(
        external_id=str(external_id),
        media_type=media_type,
        title=payload.get("title") or subject or None,
        source=payload.get("source"),
    )


class ClassificationEngine:
    def __init__(
        self,
        ai_client: AIClassifier,
        metadata_client: Any,
        router: Any,
        store: Optional[DecisionStore] = None,
        policy: Optional[DecisionPolicy] = None,
        route_min_confidence: int = 0,
    ) -> None:
        self._ai_client = ai_client
        self._metadata_client = metadata_client
        self._router = router
        self._store = store or SQLiteDecisionStore()
        self._policy = policy or DecisionPolicy()
        self._route_min_confidence = route_min_confidence

    async def _route(self, decision: Decision, metadata: Dict[str, Any]) -> tuple[bool, Optional[str]]:
        if decision.library_id is None:
            return False, None
        if decision.confidence < self._route_min_confidence:
            return False, f"Confidence {decision.confidence} below routing threshold {self._route_min_confidence}"
        # The library may have been disabled since the decision was taken.
        library = await db.get_library(decision.library_id)
        if library is None or not library.enabled:
            logger.warning(
                "Library %s disabled before routing '%s'; decision kept without routing",
                decision.library_id,
                metadata.get("title"),
            )
            return False, f"Library {decision.library_id} is no longer enabled"
        try:
            result = await self._router.route(decision.library_id, metadata)
        except Exception as exc:
            logger.warning("Routing '%s' raised: %s", metadata.get("title"), exc)
            return False, str(exc)
        if not result.success:
            logger.warning("Routing '%s' failed: %s", metadata.get("title"), result.error)
            return False, result.error
        return True, None

    async def classify(self, request: ClassificationRequest) -> ClassificationOutcome:
        metadata_obj = await self._metadata_client.enrich(request.external_id, request.media_type, request.title)
        metadata = metadata_obj.model_dump()
        if metadata.get("error"):
            logger.warning(
                "Classifying %s %s with degraded metadata: %s",
                request.media_type,
                request.external_id,
                metadata["error"],
            )

        decision = await decide(metadata, request.media_type, self._store, self._ai_client, self._policy)
        routed, routing_error = await self._route(decision, metadata)

        classification_id = await db.insert_classification(
            request.external_id,
            request.media_type,
            metadata.get("title") or request.title,
            metadata,
            decision.library_id,
            decision.confidence,
            decision.method,
            decision.reason,
        )
        logger.info(
            "Classified %s '%s' -> %s (%s, %s%%)",
            request.media_type,
            metadata.get("title") or request.external_id,
            decision.library_name,
            decision.method,
            decision.confidence,
        )
        return ClassificationOutcome(classification_id, decision, routed, routing_error)

    async def handle_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        outcome = await self.classify(parse_classification_payload(payload))
        return outcome.to_dict()
