import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import db
from .errors import NotFoundError, PermanentValidationError
from .models import LearnedPattern

logger = logging.getLogger("mediasort.learning")

PATTERN_INITIAL_CONFIDENCE = 0.60
PATTERN_CONFIDENCE_STEP = 0.05
PATTERN_CONFIDENCE_CAP = 0.95
MAX_KEYWORD_PATTERNS = 10
RECLASSIFY_CONFIDENCE = 70


def patterns_from_metadata(metadata: Dict[str, Any], library_id: int) -> List[LearnedPattern]:
    """Heuristics a correction teaches: genres, leading keywords, certification and decade."""
    patterns: List[LearnedPattern] = []
    seen: set = set()

    def add(pattern_type: str, value: Any, key: Optional[str] = None) -> None:
        text = str(value or "").strip()
        if not text:
            return
        pattern_key = (key or text).lower()
        if (pattern_type, pattern_key) in seen:
            return
        seen.add((pattern_type, pattern_key))
        patterns.append(
            LearnedPattern(
                pattern_type=pattern_type,
                pattern_key=pattern_key,
                pattern_value=text,
                library_id=library_id,
                confidence_score=PATTERN_INITIAL_CONFIDENCE,
            )
        )

    for genre in metadata.get("genres") or []:
        add("genre", genre)
    for keyword in (metadata.get("keywords") or [])[:MAX_KEYWORD_PATTERNS]:
        add("keyword", keyword)
    add("rating", metadata.get("certification"))
    year = metadata.get("year")
    if year not in (None, ""):
        try:
            decade = int(year) // 10 * 10
        except (TypeError, ValueError):
            decade = None
        if decade is not None:
            add("year_range", f"{decade}-{decade + 9}", key=f"{decade}s")
    return patterns


def apply_confidence_boost(confidence_before: int, boost: int) -> int:
    return max(0, min(100, int(confidence_before) + int(boost)))


@dataclass(frozen=True)
class ClarificationResult:
    response_id: int
    confidence_before: int
    confidence_after: int
    should_reclassify: bool


class LearningService:
    async def record_response(
        self,
        classification_id: int,
        question_id: int,
        response_value: str,
        *,
        confidence_before: Optional[int] = None,
        responded_by: Optional[str] = None,
    ) -> ClarificationResult:
        record = await db.get_classification(classification_id)
        if record is None:
            raise NotFoundError("Classification", classification_id)
        question = await db.get_question(question_id)
        if question is None:
            raise NotFoundError("Clarification question", question_id)
        option = question["response_options"].get(response_value)
        if not isinstance(option, dict):
            raise PermanentValidationError(
                f"'{response_value}' is not an option for question {question['question_key']}"
            )
        before = record.confidence if confidence_before is None else int(confidence_before)
        try:
            boost = int(option.get("confidence_boost") or 0)
        except (TypeError, ValueError):
            raise PermanentValidationError(f"Invalid confidence boost on option '{response_value}'")
        after = apply_confidence_boost(before, boost)

        metadata = dict(record.metadata)
        clarifications = dict(metadata.get("clarifications") or {})
        clarifications[question["question_key"]] = response_value
        metadata["clarifications"] = clarifications

        patterns: List[LearnedPattern] = []
        if record.library_id is not None:
            patterns.append(
                LearnedPattern(
                    pattern_type="clarification_pattern",
                    pattern_key=question["question_key"],
                    pattern_value=response_value,
                    library_id=record.library_id,
                    confidence_score=PATTERN_INITIAL_CONFIDENCE,
                )
            )
        response_id = await db.save_clarification_response(
            classification_id,
            question_id,
            response_value,
            before,
            after,
            responded_by,
            metadata,
            patterns,
            PATTERN_CONFIDENCE_STEP,
            PATTERN_CONFIDENCE_CAP,
        )
        logger.info(
            "Clarification %s on classification %s: confidence %s -> %s",
            question["question_key"],
            classification_id,
            before,
            after,
        )
        return ClarificationResult(response_id, before, after, after >= RECLASSIFY_CONFIDENCE)

    async def confirm_classification(self, classification_id: int) -> int:
        """Reinforce the patterns of a classification an operator agrees with."""
        record = await db.get_classification(classification_id)
        if record is None:
            raise NotFoundError("Classification", classification_id)
        if record.library_id is None:
            raise PermanentValidationError(f"Classification {classification_id} has no library to confirm")
        patterns = patterns_from_metadata(record.metadata, record.library_id)
        if not patterns:
            return 0
        count = await db.record_patterns(patterns, PATTERN_CONFIDENCE_STEP, PATTERN_CONFIDENCE_CAP)
        logger.info("Classification %s confirmed; reinforced %s patterns", classification_id, count)
        return count
