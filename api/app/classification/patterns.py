from typing import Any, Dict, Optional, Sequence, Tuple

from ..models import LearnedPattern


def parse_year_range(encoded: str) -> Optional[Tuple[int, int]]:
    parts = str(encoded or "").split("-")
    if len(parts) != 2:
        return None
    try:
        low, high = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if low > high:
        low, high = high, low
    return low, high


def _lower_items(values: Any) -> set:
    return {str(value).strip().lower() for value in values or [] if value is not None}


def pattern_matches(pattern: LearnedPattern, metadata: Dict[str, Any]) -> bool:
    kind = pattern.pattern_type
    value = str(pattern.pattern_value).strip().lower()
    if kind == "genre":
        return value in _lower_items(metadata.get("genres"))
    if kind == "keyword":
        return value in _lower_items(metadata.get("keywords"))
    if kind == "rating":
        certification = metadata.get("certification")
        return certification is not None and str(certification).strip().lower() == value
    if kind == "year_range":
        bounds = parse_year_range(pattern.pattern_value)
        year = metadata.get("year")
        if bounds is None or year in (None, ""):
            return False
        try:
            year_value = int(year)
        except (TypeError, ValueError):
            return False
        return bounds[0] <= year_value <= bounds[1]
    if kind == "clarification_pattern":
        answers = metadata.get("clarifications") or {}
        answer = answers.get(pattern.pattern_key)
        return answer is not None and str(answer).strip().lower() == value
    return False


def first_matching_pattern(
    patterns: Sequence[LearnedPattern],
    metadata: Dict[str, Any],
) -> Optional[LearnedPattern]:
    """Patterns must already be ordered by confidence_score DESC, occurrence_count DESC."""
    for pattern in patterns:
        if pattern_matches(pattern, metadata):
            return pattern
    return None
