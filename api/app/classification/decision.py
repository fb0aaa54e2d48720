import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

from .. import db
from ..ai_client import AIResponseParseError, build_classification_prompt
from ..models import LearnedPattern, Library
from .patterns import first_matching_pattern
from .rule_matcher import Rule, match_rules, rule_from_row

logger = logging.getLogger("mediasort.classification")

DecisionMethod = Literal[
    "exact_match",
    "learned_pattern",
    "rule_match",
    "ai_classification",
    "no_libraries",
]


@dataclass(frozen=True)
class DecisionPolicy:
    learned_pattern_threshold: int = 80
    rule_confidence: int = 85
    rule_threshold: int = 70
    ai_parse_fallback_confidence: int = 30
    ai_error_fallback_confidence: int = 50


@dataclass(frozen=True)
class Decision:
    library_id: Optional[int]
    library_name: Optional[str]
    confidence: int
    method: DecisionMethod
    reason: str


class DecisionStore(Protocol):
    async def list_enabled_libraries(self, media_type: str) -> List[Library]: ...

    async def find_exact_match(self, external_id: str, media_type: str) -> Optional[Dict[str, Any]]: ...

    async def list_patterns(self, media_type: str) -> List[LearnedPattern]: ...

    async def list_rules(self, media_type: str) -> List[Rule]: ...


class AIClassifier(Protocol):
    async def classify(self, prompt: str, candidates: Sequence[Library]) -> Any: ...


class SQLiteDecisionStore:
    """Reads each tier's inputs through the db layer, one query per tier."""

    async def list_enabled_libraries(self, media_type: str) -> List[Library]:
        return await db.list_enabled_libraries(media_type)

    async def find_exact_match(self, external_id: str, media_type: str) -> Optional[Dict[str, Any]]:
        return await db.find_exact_match(external_id, media_type)

    async def list_patterns(self, media_type: str) -> List[LearnedPattern]:
        return await db.list_patterns_for_enabled_libraries(media_type)

    async def list_rules(self, media_type: str) -> List[Rule]:
        rules: List[Rule] = []
        for row in await db.list_enabled_rules(media_type):
            try:
                rules.append(rule_from_row(row))
            except ValueError as exc:
                logger.warning("Skipping malformed rule %s (%s): %s", row.get("id"), row.get("name"), exc)
        return rules


def _library_name(libraries: Sequence[Library], library_id: int) -> Optional[str]:
    for library in libraries:
        if library.id == library_id:
            return library.name
    return None


async def decide(
    metadata: Dict[str, Any],
    media_type: str,
    store: DecisionStore,
    ai_client: AIClassifier,
    policy: Optional[DecisionPolicy] = None,
) -> Decision:
    """Evaluate exact match, learned pattern, rule and AI tiers in order.

    Each accepted tier short-circuits the rest, and lower-tier inputs are
    only loaded once the tiers above have declined.
    """
    policy = policy or DecisionPolicy()
    libraries = await store.list_enabled_libraries(media_type)
    if not libraries:
        return Decision(None, None, 0, "no_libraries", f"No enabled libraries for media type {media_type}")

    external_id = str(metadata.get("external_id") or "")
    if external_id:
        exact = await store.find_exact_match(external_id, media_type)
        if exact:
            return Decision(
                exact["library_id"],
                exact.get("library_name"),
                100,
                "exact_match",
                "Exact match from a previous correction",
            )

    pattern = first_matching_pattern(await store.list_patterns(media_type), metadata)
    if pattern is not None:
        score = int(round(pattern.confidence_score * 100))
        if score >= policy.learned_pattern_threshold:
            return Decision(
                pattern.library_id,
                _library_name(libraries, pattern.library_id),
                score,
                "learned_pattern",
                f"Learned {pattern.pattern_type} pattern '{pattern.pattern_value}' "
                f"(seen {pattern.occurrence_count}x)",
            )
        logger.debug("Learned pattern %s below threshold (%s)", pattern.pattern_key, score)

    rule = match_rules(metadata, await store.list_rules(media_type))
    if rule is not None and policy.rule_confidence >= policy.rule_threshold:
        return Decision(
            rule.library_id,
            _library_name(libraries, rule.library_id),
            policy.rule_confidence,
            "rule_match",
            f"Matched rule '{rule.name}'",
        )

    fallback = libraries[0]
    prompt = build_classification_prompt(metadata, libraries)
    try:
        choice = await ai_client.classify(prompt, libraries)
        if not 0 <= choice.library_index < len(libraries):
            raise AIResponseParseError(f"Library index {choice.library_index} out of range")
    except AIResponseParseError as exc:
        logger.warning("AI response unparseable, falling back to %s: %s", fallback.name, exc)
        return Decision(
            fallback.id,
            fallback.name,
            policy.ai_parse_fallback_confidence,
            "ai_classification",
            "Fallback classification (parsing failed)",
        )
    except Exception as exc:
        logger.warning("AI classification failed, falling back to %s: %s", fallback.name, exc)
        return Decision(
            fallback.id,
            fallback.name,
            policy.ai_error_fallback_confidence,
            "ai_classification",
            "Fallback classification (AI failed)",
        )
    chosen = libraries[choice.library_index]
    return Decision(chosen.id, chosen.name, choice.confidence, "ai_classification", choice.reason)
