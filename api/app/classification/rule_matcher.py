from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

PredicateKind = Literal["equals", "includes", "is_one_of", "contains", "greater_than", "less_than"]

PREDICATE_KINDS: Tuple[str, ...] = (
    "equals",
    "includes",
    "is_one_of",
    "contains",
    "greater_than",
    "less_than",
)
ARRAY_FIELDS = ("genres", "keywords")


@dataclass(frozen=True)
class Predicate:
    kind: PredicateKind
    field: str
    value: Any


@dataclass(frozen=True)
class Rule:
    rule_id: int
    library_id: int
    name: str
    priority: int
    predicates: Tuple[Predicate, ...]


def _norm(value: Any) -> str:
    return str(value).strip().lower()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _values(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _scalar_equals(left: Any, right: Any) -> bool:
    left_num = _as_number(left)
    right_num = _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return _norm(left) == _norm(right)


def evaluate_predicate(predicate: Predicate, metadata: Dict[str, Any]) -> bool:
    """Single dispatch over the closed predicate set; matching is case-insensitive."""
    actual = metadata.get(predicate.field)
    if actual is None or actual == "" or actual == []:
        return False
    kind = predicate.kind
    if isinstance(actual, (list, tuple)):
        actual_items = [_norm(item) for item in actual if item is not None]
    else:
        actual_items = None

    if kind == "equals":
        if actual_items is not None:
            return _norm(predicate.value) in actual_items
        return _scalar_equals(actual, predicate.value)
    if kind == "includes":
        items = actual_items if actual_items is not None else [_norm(actual)]
        return all(_norm(value) in items for value in _values(predicate.value))
    if kind == "is_one_of":
        wanted = [value for value in _values(predicate.value)]
        if actual_items is not None:
            normalized = {_norm(value) for value in wanted}
            return any(item in normalized for item in actual_items)
        return any(_scalar_equals(actual, value) for value in wanted)
    if kind == "contains":
        needle = _norm(predicate.value)
        if actual_items is not None:
            return any(needle in item for item in actual_items)
        return needle in _norm(actual)
    if kind in ("greater_than", "less_than"):
        left = _as_number(actual)
        right = _as_number(predicate.value)
        if left is None or right is None:
            return False
        return left > right if kind == "greater_than" else left < right
    raise ValueError(f"Unknown predicate kind: {kind}")


def predicates_from_mapping(conditions: Dict[str, Any]) -> Tuple[Predicate, ...]:
    """Convert a legacy ``field -> value(s)`` rule into predicates.

    Array rule values mean "must be one of"; array metadata fields mean
    "must contain".
    """
    predicates: List[Predicate] = []
    for field, value in conditions.items():
        is_list = isinstance(value, (list, tuple))
        if field in ARRAY_FIELDS:
            kind: PredicateKind = "is_one_of" if is_list else "includes"
        else:
            kind = "is_one_of" if is_list else "equals"
        predicates.append(Predicate(kind=kind, field=str(field), value=list(value) if is_list else value))
    return tuple(predicates)


def parse_predicates(raw: Any) -> Tuple[Predicate, ...]:
    if isinstance(raw, dict):
        return predicates_from_mapping(raw)
    predicates: List[Predicate] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            raise ValueError(f"Invalid rule condition: {entry!r}")
        kind = str(entry.get("kind") or entry.get("operator") or "").strip()
        field = str(entry.get("field") or "").strip()
        if kind not in PREDICATE_KINDS:
            raise ValueError(f"Unknown predicate kind: {kind!r}")
        if not field:
            raise ValueError("Rule condition is missing a field")
        predicates.append(Predicate(kind=kind, field=field, value=entry.get("value")))  # type: ignore[arg-type]
    return tuple(predicates)


def rule_from_row(row: Dict[str, Any]) -> Rule:
    return Rule(
        rule_id=int(row["id"]),
        library_id=int(row["library_id"]),
        name=str(row.get("name") or ""),
        priority=int(row.get("priority") or 0),
        predicates=parse_predicates(row.get("conditions")),
    )


def match_rules(metadata: Dict[str, Any], rules: Sequence[Rule]) -> Optional[Rule]:
    """First rule (in the given priority order) whose predicates all hold."""
    for rule in rules:
        if not rule.predicates:
            continue
        if all(evaluate_predicate(predicate, metadata) for predicate in rule.predicates):
            return rule
    return None
