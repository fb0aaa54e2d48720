from .decision import Decision, DecisionPolicy, SQLiteDecisionStore, decide
from .engine import ClassificationEngine, ClassificationRequest, parse_classification_payload
from .rule_matcher import Predicate, Rule, evaluate_predicate, match_rules

__all__ = [
    "ClassificationEngine",
    "ClassificationRequest",
    "Decision",
    "DecisionPolicy",
    "Predicate",
    "Rule",
    "SQLiteDecisionStore",
    "decide",
    "evaluate_predicate",
    "match_rules",
    "parse_classification_payload",
]
