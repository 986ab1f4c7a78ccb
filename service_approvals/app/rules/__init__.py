"""
Rules package.

Compiles business-authored eligibility rules into decision tables and
checks those tables before they are handed to deployment.

Modules of interest:
- models: RuleDescription, Row, DecisionDocument and result types.
- expressions: Parser and evaluator for row conditions.
- compiler: Threshold, allow-list and composite generation strategies.
- validator: Structural/syntax validation and hit-policy evaluation.
- dmn: DMN XML rendering of a validated document.

Everything here is pure: no I/O and no shared state.
"""

from .compiler import build_custom_document, compile_rule, decision_id_for
from .dmn import render_dmn_xml
from .models import (
    Comparator, DecisionDocument, DecisionOutcome, HitPolicy, Row, RuleDescription,
    RuleType, ValidationResult
)
from .validator import ensure_valid, evaluate_document, validate_document

__all__ = [
    "Comparator",
    "DecisionDocument",
    "DecisionOutcome",
    "HitPolicy",
    "Row",
    "RuleDescription",
    "RuleType",
    "ValidationResult",
    "build_custom_document",
    "compile_rule",
    "decision_id_for",
    "ensure_valid",
    "evaluate_document",
    "render_dmn_xml",
    "validate_document",
]
