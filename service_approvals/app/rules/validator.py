"""
Static validation and in-process evaluation of decision documents.
"""

from typing import Any, Dict, List, Tuple

from shared.errors import ValidationFailed
from shared.logging import get_logger
from .expressions import (
    ExpressionSyntaxError, evaluate_condition, parse_condition, referenced_names
)
from .models import DecisionDocument, DecisionOutcome, HitPolicy, ValidationResult


logger = get_logger("approvals.rules.validator")


def validate_document(document: DecisionDocument) -> ValidationResult:
    """Check a document's structure and every row's condition syntax.

    Checks run in order: a single default row in last position, each
    specific row's condition parses and only names declared inputs, then
    hit-policy specific checks (duplicate rows under UNIQUE, declared
    output ordering under PRIORITY). Every violation is an error.
    """
    errors: List[str] = []

    if not document.rows:
        errors.append("Decision table has no rows")
        return ValidationResult(valid=False, errors=errors)

    if not document.input_expression or not document.input_expression.strip():
        errors.append("Decision table has no input expression")

    default_positions = [index for index, row in enumerate(document.rows) if row.is_default]
    if len(default_positions) != 1:
        errors.append(f"Expected exactly one default row, found {len(default_positions)}")
    elif default_positions[0] != len(document.rows) - 1:
        errors.append(
            f"Default row must be last (found at row {default_positions[0] + 1} of {len(document.rows)})"
        )

    parsed: Dict[int, Any] = {}
    for index, row in enumerate(document.rows):
        if row.is_default:
            continue
        try:
            node = parse_condition(row.condition)
        except ExpressionSyntaxError as e:
            errors.append(f"Row {index + 1}: invalid condition {row.condition!r}: {e}")
            continue
        unknown = sorted(name for name in referenced_names(node) if not document.resolves(name))
        if unknown:
            errors.append(f"Row {index + 1}: unknown identifier(s) {', '.join(unknown)}")
            continue
        parsed[index] = node

    if document.hit_policy == HitPolicy.UNIQUE:
        seen: Dict[Any, int] = {}
        for index, node in parsed.items():
            if node in seen:
                errors.append(
                    f"Row {index + 1} duplicates row {seen[node] + 1} under UNIQUE hit policy"
                )
            else:
                seen[node] = index

    if document.hit_policy == HitPolicy.PRIORITY:
        if not document.output_priority:
            errors.append("PRIORITY hit policy requires an output priority list")
        else:
            for index, row in enumerate(document.rows):
                if row.outcome not in document.output_priority:
                    errors.append(f"Row {index + 1}: outcome {row.outcome!r} is missing from output priority")

    result = ValidationResult(valid=not errors, errors=errors)
    logger.debug(
        "Decision table validated",
        decision_id=document.decision_id,
        valid=result.valid,
        error_count=len(errors)
    )
    return result


def ensure_valid(document: DecisionDocument) -> DecisionDocument:
    """Return the document or raise ``ValidationFailed``."""
    result = validate_document(document)
    if not result.valid:
        raise ValidationFailed(
            f"Decision table {document.decision_id} is invalid",
            errors=result.errors,
            details={"decision_id": document.decision_id}
        )
    return document


def evaluate_document(document: DecisionDocument, value: Any) -> DecisionOutcome:
    """Evaluate a validated document against one input value.

    The default row answers only when no specific row matches.
    """
    ensure_valid(document)

    matches: List[Tuple[int, Any]] = []
    for index, row in enumerate(document.rows):
        if row.is_default:
            continue
        node = parse_condition(row.condition)
        if evaluate_condition(node, value, document.input_expression):
            matches.append((index, row.outcome))
            if document.hit_policy == HitPolicy.FIRST:
                break

    if not matches:
        default_index = len(document.rows) - 1
        return DecisionOutcome(outcome=document.rows[default_index].outcome, row_index=default_index)

    matched_rows = tuple(index for index, _ in matches)
    if document.hit_policy == HitPolicy.UNIQUE and len(matches) > 1:
        raise ValidationFailed(
            "More than one row matched under UNIQUE hit policy",
            errors=[f"Rows {', '.join(str(i + 1) for i in matched_rows)} all matched"],
            details={"decision_id": document.decision_id}
        )
    if document.hit_policy == HitPolicy.PRIORITY:
        ranking = {outcome: rank for rank, outcome in enumerate(document.output_priority)}
        index, outcome = min(matches, key=lambda match: (ranking[match[1]], match[0]))
        return DecisionOutcome(outcome=outcome, row_index=index, matched_rows=matched_rows)

    index, outcome = matches[0]
    return DecisionOutcome(outcome=outcome, row_index=index, matched_rows=matched_rows)
