"""
Rule compiler: turns a RuleDescription into a DecisionDocument.

Compilation is pure. Specific rows always precede a single default row
(empty condition, outcome ``False``), and documents declare the FIRST hit
policy, so the first matching row wins and every input gets an answer.
"""

import math
import numbers
import re
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple, Union

from shared.errors import InvalidRuleDefinition
from .expressions import KEYWORDS, format_literal, quote_string
from .models import (
    Comparator, DecisionDocument, HitPolicy, Outcome, Row, RuleDescription, RuleType
)


def compile_rule(description: RuleDescription, name: str) -> DecisionDocument:
    """Compile a rule description into a decision table.

    Raises ``InvalidRuleDefinition`` when fields required by the rule type
    are missing or out of domain.
    """
    rule_type = _rule_type(description)
    _require_text(description.rule_id, "rule_id")
    _require_text(name, "name")
    _require_identifier(description.field, "field")

    strategy = _STRATEGIES[rule_type]
    condition, row_description, input_fields = strategy(description)

    return DecisionDocument(
        decision_id=decision_id_for(description.rule_id),
        name=name.strip(),
        input_expression=description.field,
        input_fields=input_fields,
        hit_policy=HitPolicy.FIRST,
        input_label=description.description,
        rows=(
            Row(condition=condition, outcome=True, description=row_description),
            Row(condition="", outcome=False, description="Requirement not met - not eligible"),
        ),
    )


def decision_id_for(rule_id: str) -> str:
    """Stable decision id derived from the rule id."""
    return f"decision_{rule_id.strip()}"


def build_custom_document(
    rule_id: str,
    name: str,
    input_expression: str,
    rows: Iterable[Union[Row, Dict[str, Any]]],
    hit_policy: Union[HitPolicy, str] = HitPolicy.FIRST,
    input_fields: Sequence[str] = (),
    output_priority: Sequence[Outcome] = (),
) -> DecisionDocument:
    """Assemble a hand-authored decision table.

    Rows are taken as given; nothing is appended or reordered. Run the
    result through ``validate_document`` before using it.
    """
    _require_text(rule_id, "rule_id")
    _require_text(name, "name")
    _require_text(input_expression, "input_expression")
    try:
        policy = HitPolicy(hit_policy)
    except ValueError:
        raise InvalidRuleDefinition(
            f"Unknown hit policy: {hit_policy}",
            details={"field": "hit_policy", "value": str(hit_policy)}
        )

    built = []
    for row in rows:
        if isinstance(row, Row):
            built.append(row)
            continue
        if "outcome" not in row:
            raise InvalidRuleDefinition("Every row needs an outcome", details={"row": row})
        built.append(Row(
            condition=row.get("condition") or "",
            outcome=row["outcome"],
            description=row.get("description"),
        ))
    if not built:
        raise InvalidRuleDefinition("A decision table needs at least one row")

    return DecisionDocument(
        decision_id=decision_id_for(rule_id),
        name=name.strip(),
        input_expression=input_expression,
        rows=tuple(built),
        hit_policy=policy,
        input_fields=tuple(input_fields),
        output_priority=tuple(output_priority),
    )


def _compile_threshold(description: RuleDescription) -> Tuple[str, str, Tuple[str, ...]]:
    comparator, threshold = _threshold_parts(description)
    condition = f"{comparator.value} {format_literal(threshold)}"
    return condition, f"{description.field} {condition} - eligible", ()


def _compile_allow_list(description: RuleDescription) -> Tuple[str, str, Tuple[str, ...]]:
    values = _allow_list(description)
    condition = ", ".join(quote_string(value) for value in values)
    return condition, f"{description.field} is an allowed value - eligible", ()


def _compile_composite(description: RuleDescription) -> Tuple[str, str, Tuple[str, ...]]:
    _require_identifier(description.threshold_field, "threshold_field")
    _require_identifier(description.allow_list_field, "allow_list_field")
    if description.threshold_field == description.allow_list_field:
        raise InvalidRuleDefinition(
            "Composite rules need distinct threshold and allow-list fields",
            details={"field": "allow_list_field"}
        )
    comparator, threshold = _threshold_parts(description)
    values = _allow_list(description)
    condition = (
        f"{description.threshold_field} {comparator.value} {format_literal(threshold)}"
        f" and {description.allow_list_field} in ({', '.join(quote_string(v) for v in values)})"
    )
    return (
        condition,
        "All eligibility criteria met - eligible",
        (description.threshold_field, description.allow_list_field),
    )


_STRATEGIES: Dict[RuleType, Callable[[RuleDescription], Tuple[str, str, Tuple[str, ...]]]] = {
    RuleType.THRESHOLD: _compile_threshold,
    RuleType.ALLOW_LIST: _compile_allow_list,
    RuleType.COMPOSITE: _compile_composite,
}


def _rule_type(description: RuleDescription) -> RuleType:
    try:
        return RuleType(description.rule_type)
    except ValueError:
        raise InvalidRuleDefinition(
            f"Invalid rule type: {description.rule_type}",
            details={"field": "rule_type", "value": str(description.rule_type)}
        )


def _threshold_parts(description: RuleDescription) -> Tuple[Comparator, Any]:
    if description.comparator is None:
        raise InvalidRuleDefinition("A comparator is required", details={"field": "comparator"})
    try:
        comparator = Comparator(description.comparator)
    except ValueError:
        raise InvalidRuleDefinition(
            f"Unsupported comparator: {description.comparator}",
            details={"field": "comparator", "value": str(description.comparator)}
        )

    threshold = description.threshold_value
    if threshold is None:
        raise InvalidRuleDefinition("A threshold value is required", details={"field": "threshold_value"})
    if isinstance(threshold, bool) or not isinstance(threshold, numbers.Real):
        raise InvalidRuleDefinition(
            "Threshold value must be a number",
            details={"field": "threshold_value", "value": repr(threshold)}
        )
    if not math.isfinite(threshold) or threshold < 0:
        raise InvalidRuleDefinition(
            "Threshold value must be zero or greater",
            details={"field": "threshold_value", "value": threshold}
        )
    return comparator, threshold


def _allow_list(description: RuleDescription) -> Tuple[str, ...]:
    values = description.allowed_values
    if not values:
        raise InvalidRuleDefinition("Allowed values must not be empty", details={"field": "allowed_values"})
    if isinstance(values, str):
        raise InvalidRuleDefinition(
            "Allowed values must be a collection of strings",
            details={"field": "allowed_values"}
        )
    cleaned = set()
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise InvalidRuleDefinition(
                "Allowed values must be non-empty strings",
                details={"field": "allowed_values", "value": repr(value)}
            )
        cleaned.add(value)
    # sorted so the same set always compiles to the same text
    return tuple(sorted(cleaned))


def _require_text(value: Optional[str], field_name: str):
    if not isinstance(value, str) or not value.strip():
        raise InvalidRuleDefinition(f"{field_name} is required", details={"field": field_name})


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def _require_identifier(value: Optional[str], field_name: str):
    _require_text(value, field_name)
    if not _IDENTIFIER_RE.match(value) or any(part in KEYWORDS for part in value.split(".")):
        raise InvalidRuleDefinition(
            f"{field_name} must be a field name such as 'age' or 'member.plan'",
            details={"field": field_name, "value": value}
        )
