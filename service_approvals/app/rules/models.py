"""
Rule and decision-table data models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, List, Optional, Tuple, Union


Outcome = Union[bool, int, float, str]


class RuleType(str, Enum):
    """Generation strategies understood by the compiler."""
    THRESHOLD = "threshold"
    ALLOW_LIST = "allow_list"
    COMPOSITE = "composite"


class Comparator(str, Enum):
    """Comparators allowed in threshold rules."""
    GREATER_OR_EQUAL = ">="
    GREATER_THAN = ">"
    LESS_OR_EQUAL = "<="
    LESS_THAN = "<"
    EQUALS = "="


class HitPolicy(str, Enum):
    """Which row wins when several rows match."""
    FIRST = "FIRST"
    UNIQUE = "UNIQUE"
    PRIORITY = "PRIORITY"


@dataclass(frozen=True)
class RuleDescription:
    """Author intent for one eligibility rule.

    ``field`` is the input the compiled table reads. Composite rules read a
    combined input (``field``) and name its members in ``threshold_field``
    and ``allow_list_field``.
    """
    rule_id: str
    rule_type: Union[RuleType, str]
    field: str
    comparator: Optional[Union[Comparator, str]] = None
    threshold_value: Optional[Union[int, float]] = None
    allowed_values: FrozenSet[str] = frozenset()
    threshold_field: Optional[str] = None
    allow_list_field: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Row:
    """One (condition, outcome) row. An empty condition matches everything."""
    condition: str
    outcome: Outcome
    description: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return not self.condition or not self.condition.strip()


@dataclass(frozen=True)
class DecisionDocument:
    """Compiled decision table."""
    decision_id: str
    name: str
    input_expression: str
    rows: Tuple[Row, ...]
    hit_policy: HitPolicy = HitPolicy.FIRST
    input_fields: Tuple[str, ...] = ()
    output_priority: Tuple[Outcome, ...] = ()
    input_label: Optional[str] = None
    output_name: str = "eligible"

    @property
    def default_row(self) -> Optional[Row]:
        defaults = [row for row in self.rows if row.is_default]
        return defaults[0] if len(defaults) == 1 else None

    @property
    def resolvable_names(self) -> FrozenSet[str]:
        return frozenset((self.input_expression,) + tuple(self.input_fields))

    def resolves(self, name: str) -> bool:
        """True when ``name`` is a declared input or a path beneath one."""
        return any(
            name == declared or name.startswith(declared + ".")
            for declared in self.resolvable_names
        )


@dataclass
class ValidationResult:
    """Outcome of static validation."""
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of evaluating a document against one input."""
    outcome: Any
    row_index: int
    matched_rows: Tuple[int, ...] = ()

    @property
    def used_default(self) -> bool:
        return not self.matched_rows
