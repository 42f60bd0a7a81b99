"""
Deterministic visibility evaluator for form fields.

Decides, per field, whether it is shown given the answers collected so
far. The same functions back the builder's live preview and the public
form filler, so both always agree.

Everything here is a pure function of (field or form, answers): nothing
is cached and nothing raises for a badly configured rule. A rule that
cannot be evaluated (unset, unknown trigger, wrong operand types) is
simply false.
"""

from collections.abc import Collection, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel

from backend.core.schema import (
    ConditionalRule,
    FileRef,
    FormDefinition,
    FormField,
    MatchMode,
    RuleOperator,
)


class ValueKind(str, Enum):
    """Tag for the loosely-typed answer and comparand values."""

    EMPTY = "empty"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TEXT_LIST = "text_list"
    FILE_LIST = "file_list"
    OTHER = "other"


class RuleReason(str, Enum):
    """Why a rule produced its result."""

    OK = "ok"
    UNSET = "unset"
    UNKNOWN_TRIGGER = "unknown_trigger"
    TYPE_MISMATCH = "type_mismatch"


class RuleResult(BaseModel):
    """Outcome of a single rule, used by the builder preview."""

    passed: bool
    reason: RuleReason = RuleReason.OK


def classify_value(value: Any) -> ValueKind:
    """Tag an answer or comparand with its kind.

    bool is checked before int/float because bool is a subclass of int.
    An empty list is a (empty) text list.
    """
    if value is None:
        return ValueKind.EMPTY
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.TEXT
    if isinstance(value, (list, tuple)):
        if all(isinstance(item, str) for item in value):
            return ValueKind.TEXT_LIST
        if all(isinstance(item, (dict, FileRef)) for item in value):
            return ValueKind.FILE_LIST
    return ValueKind.OTHER


def is_field_visible(
    field: FormField,
    answers: Mapping[str, Any],
    known_field_ids: Collection[str] | None = None,
) -> bool:
    """Determine if a field should be visible given the current answers.

    A field without rules is always visible. Otherwise its rules are
    combined with AND (``all``) or OR (``any``).

    Args:
        field: The form field to evaluate.
        answers: Current answers keyed by field ID.
        known_field_ids: Field IDs of the enclosing form. When given, a rule
            whose trigger is not among them evaluates to False.

    Returns:
        True if the field should be visible, False otherwise.
    """
    logic = field.conditional_logic
    if not logic.rules:
        return True

    results = (
        evaluate_rule(rule, answers, known_field_ids).passed
        for rule in logic.rules
    )
    if logic.match == MatchMode.ANY:
        return any(results)
    return all(results)


def evaluate_rule(
    rule: ConditionalRule,
    answers: Mapping[str, Any],
    known_field_ids: Collection[str] | None = None,
) -> RuleResult:
    """Evaluate a single rule against the current answers.

    Unset rules (blank trigger or blank comparand) are false in both
    match modes, so a half-configured ANY block never shows a field.
    """
    if rule.is_unset:
        return RuleResult(passed=False, reason=RuleReason.UNSET)

    if known_field_ids is not None and rule.field_id not in known_field_ids:
        return RuleResult(passed=False, reason=RuleReason.UNKNOWN_TRIGGER)

    observed = answers.get(rule.field_id)

    match rule.operator:
        case RuleOperator.EQUALS:
            return RuleResult(passed=values_equal(observed, rule.value))

        case RuleOperator.NOT_EQUALS:
            return RuleResult(passed=not values_equal(observed, rule.value))

        case RuleOperator.CONTAINS:
            if classify_value(observed) != ValueKind.TEXT:
                return RuleResult(passed=False, reason=RuleReason.TYPE_MISMATCH)
            return RuleResult(passed=_comparand_text(rule.value) in observed)

        case RuleOperator.GREATER_THAN:
            return _compare_numbers(observed, rule.value, lambda a, b: a > b)

        case RuleOperator.LESS_THAN:
            return _compare_numbers(observed, rule.value, lambda a, b: a < b)

    # Unreachable while RuleOperator is validated
    return RuleResult(passed=False, reason=RuleReason.TYPE_MISMATCH)


def values_equal(observed: Any, comparand: Any) -> bool:
    """Strict equality: both values must have the same kind and value.

    No coercion: "1" != 1 and True != 1. Integers and floats share the
    NUMBER kind, so 5 == 5.0.
    """
    kind = classify_value(observed)
    if kind != classify_value(comparand) or kind == ValueKind.EMPTY:
        return False
    if kind in (ValueKind.TEXT_LIST, ValueKind.FILE_LIST):
        return list(observed) == list(comparand)
    return observed == comparand


def _comparand_text(value: Any) -> str:
    """String form of a comparand; booleans render as JSON literals."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compare_numbers(observed: Any, comparand: Any, comparator) -> RuleResult:
    """Apply a numeric comparison when both operands are numbers."""
    if (
        classify_value(observed) != ValueKind.NUMBER
        or classify_value(comparand) != ValueKind.NUMBER
    ):
        return RuleResult(passed=False, reason=RuleReason.TYPE_MISMATCH)
    return RuleResult(passed=comparator(observed, comparand))


# --- Whole-form helpers ---


def get_visible_fields(form: FormDefinition, answers: Mapping[str, Any]) -> list[FormField]:
    """Return the visible fields in display order."""
    known_ids = set(form.field_ids())
    return [
        field for field in form.fields
        if is_field_visible(field, answers, known_ids)
    ]


def compute_visible_set(form: FormDefinition, answers: Mapping[str, Any]) -> set[str]:
    """Return the IDs of all currently visible fields."""
    return {field.field_id for field in get_visible_fields(form, answers)}


def annotate_visibility(form: FormDefinition, answers: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return ``[{"fieldId": ..., "visible": ...}]`` in display order for renderers."""
    visible_ids = compute_visible_set(form, answers)
    return [
        {"fieldId": field.field_id, "visible": field.field_id in visible_ids}
        for field in form.fields
    ]


def explain_field(
    field: FormField,
    answers: Mapping[str, Any],
    known_field_ids: Collection[str] | None = None,
) -> list[RuleResult]:
    """Evaluate each of a field's rules individually, in order."""
    return [
        evaluate_rule(rule, answers, known_field_ids)
        for rule in field.conditional_logic.rules
    ]
