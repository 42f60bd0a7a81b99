"""
Builder-side checks for conditional logic.

A form with a questionable rule still works (the rule is simply false),
so these findings are warnings shown to the form author, never errors.
"""

from pydantic import BaseModel, ConfigDict, Field

from backend.core.schema import (
    NUMERIC_OPERATORS,
    TEXT_TYPES,
    FormDefinition,
    RuleOperator,
)
from backend.core.visibility import ValueKind, classify_value


class RuleWarning(BaseModel):
    """A finding about one rule of one field."""

    model_config = ConfigDict(populate_by_name=True)

    field_id: str = Field(..., alias="fieldId")
    rule_index: int = Field(..., alias="ruleIndex")
    message: str


def find_rule_warnings(form: FormDefinition) -> list[RuleWarning]:
    """Inspect every rule of the form, in display order.

    Reports incomplete rules, unknown, self and forward references,
    numeric operators with non-numeric comparands and ``contains`` on
    fields that never hold text.
    """
    positions = {field_id: index for index, field_id in enumerate(form.field_ids())}
    warnings: list[RuleWarning] = []

    for position, field in enumerate(form.fields):
        for rule_index, rule in enumerate(field.conditional_logic.rules):

            def warn(message: str) -> None:
                warnings.append(
                    RuleWarning(field_id=field.field_id, rule_index=rule_index, message=message)
                )

            if rule.is_unset:
                warn(f"Rule {rule_index + 1} is incomplete and will never match")
                continue

            trigger = form.get_field(rule.field_id)
            if trigger is None:
                warn(f"Rule {rule_index + 1} references unknown field '{rule.field_id}'")
                continue

            if rule.field_id == field.field_id:
                warn(f"Rule {rule_index + 1} references the field itself")
            elif positions[rule.field_id] > position:
                warn(
                    f"Rule {rule_index + 1} references '{rule.field_id}', "
                    "which appears later in the form"
                )

            if rule.operator in NUMERIC_OPERATORS and classify_value(rule.value) != ValueKind.NUMBER:
                warn(f"Rule {rule_index + 1} compares numerically against a non-numeric value")

            if rule.operator == RuleOperator.CONTAINS and trigger.type not in TEXT_TYPES:
                warn(
                    f"Rule {rule_index + 1} uses 'contains' but '{rule.field_id}' "
                    "is not a text field"
                )

    return warnings
