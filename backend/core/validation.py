"""
Submission validation.

Checks that every currently visible required field has an answer before
a form is submitted. Hidden fields are ignored even when they still hold
a stale answer. All problems are collected, in form order, so the filler
can show them at once.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backend.core.schema import FormDefinition
from backend.core.visibility import get_visible_fields

REQUIRED_MESSAGE = "required"


class FieldError(BaseModel):
    """A problem with a single field's answer."""

    model_config = ConfigDict(populate_by_name=True)

    field_id: str = Field(..., alias="fieldId")
    message: str


class ValidationResult(BaseModel):
    """Aggregated result of validating an answer map against a form."""

    valid: bool
    errors: list[FieldError] = Field(default_factory=list)

    def error_field_ids(self) -> list[str]:
        return [error.field_id for error in self.errors]


def is_answer_missing(value: Any) -> bool:
    """Whether an answer counts as not provided.

    None, whitespace-only text and empty lists are missing. 0 and False
    are real answers.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def validate(form: FormDefinition, answers: Mapping[str, Any]) -> ValidationResult:
    """Validate the answers for submission.

    Args:
        form: The form being filled.
        answers: Current answers keyed by field ID.

    Returns:
        A ValidationResult listing every visible required field that is
        missing an answer.
    """
    errors = [
        FieldError(field_id=field.field_id, message=REQUIRED_MESSAGE)
        for field in get_visible_fields(form, answers)
        if field.required and is_answer_missing(answers.get(field.field_id))
    ]
    return ValidationResult(valid=not errors, errors=errors)
