"""
Response collector for a single form-filling session.

Holds the answers a user has given so far, keyed by field ID:
- Replaces an answer whenever the user changes an input
- Rejects answers whose shape does not fit the field type
- Exposes the visible fields and visible-only answers for rendering
- Runs submission validation against the current answers

Answers for hidden fields are kept (the field may become visible again)
but they are never validated or submitted.
"""

from typing import Any

from backend.core.schema import FieldType, FormDefinition, FormField
from backend.core.validation import ValidationResult, validate
from backend.core.visibility import get_visible_fields


class AnswerValidationError(Exception):
    """Raised when an answer does not fit its field type."""

    def __init__(self, field_id: str, message: str):
        self.field_id = field_id
        self.message = message
        super().__init__(f"Field '{field_id}': {message}")


class ResponseCollector:
    """Collects the answers of one form session.

    Args:
        form: The form being filled. It is only read, never modified.
    """

    def __init__(self, form: FormDefinition):
        self.form = form
        self.answers: dict[str, Any] = {}

    # -----------------------------------------------------------------
    # Answer management
    # -----------------------------------------------------------------

    def set_answer(self, field_id: str, value: Any) -> None:
        """Store an answer for the given field, replacing any previous one.

        For multiple-select fields the caller passes the full new list of
        selected option names.

        Raises:
            AnswerValidationError: If the value does not fit the field type.
            ValueError: If the field_id does not exist in the form.
        """
        field = self._get_field(field_id)
        self._validate_answer(field, value)
        self.answers[field_id] = value

    def get_answer(self, field_id: str) -> Any:
        """Retrieve the current answer for a field, or None if not answered."""
        return self.answers.get(field_id)

    def clear_answer(self, field_id: str) -> None:
        self.answers.pop(field_id, None)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of all current answers."""
        return dict(self.answers)

    def reset(self) -> None:
        """Forget every answer (new session, or re-entering preview)."""
        self.answers.clear()

    def set_answers_bulk(self, answers: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        """Set multiple answers at once, skipping invalid ones.

        Returns:
            A tuple of (accepted, rejected) where:
            - accepted: {field_id: value} for stored answers
            - rejected: {field_id: error_message} for answers that were refused
        """
        accepted: dict[str, Any] = {}
        rejected: dict[str, str] = {}

        for field_id, value in answers.items():
            try:
                self.set_answer(field_id, value)
                accepted[field_id] = value
            except AnswerValidationError as e:
                rejected[field_id] = e.message
            except ValueError as e:
                rejected[field_id] = str(e)

        return accepted, rejected

    # -----------------------------------------------------------------
    # Views over the current answers
    # -----------------------------------------------------------------

    def get_visible_fields(self) -> list[FormField]:
        """Return all fields that are currently visible based on answers."""
        return get_visible_fields(self.form, self.answers)

    def get_visible_answers(self) -> dict[str, Any]:
        """Return only answers for currently visible fields."""
        visible_ids = {f.field_id for f in self.get_visible_fields()}
        return {k: v for k, v in self.answers.items() if k in visible_ids}

    def validate(self) -> ValidationResult:
        return validate(self.form, self.answers)

    def is_complete(self) -> bool:
        """Check if all visible required fields have been answered."""
        return self.validate().valid

    # -----------------------------------------------------------------
    # Answer shape per field type
    # -----------------------------------------------------------------

    def _validate_answer(self, field: FormField, value: Any) -> None:
        """Check that an answer has the shape its field type expects.

        None is always accepted and means "no answer".

        Raises:
            AnswerValidationError: If the value is invalid.
        """
        if value is None:
            return

        match field.type:
            case FieldType.SHORT_TEXT | FieldType.LONG_TEXT:
                self._validate_text(field, value)
            case FieldType.SINGLE_SELECT:
                self._validate_single_select(field, value)
            case FieldType.MULTIPLE_SELECT:
                self._validate_multiple_select(field, value)
            case FieldType.ATTACHMENT:
                self._validate_attachment(field, value)

    def _validate_text(self, field: FormField, value: Any) -> None:
        """Text inputs hold a single scalar: text, a number or a boolean."""
        if not isinstance(value, (str, int, float, bool)):
            raise AnswerValidationError(
                field.field_id, "Text answer must be a string, number or boolean"
            )

    def _validate_single_select(self, field: FormField, value: Any) -> None:
        """Single select value must be one of the option names (or empty)."""
        if not isinstance(value, str):
            raise AnswerValidationError(field.field_id, "Single select answer must be a string")
        names = field.option_names()
        if value and names and value not in names:
            raise AnswerValidationError(
                field.field_id,
                f"'{value}' is not a valid option. Choose from: {names}",
            )

    def _validate_multiple_select(self, field: FormField, value: Any) -> None:
        """Multiple select value must be a list of option names."""
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise AnswerValidationError(
                field.field_id, "Multiple select answer must be a list of strings"
            )
        names = field.option_names()
        if names:
            invalid = [v for v in value if v not in names]
            if invalid:
                raise AnswerValidationError(
                    field.field_id,
                    f"Invalid options: {invalid}. Choose from: {names}",
                )

    def _validate_attachment(self, field: FormField, value: Any) -> None:
        """Attachment value must be a list of file references."""
        if not isinstance(value, list):
            raise AnswerValidationError(field.field_id, "Attachment answer must be a list of files")
        for item in value:
            if not isinstance(item, dict) or not (item.get("url") or item.get("base64")):
                raise AnswerValidationError(
                    field.field_id, "Each attachment must have a 'url' or 'base64' entry"
                )

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _get_field(self, field_id: str) -> FormField:
        field = self.form.get_field(field_id)
        if field is None:
            raise ValueError(f"Field '{field_id}' does not exist in the form")
        return field
