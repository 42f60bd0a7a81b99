"""
Form definition models.

These Pydantic models define the contract between the form builder UI,
the public form filler and the backend. A FormDefinition is bound to one
Airtable base/table; its fields mirror Airtable columns and carry the
conditional logic that decides whether each field is shown.

Attribute names are snake_case; the JSON shape uses the camelCase keys
the web app sends (``fieldId``, ``helpText``, ``conditionalLogic``...).
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# --- Enums ---


class FieldType(str, Enum):
    """Supported form field types (the Airtable column types we can render)."""

    SHORT_TEXT = "shortText"
    LONG_TEXT = "longText"
    SINGLE_SELECT = "singleSelect"
    MULTIPLE_SELECT = "multipleSelect"
    ATTACHMENT = "attachment"


SELECT_TYPES = frozenset({FieldType.SINGLE_SELECT, FieldType.MULTIPLE_SELECT})
TEXT_TYPES = frozenset({FieldType.SHORT_TEXT, FieldType.LONG_TEXT})


class RuleOperator(str, Enum):
    """Comparison operators available to conditional logic rules."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"


NUMERIC_OPERATORS = frozenset({RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN})


class MatchMode(str, Enum):
    """How the results of a field's rules are combined."""

    ALL = "all"
    ANY = "any"


# A rule comparand is text, a number or a boolean. Smart-mode unions keep
# the exact input type, so True stays a bool and 5 stays an int.
RuleValue = str | bool | int | float | None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Conditional logic ---


class ConditionalRule(_CamelModel):
    """A single comparison against the answer of a trigger field.

    A rule with a blank trigger or a blank comparand is "unset": the
    builder creates rules in that state and the user fills them in later.
    """

    field_id: str = Field(
        default="",
        alias="fieldId",
        description="The trigger field whose answer is inspected",
    )
    operator: RuleOperator = Field(
        default=RuleOperator.EQUALS,
        description="The comparison operator to apply",
    )
    value: RuleValue = Field(
        default=None,
        description="The comparand (text, number or boolean)",
    )

    @property
    def is_unset(self) -> bool:
        """True when the trigger or the comparand has not been filled in."""
        if not self.field_id.strip():
            return True
        return self.value is None or (isinstance(self.value, str) and self.value == "")


class ConditionalLogic(_CamelModel):
    """Rules attached to a field, combined with ALL (AND) or ANY (OR).

    An empty rule list means the field is always visible.
    """

    match: MatchMode = Field(default=MatchMode.ALL)
    rules: list[ConditionalRule] = Field(default_factory=list)


# --- Form field ---


class FieldOption(_CamelModel):
    """A choice of a select field, as provided by Airtable."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class FileRef(_CamelModel):
    """An attachment answer.

    Airtable only accepts attachments it can download from a public URL;
    entries that only carry inline base64 content are skipped on submit.
    """

    url: str | None = None
    filename: str | None = None
    base64: str | None = None


class FormField(_CamelModel):
    """Definition of a single question on a form."""

    field_id: str = Field(
        ...,
        alias="fieldId",
        min_length=1,
        description="Stable identifier, usually the Airtable field id",
    )
    label: str = Field(..., min_length=1)
    type: FieldType
    required: bool = False
    placeholder: str | None = None
    help_text: str | None = Field(default=None, alias="helpText")
    options: list[FieldOption] | None = Field(
        default=None,
        description="Choices (select types only)",
    )
    conditional_logic: ConditionalLogic = Field(
        default_factory=ConditionalLogic,
        alias="conditionalLogic",
    )

    @model_validator(mode="after")
    def validate_options_for_type(self) -> "FormField":
        """Only select fields may carry options."""
        if self.type not in SELECT_TYPES and self.options:
            raise ValueError(
                f"Field '{self.field_id}' of type '{self.type.value}' should not have 'options'"
            )
        return self

    def option_names(self) -> list[str]:
        """Names of the field's options, in display order."""
        return [option.name for option in self.options or []]


# --- Form definition ---


class FormDefinition(_CamelModel):
    """A form bound to an Airtable base/table.

    Validates structure and field id uniqueness. Rule references are not
    rejected here: a rule pointing at a missing field simply never matches,
    and the builder reports it as a warning (see ``backend.core.checks``).
    """

    id: str | None = None
    name: str = Field(..., min_length=1)
    airtable_base_id: str = Field(..., alias="airtableBaseId", min_length=1)
    airtable_table_id: str = Field(..., alias="airtableTableId", min_length=1)
    fields: list[FormField] = Field(
        ...,
        min_length=1,
        description="Ordered form fields (at least one required)",
    )
    user: str | None = Field(default=None, description="Owner user id")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @model_validator(mode="after")
    def validate_unique_field_ids(self) -> "FormDefinition":
        seen: set[str] = set()
        for field in self.fields:
            if field.field_id in seen:
                raise ValueError(f"Duplicate field ID: '{field.field_id}'")
            seen.add(field.field_id)
        return self

    def field_ids(self) -> list[str]:
        """Field ids in display order."""
        return [field.field_id for field in self.fields]

    def get_field(self, field_id: str) -> FormField | None:
        for field in self.fields:
            if field.field_id == field_id:
                return field
        return None

    def to_document(self) -> dict[str, Any]:
        """Serialize to the JSON shape used by the API and the form store."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
