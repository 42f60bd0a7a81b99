"""
Turn a validated answer map into an Airtable create-record payload.

Only answers of visible fields are sent, keyed by field ID (Airtable
accepts field IDs as record keys), with their values unchanged.
Attachment answers are sent as ``{url, filename}``. Inline base64 files
are skipped and reported, since Airtable only downloads attachments
from public URLs.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backend.core.schema import FieldType, FormDefinition
from backend.core.validation import is_answer_missing
from backend.core.visibility import get_visible_fields


class SubmissionPayload(BaseModel):
    """What gets written to Airtable for one submission."""

    model_config = ConfigDict(populate_by_name=True)

    base_id: str = Field(..., alias="airtableBaseId")
    table_id: str = Field(..., alias="airtableTableId")
    fields: dict[str, Any] = Field(default_factory=dict)
    skipped_attachments: list[str] = Field(default_factory=list, alias="skippedAttachments")

    def warning(self) -> str | None:
        """Human-readable note about skipped attachments, if any."""
        if not self.skipped_attachments:
            return None
        names = ", ".join(self.skipped_attachments)
        return (
            f"Attachment fields ({names}) were skipped. "
            "Airtable requires public URLs for attachments."
        )


def build_submission(form: FormDefinition, answers: Mapping[str, Any]) -> SubmissionPayload:
    """Build the record payload from the visible answers of a form.

    Args:
        form: The submitted form (provides the base/table binding).
        answers: The session's answers; hidden-field answers are ignored.

    Returns:
        A SubmissionPayload ready for ``AirtableClient.create_record``.
    """
    payload = SubmissionPayload(
        base_id=form.airtable_base_id,
        table_id=form.airtable_table_id,
    )

    for field in get_visible_fields(form, answers):
        if field.field_id not in answers:
            continue
        value = answers[field.field_id]

        if field.type == FieldType.ATTACHMENT and not is_answer_missing(value):
            attachments, skipped = _convert_attachments(value)
            if skipped:
                payload.skipped_attachments.append(field.field_id)
            if attachments:
                payload.fields[field.field_id] = attachments
            continue

        payload.fields[field.field_id] = value

    return payload


def _convert_attachments(files: list[Any]) -> tuple[list[dict[str, str]], bool]:
    """Keep URL attachments; report whether any inline-only file was dropped."""
    attachments: list[dict[str, str]] = []
    skipped = False
    for item in files:
        url = item.get("url") if isinstance(item, dict) else None
        if not url:
            skipped = True
            continue
        attachment = {"url": url}
        if item.get("filename"):
            attachment["filename"] = item["filename"]
        attachments.append(attachment)
    return attachments, skipped
