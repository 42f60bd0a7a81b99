"""
Shared test fixtures for the form builder test suite.
"""

import pytest

from backend.core.schema import FormDefinition
from backend.tests.fakes import load_schema_dict


@pytest.fixture
def student_form() -> FormDefinition:
    """IsStudent -> School form (School required, shown only to students)."""
    return FormDefinition(**load_schema_dict("student_survey"))


@pytest.fixture
def event_form() -> FormDefinition:
    """Event registration form with ANY rules, multiple select and attachments."""
    return FormDefinition(**load_schema_dict("event_registration"))
