"""
Unit tests for the builder-side rule checks.
"""

from backend.core.checks import find_rule_warnings
from backend.core.schema import FormDefinition


def make_form(fields: list[dict]) -> FormDefinition:
    return FormDefinition(
        name="Checks",
        airtableBaseId="app1",
        airtableTableId="tbl1",
        fields=fields,
    )


def text_field(field_id: str, rules: list[dict] | None = None, type_: str = "shortText") -> dict:
    return {
        "fieldId": field_id,
        "label": field_id.title(),
        "type": type_,
        "conditionalLogic": {"rules": rules or []},
    }


class TestFindRuleWarnings:

    def test_clean_examples(self, student_form, event_form):
        assert find_rule_warnings(student_form) == []
        assert find_rule_warnings(event_form) == []

    def test_incomplete_rule(self):
        form = make_form([
            text_field("a"),
            text_field("b", [{"fieldId": "", "operator": "equals", "value": ""}]),
        ])
        warnings = find_rule_warnings(form)
        assert len(warnings) == 1
        assert warnings[0].field_id == "b"
        assert warnings[0].rule_index == 0
        assert "incomplete" in warnings[0].message

    def test_unknown_trigger(self):
        form = make_form([text_field("a", [{"fieldId": "ghost", "operator": "equals", "value": "x"}])])
        assert "unknown field 'ghost'" in find_rule_warnings(form)[0].message

    def test_self_reference(self):
        form = make_form([text_field("a", [{"fieldId": "a", "operator": "equals", "value": "x"}])])
        assert "itself" in find_rule_warnings(form)[0].message

    def test_forward_reference(self):
        form = make_form([
            text_field("a", [{"fieldId": "b", "operator": "equals", "value": "x"}]),
            text_field("b"),
        ])
        warnings = find_rule_warnings(form)
        assert len(warnings) == 1
        assert "appears later" in warnings[0].message

    def test_numeric_operator_with_text_comparand(self):
        form = make_form([
            text_field("a"),
            text_field("b", [{"fieldId": "a", "operator": "greaterThan", "value": "5"}]),
        ])
        assert "non-numeric value" in find_rule_warnings(form)[0].message

    def test_numeric_comparand_is_clean(self):
        form = make_form([
            text_field("a"),
            text_field("b", [{"fieldId": "a", "operator": "lessThan", "value": 5}]),
        ])
        assert find_rule_warnings(form) == []

    def test_contains_on_select(self):
        form = make_form([
            {
                "fieldId": "pick",
                "label": "Pick",
                "type": "multipleSelect",
                "options": [{"id": "o1", "name": "One"}],
            },
            text_field("b", [{"fieldId": "pick", "operator": "contains", "value": "One"}]),
        ])
        assert "not a text field" in find_rule_warnings(form)[0].message

    def test_rule_index_counts_within_field(self):
        form = make_form([
            text_field("a"),
            text_field("b", [
                {"fieldId": "a", "operator": "equals", "value": "ok"},
                {"fieldId": "a", "operator": "equals", "value": ""},
            ]),
        ])
        warnings = find_rule_warnings(form)
        assert [(w.field_id, w.rule_index) for w in warnings] == [("b", 1)]
