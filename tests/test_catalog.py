"""Tests for the form catalog.

Tests cover:
- Form creation, update, activation and code uniqueness
- Deletion guard and forced deletion
- Duplication of forms with their fields (and optionally grants)
- Field administration and reordering
"""

from datetime import datetime

import pytest

from fpms.errors import ConflictError, NotFoundError, ValidationError
from fpms.types import EventType, FieldErrorCode, FieldKind, OfficeKind, Principal


class TestCreateForm:
    """Test form creation."""

    def test_create_and_exists(self, catalog):
        form_id = catalog.create_form({"code": "HLT01", "name": "  Health screening ", "target_entity": "member"})
        form = catalog.get_form(form_id)
        assert catalog.form_code_exists("HLT01")
        assert not catalog.form_code_exists("hlt01")
        assert form.name == "Health screening"
        assert form.is_active is True
        assert form.max_submissions_per_entity == 1

    def test_duplicate_code(self, catalog):
        catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"})
        with pytest.raises(ConflictError) as exc_info:
            catalog.create_form({"code": "HLT01", "name": "Other", "target_entity": "family"})
        assert exc_info.value.message == "Form code 'HLT01' already exists"

    def test_missing_name(self, catalog):
        with pytest.raises(ValidationError) as exc_info:
            catalog.create_form({"code": "HLT01", "target_entity": "member"})
        assert exc_info.value.fields[0].path == "name"

    def test_invalid_target(self, catalog):
        with pytest.raises(ValidationError):
            catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "household"})

    def test_blank_name_rejected(self, catalog):
        with pytest.raises(ValidationError):
            catalog.create_form({"code": "HLT01", "name": "   ", "target_entity": "member"})

    def test_window_dates(self, catalog):
        form_id = catalog.create_form(
            {"code": "HLT01", "name": "Health", "target_entity": "member", "start_at": "2026-01-01", "end_at": "2026-01-31"}
        )
        form = catalog.get_form(form_id)
        assert form.start_at == datetime(2026, 1, 1)
        assert form.end_at.date() == datetime(2026, 1, 31).date()
        assert form.is_open_at(datetime(2026, 1, 31, 23, 0))
        assert not form.is_open_at(datetime(2026, 2, 1))

    def test_inverted_window(self, catalog):
        with pytest.raises(ValidationError):
            catalog.create_form(
                {"code": "HLT01", "name": "Health", "target_entity": "member", "start_at": "2026-02-01", "end_at": "2026-01-01"}
            )

    def test_created_by_defaults_to_actor(self, catalog, admin):
        form_id = catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"}, actor=admin)
        assert catalog.get_form(form_id).created_by == admin.user_id


class TestUpdateForm:
    """Test form updates."""

    def test_partial_update(self, catalog, family_form, clock, audit):
        clock.advance(hours=1)
        form = catalog.update_form(family_form, {"name": "Household census", "category": "Demographic"})
        assert form.name == "Household census"
        assert form.category == "Demographic"
        assert form.code == "FAM01"
        assert form.updated_at == clock.now
        record = audit.records[-1]
        assert record.action is EventType.FORM_UPDATED
        assert record.old_value == {"name": "Household survey", "category": ""}

    def test_empty_update(self, catalog, family_form):
        with pytest.raises(ValidationError) as exc_info:
            catalog.update_form(family_form, {})
        assert exc_info.value.message == "No fields to update"

    def test_code_taken_by_another(self, catalog, family_form):
        catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"})
        with pytest.raises(ConflictError):
            catalog.update_form(family_form, {"code": "HLT01"})

    def test_creator_is_fixed(self, catalog, family_form, admin):
        with pytest.raises(ValidationError) as exc_info:
            catalog.update_form(family_form, {"created_by": 99})
        assert exc_info.value.fields[0].code == FieldErrorCode.UNKNOWN_FIELD
        assert exc_info.value.fields[0].path == "created_by"
        assert catalog.get_form(family_form).created_by == admin.user_id

    def test_keeping_own_code(self, catalog, family_form):
        catalog.update_form(family_form, {"code": "FAM01"})

    def test_unknown_form(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.update_form(999, {"name": "X"})

    def test_activation(self, catalog, family_form, audit):
        assert catalog.set_form_active(family_form, False).is_active is False
        assert audit.records[-1].new_value == {"is_active": False}
        assert catalog.set_form_active(family_form, True).is_active is True


class TestDeleteForm:
    """Test deletion guard."""

    def test_delete_without_submissions(self, catalog, family_form):
        deleted = catalog.delete_form(family_form)
        assert deleted == {
            "form_responses": 0,
            "form_submissions": 0,
            "form_assignments": 2,
            "form_fields": 3,
            "forms": 1,
        }
        with pytest.raises(NotFoundError):
            catalog.get_form(family_form)

    def test_guard_and_force(self, catalog, workflow, family_form, officer):
        workflow.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": {"head_name": "Perera"}})
        with pytest.raises(ConflictError) as exc_info:
            catalog.delete_form(family_form)
        assert exc_info.value.message == "Form has 1 submissions. Cannot delete."
        assert catalog.form_code_exists("FAM01")

        deleted = catalog.delete_form(family_form, force=True)
        assert deleted["form_submissions"] == 1
        assert deleted["form_responses"] == 1
        assert not catalog.form_code_exists("FAM01")

    def test_submission_counts(self, catalog, workflow, family_form, officer):
        workflow.save(officer, "family", {"form_id": family_form, "entity_id": "F-100"})
        counts = catalog.submission_counts(family_form)
        assert counts["total"] == 1
        assert counts["family"] == 1
        assert counts["draft"] == 1
        assert counts["approved"] == 0


class TestDuplicateForm:
    """Test form duplication."""

    def test_copy_has_same_fields(self, catalog, family_form, admin):
        copy = catalog.duplicate_form(family_form, actor=admin)
        assert copy.code == "FAM01_copy1"
        assert copy.name == "Household survey (Copy)"
        assert copy.is_active is False
        assert copy.start_at is None and copy.end_at is None
        assert copy.created_by == admin.user_id

        original = [(f.code, f.kind, f.is_required, f.display_order) for f in catalog.fields_for(family_form)]
        copied = [(f.code, f.kind, f.is_required, f.display_order) for f in catalog.fields_for(copy.id)]
        assert copied == original

    def test_codes_count_up(self, catalog, family_form):
        assert catalog.duplicate_form(family_form).code == "FAM01_copy1"
        assert catalog.duplicate_form(family_form).code == "FAM01_copy2"

    def test_custom_name_and_suffix(self, catalog, family_form):
        copy = catalog.duplicate_form(family_form, suffix="_v", new_name="Household survey 2027", is_active=True)
        assert copy.code == "FAM01_v1"
        assert copy.name == "Household survey 2027"
        assert copy.is_active is True

    def test_grants_not_copied_by_default(self, catalog, assignments, family_form):
        copy = catalog.duplicate_form(family_form)
        assert assignments.list_assignments(copy.id) == []

    def test_grants_copied_on_request(self, catalog, assignments, family_form):
        copy = catalog.duplicate_form(family_form, copy_assignments=True, is_active=True)
        assert len(assignments.list_assignments(copy.id)) == 2
        officer = Principal(user_id=10, office_kind=OfficeKind.LOCAL_OFFICE, office_code="GN-001")
        assert assignments.can_fill(copy.id, officer)

    def test_unknown_form(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.duplicate_form(999)


class TestFields:
    """Test field administration."""

    def test_fields_in_display_order(self, catalog, family_form):
        fields = catalog.fields_for(family_form)
        assert [f.code for f in fields] == ["head_name", "members", "notes"]
        assert [f.display_order for f in fields] == [1, 2, 3]
        assert fields[1].kind is FieldKind.NUMBER

    def test_field_by_code(self, catalog, family_form, field_ids):
        field = catalog.get_field_by_code(family_form, "members")
        assert field.id == field_ids["members"]
        assert field.is_required is True
        with pytest.raises(NotFoundError):
            catalog.get_field_by_code(family_form, "income")

    def test_duplicate_field_code(self, catalog, family_form):
        with pytest.raises(ConflictError) as exc_info:
            catalog.add_field(family_form, {"code": "notes", "label": "More notes", "kind": "text"})
        assert exc_info.value.message == "Field code 'notes' already exists in this form"

    def test_same_code_on_another_form(self, catalog, family_form):
        other = catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"})
        catalog.add_field(other, {"code": "notes", "label": "Notes", "kind": "textarea"})

    def test_unknown_kind(self, catalog, family_form):
        with pytest.raises(ValidationError):
            catalog.add_field(family_form, {"code": "x", "label": "X", "kind": "slider"})

    def test_choice_field_without_choices(self, catalog, family_form):
        with pytest.raises(ValidationError):
            catalog.add_field(family_form, {"code": "water", "label": "Water", "kind": "radio"})

    def test_unknown_form(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.add_field(999, {"code": "x", "label": "X", "kind": "text"})

    def test_check_field_code(self, catalog, family_form, field_ids):
        assert catalog.check_field_code(family_form, "notes") == {
            "available": False,
            "message": "Field code already exists",
        }
        assert catalog.check_field_code(family_form, "notes", exclude_field_id=field_ids["notes"])["available"]
        assert catalog.check_field_code(family_form, "income")["available"]

    def test_update_field(self, catalog, field_ids):
        field = catalog.update_field(field_ids["notes"], {"label": "Remarks", "is_required": True})
        assert field.label == "Remarks"
        assert field.is_required is True

    def test_change_kind_revalidates_options(self, catalog, field_ids):
        with pytest.raises(ValidationError):
            catalog.update_field(field_ids["notes"], {"kind": "dropdown"})
        field = catalog.update_field(field_ids["notes"], {"kind": "dropdown", "options": {"choices": ["a", "b"]}})
        assert field.kind is FieldKind.DROPDOWN
        assert field.options.values == ("a", "b")

    def test_update_to_taken_code(self, catalog, field_ids):
        with pytest.raises(ConflictError):
            catalog.update_field(field_ids["notes"], {"code": "members"})

    def test_delete_unused_field(self, catalog, family_form, field_ids):
        catalog.delete_field(field_ids["notes"])
        assert [f.code for f in catalog.fields_for(family_form)] == ["head_name", "members"]

    def test_delete_field_with_responses(self, catalog, workflow, family_form, field_ids, officer):
        workflow.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": {"notes": "n"}})
        with pytest.raises(ConflictError) as exc_info:
            catalog.delete_field(field_ids["notes"])
        assert exc_info.value.message == "Cannot delete field with existing responses"

    def test_get_unknown_field(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.get_field(999)


class TestReorderFields:
    def test_reorder_mapping(self, catalog, family_form, field_ids):
        fields = catalog.reorder_fields(family_form, {field_ids["notes"]: 1, field_ids["head_name"]: 2, field_ids["members"]: 3})
        assert [f.code for f in fields] == ["notes", "head_name", "members"]

    def test_reorder_pairs(self, catalog, family_form, field_ids):
        catalog.reorder_fields(family_form, [(field_ids["members"], 0)])
        assert catalog.fields_for(family_form)[0].code == "members"

    def test_invalid_data(self, catalog, family_form):
        with pytest.raises(ValidationError) as exc_info:
            catalog.reorder_fields(family_form, [])
        assert exc_info.value.message == "Invalid field order data"
        with pytest.raises(ValidationError):
            catalog.reorder_fields(family_form, [("1", 2)])

    def test_field_from_another_form(self, catalog, family_form):
        other = catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"})
        foreign = catalog.add_field(other, {"code": "bmi", "label": "BMI", "kind": "number"})
        with pytest.raises(ValidationError):
            catalog.reorder_fields(family_form, {foreign: 1})


class TestCategories:
    def test_defaults_when_none_used(self, catalog):
        assert "Health" in catalog.list_categories()

    def test_categories_in_use(self, catalog):
        catalog.create_form({"code": "A", "name": "A", "target_entity": "both", "category": "Water"})
        catalog.create_form({"code": "B", "name": "B", "target_entity": "both", "category": "Health"})
        assert catalog.list_categories() == ["Health", "Water"]


class TestFormWithFields:
    def test_completion_metadata(self, catalog, family_form, clock):
        result = catalog.get_form_with_fields(family_form)
        assert result["code"] == "FAM01"
        assert result["total_fields"] == 3
        assert result["required_fields"] == 2
        assert result["is_currently_active"] is True
        assert [f["code"] for f in result["fields"]] == ["head_name", "members", "notes"]
