"""Tests for the result-envelope facade."""

import pytest

from fpms import FormsAPI
from fpms.api import GENERIC_FAILURE
from fpms.collaborators import OfficeHierarchy
from fpms.config import Settings
from fpms.query import QuerySpec
from fpms.types import ErrorKind, OfficeKind


@pytest.fixture
def api(catalog, assignments, workflow):
    return FormsAPI(catalog, assignments, workflow)


COMPLETE = {"head_name": "Perera", "members": 4}


class TestFormOperations:
    """Test form and field envelopes."""

    def test_create_form(self, api, admin):
        result = api.create_form({"code": "HLT01", "name": "Health", "target_entity": "member"}, actor=admin)
        assert result.ok
        assert result.message == "Form created successfully"
        assert result.to_dict() == {"ok": True, "message": "Form created successfully", "formId": result["form_id"]}

    def test_duplicate_code_is_a_failure(self, api, family_form):
        result = api.create_form({"code": "FAM01", "name": "Again", "target_entity": "family"})
        assert not result.ok
        assert result.message == "Form code 'FAM01' already exists"
        assert result.error.kind is ErrorKind.CONFLICT
        assert result.to_dict()["error"]["type"] == "conflict"

    def test_invalid_definition(self, api):
        result = api.create_form({"code": "X"})
        assert not result.ok
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.to_dict()["error"]["fields"]

    def test_update_and_activation(self, api, family_form):
        assert api.update_form(family_form, {"name": "Census"}).message == "Form updated successfully"
        assert api.set_form_active(family_form, False).message == "Form deactivated successfully"
        assert api.set_form_active(family_form, True).message == "Form activated successfully"
        assert api.update_form(family_form, {}).message == "No fields to update"

    def test_get_and_list(self, api, family_form):
        form = api.get_form(family_form)["form"]
        assert form["code"] == "FAM01"
        assert form["total_fields"] == 3
        assert [f["code"] for f in api.list_forms()["forms"]] == ["FAM01"]
        assert api.form_code_exists("FAM01")["exists"] is True
        assert api.get_form(999).error.kind is ErrorKind.NOT_FOUND

    def test_duplicate_and_delete(self, api, family_form):
        copy = api.duplicate_form(family_form, new_name="Census copy")
        assert copy.message == "Form duplicated successfully"
        assert copy["code"] == "FAM01_copy1"
        deleted = api.delete_form(copy["form_id"])
        assert deleted.message == "Form deleted successfully"
        assert deleted["deleted"]["forms"] == 1

    def test_delete_guard(self, api, family_form, officer):
        api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100"})
        result = api.delete_form(family_form)
        assert result.message == "Form has 1 submissions. Cannot delete."
        assert api.delete_form(family_form, force=True).ok

    def test_fields(self, api, family_form, field_ids):
        added = api.add_field(family_form, {"code": "income", "label": "Income", "kind": "number"})
        assert added.message == "Field added successfully"
        assert api.update_field(added["field_id"], {"label": "Monthly income"}).message == "Field updated successfully"
        reordered = api.reorder_fields(family_form, {added["field_id"]: 0})
        assert reordered.message == "Fields reordered successfully"
        assert reordered["fields"][0]["code"] == "income"
        assert api.delete_field(added["field_id"]).message == "Field deleted successfully"

    def test_check_field_code(self, api, family_form):
        taken = api.check_field_code(family_form, "notes")
        assert taken.ok
        assert taken.message == "Field code already exists"
        assert taken["available"] is False
        assert api.check_field_code(family_form, "income").message == "Field code is available"


class TestAssignmentOperations:
    def test_assign_and_revoke(self, api, family_form):
        assigned = api.assign(family_form, {"office_kind": "division", "office_code": "DIV-01"})
        assert assigned.message == "Form assigned successfully"
        assert api.revoke(assigned["assignment_id"]).message == "Assignment revoked successfully"
        assert api.revoke(assigned["assignment_id"]).error.kind is ErrorKind.STATE

    def test_duplicate_grant(self, api, family_form):
        result = api.assign(family_form, {"office_kind": "gn", "office_code": "GN-001"})
        assert result.message == "This assignment already exists"


class TestReadOperations:
    """Read-only operations return their rows inside the envelope."""

    def test_categories(self, api, catalog):
        catalog.create_form({"code": "HLT01", "name": "Health", "target_entity": "member", "category": "Health"})
        assert api.list_categories()["categories"] == ["Health"]

    def test_assignment_listings(self, api, family_form):
        grants = api.list_assignments(family_form)["assignments"]
        assert [(g["office_code"], g["user_id"]) for g in grants] == [(None, 20), ("GN-001", None)]
        live = api.list_grants(QuerySpec().where("can_review", True))["assignments"]
        assert [g["user_id"] for g in live] == [20]
        assert api.list_assignments(999).error.kind is ErrorKind.NOT_FOUND

    def test_assigned_forms(self, api, family_form):
        forms = api.list_assigned_forms(OfficeKind.LOCAL_OFFICE, "GN-001")["forms"]
        assert [f["code"] for f in forms] == ["FAM01"]
        assert api.list_assigned_forms(OfficeKind.LOCAL_OFFICE, "GN-999")["forms"] == []

    def test_capabilities(self, api, family_form, officer, reviewer, outsider):
        assert api.can_fill(family_form, officer)["can_fill"] is True
        assert api.can_fill(family_form, outsider)["can_fill"] is False
        assert api.can_review(family_form, reviewer)["can_review"] is True
        assert api.can_review(family_form, officer).to_dict() == {"ok": True, "message": "", "canReview": False}

    def test_history_and_listing(self, api, family_form, officer):
        first = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100"})
        api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "submission_id": first["submission_id"]})
        versions = api.history(family_form, "family", "F-100")["versions"]
        assert [(v["version"], v["is_latest"]) for v in versions] == [(1, False), (2, True)]
        latest = api.list_submissions(QuerySpec().where("is_latest", True))["submissions"]
        assert [s["version"] for s in latest] == [2]

    def test_review_queue(self, api, family_form, officer, reviewer):
        saved = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": COMPLETE, "status": "submitted"})
        tree = OfficeHierarchy()
        tree.add(OfficeKind.DIVISION, "DIV-01")
        tree.add(OfficeKind.LOCAL_OFFICE, "GN-001", parent=(OfficeKind.DIVISION, "DIV-01"))
        queue = api.review_queue(reviewer, tree)["submissions"]
        assert [s["id"] for s in queue] == [saved["submission_id"]]

    def test_bad_query_is_a_failure(self, api):
        result = api.list_submissions(QuerySpec().where("password", "x"))
        assert not result.ok
        assert result.error.kind is ErrorKind.VALIDATION


class TestSubmissionOperations:
    """Test the lifecycle through the facade."""

    def test_can_submit(self, api, family_form, officer, outsider):
        assert api.can_submit(family_form, officer)["can_submit"] is True
        refused = api.can_submit(family_form, outsider)
        assert refused.message == "You do not have permission to fill this form"
        assert refused.error.kind is ErrorKind.AUTHORIZATION

    def test_lifecycle(self, api, family_form, field_ids, officer, reviewer):
        saved = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": {"head_name": "Perera"}})
        assert saved.message == "Form saved successfully"
        assert saved["version"] == 1
        assert saved["status"] == "draft"
        assert saved["missing_fields"] == ["members"]
        sid = saved["submission_id"]

        refused = api.submit_for_review(officer, sid)
        assert refused.message == "Please fill all required fields before submitting"

        answered = api.save_response(officer, sid, field_ids["members"], 3)
        assert answered.message == "Response saved successfully"
        assert answered["completed_fields"] == 2

        assert api.submit_for_review(officer, sid).message == "Submission submitted successfully"
        assert api.mark_pending_review(reviewer, sid).message == "Submission marked for review successfully"
        approved = api.review(reviewer, sid, "approve")
        assert approved.message == "Submission approved successfully"
        assert api.get_submission(sid)["submission"]["status"] == "approved"

    def test_reject_message(self, api, family_form, officer, reviewer):
        saved = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": COMPLETE, "status": "submitted"})
        assert api.review(reviewer, saved["submission_id"], "reject").message == "Submission rejected successfully"

    def test_review_without_grant(self, api, family_form, officer):
        saved = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": COMPLETE, "status": "submitted"})
        result = api.review(officer, saved["submission_id"], "approve")
        assert not result.ok
        assert result.error.kind is ErrorKind.AUTHORIZATION

    def test_delete_submission(self, api, family_form, officer):
        first = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100"})
        second = api.save(
            officer, "family", {"form_id": family_form, "entity_id": "F-100", "submission_id": first["submission_id"]}
        )
        deleted = api.delete_submission(officer, second["submission_id"])
        assert deleted.message == "Submission deleted successfully"
        assert deleted["latest_id"] == first["submission_id"]


class TestBulkAction:
    def test_mixed_outcome(self, api, family_form, officer, reviewer):
        done = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-100", "responses": COMPLETE, "status": "submitted"})
        draft = api.save(officer, "family", {"form_id": family_form, "entity_id": "F-200"})
        items = [f"family-{done['submission_id']}", f"family-{draft['submission_id']}"]

        result = api.bulk_action(reviewer, "approve", items)
        assert result.ok
        assert result.message.startswith("Successfully processed 1 submission(s). Errors: ")
        assert result["succeeded"] == [items[0]]
        assert result["failed"] == [items[1]]

    def test_all_failed(self, api, officer):
        result = api.bulk_action(officer, "delete", ["family-999"])
        assert not result.ok
        assert result.message == "No submissions processed. Errors: Submission family-999: Submission not found"

    def test_invalid_action(self, api, officer):
        result = api.bulk_action(officer, "archive", ["family-1"])
        assert result.message == "Invalid action"
        assert result.error.kind is ErrorKind.VALIDATION


class TestUnexpectedFailures:
    """Lower-layer details never reach the caller."""

    def test_generic_message(self, api, monkeypatch, caplog):
        def explode(*args, **kwargs):
            raise RuntimeError("connection reset by peer")

        monkeypatch.setattr(api.catalog, "create_form", explode)
        result = api.create_form({"code": "X", "name": "X", "target_entity": "both"})
        assert not result.ok
        assert result.message == GENERIC_FAILURE
        assert result.error.kind is ErrorKind.PERSISTENCE
        assert "connection reset" not in result.message
        assert "Unexpected error in create_form" in caplog.text


class TestFromSettings:
    def test_wires_components(self, tmp_path):
        settings = Settings(upload_dir=str(tmp_path / "files"))
        api = FormsAPI.from_settings(settings)
        created = api.create_form({"code": "FAM01", "name": "Household survey", "target_entity": "family"})
        assert created.ok
        added = api.add_field(created["form_id"], {"code": "head", "label": "Head of household", "kind": "text"})
        assert added.message == "Field added successfully"
