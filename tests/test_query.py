"""Tests for composable query specifications."""

import pytest

from fpms.errors import ValidationError
from fpms.query import Predicate, QuerySpec


@pytest.fixture
def forms(catalog, clock):
    ids = {}
    for code, name, category, target in [
        ("HLT01", "Health screening", "Health", "member"),
        ("EDU01", "School enrolment", "Education", "member"),
        ("FAM01", "Household survey", "General", "family"),
    ]:
        ids[code] = catalog.create_form({"code": code, "name": name, "category": category, "target_entity": target})
        clock.advance(minutes=1)
    return ids


class TestQuerySpec:
    """Test spec construction."""

    def test_where_shorthand_means_equality(self):
        spec = QuerySpec().where("status", "draft")
        assert spec.predicates == (Predicate("status", "eq", "draft"),)

    def test_specs_are_immutable(self):
        base = QuerySpec()
        narrowed = base.where("is_active", True)
        assert base.predicates == ()
        assert len(narrowed.predicates) == 1

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            QuerySpec().where("status", "like", "dr%")

    def test_order_direction(self):
        assert QuerySpec().order("name", "DESC").ordering == (("name", "desc"),)
        with pytest.raises(ValidationError):
            QuerySpec().order("name", "sideways")

    def test_page_bounds(self):
        assert QuerySpec().page(10, 20).offset == 20
        with pytest.raises(ValidationError):
            QuerySpec().page(0)
        with pytest.raises(ValidationError):
            QuerySpec().page(5, -1)

    def test_from_filters(self):
        spec = QuerySpec.from_filters(
            {"search": "health", "is_active": True, "category": None, "order_by": "name", "limit": "5"}
        )
        assert spec.predicates == (
            Predicate("search", "contains", "health"),
            Predicate("is_active", "eq", True),
        )
        assert spec.ordering == (("name", "asc"),)
        assert spec.limit == 5


class TestApplyQuery:
    """Test specs translated onto form listings."""

    def test_default_order_is_newest_first(self, catalog, forms):
        assert [f.code for f in catalog.list_forms()] == ["FAM01", "EDU01", "HLT01"]

    def test_search_spans_name_and_code(self, catalog, forms):
        by_name = catalog.list_forms(QuerySpec().where("search", "contains", "school"))
        by_code = catalog.list_forms(QuerySpec().where("search", "contains", "hlt"))
        assert [f.code for f in by_name] == ["EDU01"]
        assert [f.code for f in by_code] == ["HLT01"]

    def test_predicates_are_combined(self, catalog, forms):
        catalog.set_form_active(forms["HLT01"], False)
        spec = QuerySpec().where("target_entity", "member").where("is_active", True)
        assert [f.code for f in catalog.list_forms(spec)] == ["EDU01"]

    def test_in_operator(self, catalog, forms):
        spec = QuerySpec().where("category", "in", ["Health", "General"]).order("code")
        assert [f.code for f in catalog.list_forms(spec)] == ["FAM01", "HLT01"]

    def test_pagination(self, catalog, forms):
        spec = QuerySpec().order("code").page(limit=2, offset=1)
        assert [f.code for f in catalog.list_forms(spec)] == ["FAM01", "HLT01"]

    def test_unknown_filter(self, catalog, forms):
        with pytest.raises(ValidationError) as exc_info:
            catalog.list_forms(QuerySpec().where("password", "x"))
        assert "Unknown filter" in exc_info.value.message

    def test_cannot_order_by_search(self, catalog, forms):
        with pytest.raises(ValidationError):
            catalog.list_forms(QuerySpec().order("search"))
