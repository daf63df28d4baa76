"""
Tests for the request defense filter.

Covers per-location defaults, per-field overrides, check order and the
error message format.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tokenguard.api.length_limiter import (
    check_field_lengths,
    find_violation,
    limits_from_settings,
)
from tokenguard.exceptions import FieldTooLongError
from tokenguard.models.domain import LengthLimits

OVERRIDES = {
    "email": 254,
    "password": 1024,
    "name": 100,
    "title": 200,
    "message": 8000,
    "token": 512,
    "model": 100,
    "conversationId": 64,
}


@pytest.fixture
def limits() -> LengthLimits:
    return LengthLimits(body=10000, query=2048, params=256, field_overrides=OVERRIDES)


class TestFieldOverrides:
    """Per-field limits win over location defaults."""

    def test_name_over_override_rejected_in_body(self, limits: LengthLimits):
        """A 101 character name fails even though the body default is 10000."""
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths({"name": "x" * 101}, [], {}, limits)

        assert exc_info.value.location == "body"
        assert exc_info.value.field == "name"
        assert exc_info.value.limit == 100
        assert exc_info.value.actual == 101

    def test_name_at_override_accepted(self, limits: LengthLimits):
        check_field_lengths({"name": "x" * 100}, [], {}, limits)

    def test_override_applies_to_query(self, limits: LengthLimits):
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths(None, [("model", "m" * 101)], {}, limits)

        assert exc_info.value.location == "query"
        assert exc_info.value.limit == 100

    def test_override_can_raise_limit_above_default(self, limits: LengthLimits):
        """message allows 8000 characters even in the query (default 2048)."""
        check_field_lengths(None, [("message", "m" * 8000)], {}, limits)


class TestLocationDefaults:
    """Fields without an override use their location's default."""

    @pytest.mark.parametrize(
        ("location", "limit"),
        [("body", 10000), ("query", 2048), ("params", 256)],
    )
    def test_default_limits(self, limits: LengthLimits, location: str, limit: int):
        ok = "a" * limit
        too_long = "a" * (limit + 1)
        groups_ok = {"body": [], "query": [], "params": []}
        groups_ok[location] = [("notes", ok)]
        assert find_violation(list(groups_ok.items()), limits) is None

        groups_bad = {"body": [], "query": [], "params": []}
        groups_bad[location] = [("notes", too_long)]
        violation = find_violation(list(groups_bad.items()), limits)
        assert violation is not None
        assert violation.location == location
        assert violation.limit == limit

    def test_limits_from_settings_match_defaults(self):
        limits = limits_from_settings()

        assert limits.body == 10000
        assert limits.query == 2048
        assert limits.params == 256
        assert limits.field_overrides["conversationId"] == 64


class TestCheckOrder:
    """Body is checked before query before params; first violation wins."""

    def test_body_reported_before_query(self, limits: LengthLimits):
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths(
                {"title": "t" * 201},
                [("q", "q" * 3000)],
                {"id": "p" * 300},
                limits,
            )
        assert exc_info.value.location == "body"

    def test_query_reported_before_params(self, limits: LengthLimits):
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths({}, [("q", "q" * 3000)], {"id": "p" * 300}, limits)
        assert exc_info.value.location == "query"

    def test_first_field_in_declaration_order(self, limits: LengthLimits):
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths({"email": "e" * 255, "name": "n" * 101}, [], {}, limits)
        assert exc_info.value.field == "email"


class TestNonStringValues:
    """Only string fields are measured."""

    def test_nested_and_numeric_values_ignored(self, limits: LengthLimits):
        body = {"name": {"nested": "x" * 500}, "count": 10**20, "items": ["y" * 20000]}
        check_field_lengths(body, [], {}, limits)

    def test_non_dict_body_ignored(self, limits: LengthLimits):
        check_field_lengths(["z" * 20000], [], {}, limits)
        check_field_lengths("z" * 20000, [], {}, limits)


class TestErrorMessage:
    """Violation message names the field, location, limit and actual length."""

    def test_message_format(self, limits: LengthLimits):
        with pytest.raises(FieldTooLongError) as exc_info:
            check_field_lengths({"conversationId": "c" * 65}, [], {}, limits)

        assert str(exc_info.value) == (
            'Field "conversationId" in body exceeds limit of 64 characters (received 65).'
        )


@given(value=st.text(max_size=300), field=st.sampled_from(["notes", "comment", "q"]))
def test_values_within_default_never_rejected(value: str, field: str):
    """Strings no longer than every location default always pass."""
    limits = LengthLimits(body=10000, query=2048, params=300, field_overrides=OVERRIDES)
    check_field_lengths({field: value}, [(field, value)], {field: value}, limits)


@given(extra=st.integers(min_value=1, max_value=500))
def test_override_always_enforced(extra: int):
    limits = LengthLimits(field_overrides=OVERRIDES)
    violation = find_violation([("body", [("token", "t" * (512 + extra))])], limits)

    assert violation is not None
    assert violation.actual == 512 + extra
