"""
Request Defense Filter - Reject oversized string fields before any business logic.

Checks top-level string fields of the JSON body, the query string and the path
parameters, in that order, and fails fast on the first violation. Per-field
overrides take precedence over the per-location default.
"""

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from fastapi import Request

from tokenguard.config import settings
from tokenguard.exceptions import FieldTooLongError
from tokenguard.models.domain import LengthLimits

BODY = "body"
QUERY = "query"
PARAMS = "params"

FieldGroup = tuple[str, Iterable[tuple[str, Any]]]


def limits_from_settings() -> LengthLimits:
    """Build limits from the configured defaults and overrides."""
    return LengthLimits(
        body=settings.length_limit_body,
        query=settings.length_limit_query,
        params=settings.length_limit_params,
        field_overrides=dict(settings.field_length_overrides),
    )


def find_violation(groups: Sequence[FieldGroup], limits: LengthLimits) -> FieldTooLongError | None:
    """Return the first oversized string field, or None. Non-string values are ignored."""
    for location, fields in groups:
        for name, value in fields:
            if not isinstance(value, str):
                continue
            limit = limits.limit_for(location, name)
            if len(value) > limit:
                return FieldTooLongError(location, name, limit, len(value))
    return None


def check_field_lengths(
    body: Any,
    query: Iterable[tuple[str, str]],
    params: Mapping[str, Any],
    limits: LengthLimits,
) -> None:
    """
    Validate one request's field groups.

    Raises:
        FieldTooLongError: First field over its limit
    """
    body_fields = body.items() if isinstance(body, Mapping) else ()
    violation = find_violation(
        [(BODY, body_fields), (QUERY, query), (PARAMS, params.items())],
        limits,
    )
    if violation is not None:
        raise violation


async def _json_body(request: Request) -> Any:
    if not await request.body():
        return None
    try:
        return await request.json()
    except ValueError:
        return None


async def enforce_field_limits(request: Request) -> None:
    """Router-level dependency applying the defense filter."""
    check_field_lengths(
        await _json_body(request),
        request.query_params.multi_items(),
        request.path_params,
        limits_from_settings(),
    )
