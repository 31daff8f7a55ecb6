"""
Metadata filters
-----------------
A filter is a flat mapping from metadata key to condition:

    {"teamId": "t1"}                                  equality
    {"collectionId": {"$in": ["c1", "c2"]}}           membership

Conditions on different keys are AND-ed. The same filter is evaluated in
Python (matches) and translated to SQL over a JSONB column (to_sql).
"""
from __future__ import annotations

import re
from typing import Any, Optional

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_key(key: str) -> str:
    if not _KEY_RE.match(key):
        raise ValueError(f"Invalid metadata filter key: {key!r}")
    return key


def matches(metadata: dict[str, Any], filter: Optional[dict[str, Any]]) -> bool:
    """True when ``metadata`` satisfies every condition in ``filter``."""
    for key, condition in (filter or {}).items():
        value = metadata.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$eq" in condition and value != condition["$eq"]:
                return False
        elif value != condition:
            return False
    return True


def to_sql(
    filter: Optional[dict[str, Any]],
    column: str = "metadata",
    first_param: int = 1,
) -> tuple[str, list[Any]]:
    """
    Translate a filter into a SQL boolean expression with positional params.

    Equality conditions are folded into one JSONB containment check so the
    GIN index on the metadata column can serve them.
    """
    clauses: list[str] = []
    params: list[Any] = []
    contains: dict[str, Any] = {}

    for key, condition in (filter or {}).items():
        key = _check_key(key)
        if isinstance(condition, dict):
            if "$in" in condition:
                params.append([str(v) for v in condition["$in"]])
                clauses.append(f"{column}->>'{key}' = ANY(${first_param + len(params) - 1}::text[])")
            if "$eq" in condition:
                contains[key] = condition["$eq"]
        else:
            contains[key] = condition

    if contains:
        params.append(contains)
        clauses.append(f"{column} @> ${first_param + len(params) - 1}::jsonb")

    if not clauses:
        return "TRUE", []
    return " AND ".join(clauses), params
