"""
Helpers for building PostgreSQL statements from identifiers and literals.
"""

import re

_SAFE_ROLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def quote_ident(identifier: str) -> str:
    """Wrap an identifier in double quotes, escaping embedded quotes."""
    return '"' + identifier.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Single-quote a string literal for PostgreSQL."""
    return "'" + value.replace("'", "''") + "'"


def is_safe_role_name(name: str) -> bool:
    return bool(name) and _SAFE_ROLE_NAME.match(name) is not None
