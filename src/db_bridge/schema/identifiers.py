"""SQL identifier and literal quoting shared by the DDL renderer and the advisor."""

import re

SIMPLE_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

RESERVED_WORDS = frozenset({
    "all", "and", "as", "asc", "between", "by", "case", "check", "column",
    "constraint", "create", "default", "delete", "desc", "distinct", "drop",
    "else", "end", "foreign", "from", "group", "having", "in", "index",
    "insert", "into", "is", "join", "key", "limit", "not", "null", "offset",
    "on", "or", "order", "primary", "references", "select", "set", "table",
    "then", "to", "union", "unique", "update", "user", "using", "values",
    "when", "where", "with",
})


def quote_ident(name: str) -> str:
    """Quote an identifier unless it is a plain lower-case non-reserved word.

    Example:
        >>> quote_ident("users"), quote_ident("User"), quote_ident("order")
        ('users', '"User"', '"order"')
    """
    if SIMPLE_IDENTIFIER.match(name) and name not in RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"
