"""
SQL rewriting between the MySQL authoring dialect and PostgreSQL.

Rewrites work on SQLGlot's MySQL tokens. Only the tokens being rewritten
change; everything else, comments and whitespace included, is copied from
the input as written.
"""

import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError, TokenError
from sqlglot.tokens import Token, TokenType

logger = logging.getLogger(__name__)

SOURCE_DIALECT = "mysql"

# Same shape SQLAlchemy's text() uses to find :name binds
_BIND_LIKE = re.compile(r"(?<![:\w\\]):(\w+)(?!:)")


def tokenize(sql: str) -> List[Token]:
    """
    MySQL tokens of ``sql``.

    Raises:
        ValueError: The SQL cannot be tokenized (e.g. an unterminated string)
    """
    try:
        return sqlglot.tokenize(sql, read=SOURCE_DIALECT)
    except TokenError as e:
        raise ValueError(f"Could not tokenize SQL: {e}") from e


def walk(sql: str) -> Iterator[Tuple[Optional[Token], str]]:
    """
    Yield (token, source text) pairs covering ``sql`` from start to end.

    Text between tokens (whitespace and comments) comes through with
    ``token=None``. Joining the texts gives back the input unchanged.
    """
    position = 0
    for token in tokenize(sql):
        if token.start > position:
            yield None, sql[position:token.start]
        yield token, sql[token.start:token.end + 1]
        position = token.end + 1
    if position < len(sql):
        yield None, sql[position:]


def _is_backtick_identifier(token: Optional[Token], source: str) -> bool:
    return token is not None and token.token_type == TokenType.IDENTIFIER and source.startswith("`")


def _is_placeholder(token: Optional[Token]) -> bool:
    return token is not None and token.token_type == TokenType.PLACEHOLDER


def _backtick_to_double_quote(source: str) -> str:
    inner = source[1:-1].replace("``", "`")
    return '"' + inner.replace('"', '""') + '"'


def translate_identifiers(sql: str) -> str:
    """Rewrite `backtick` identifiers as "double-quoted" ones."""
    return "".join(
        _backtick_to_double_quote(source) if _is_backtick_identifier(token, source) else source
        for token, source in walk(sql)
    )


def number_placeholders(
    sql: str,
    params: Optional[Sequence[Any]] = None
) -> Tuple[str, Dict[str, Any]]:
    """
    Turn positional ``?`` placeholders into ``:p1, :p2, ...`` binds for
    ``sqlalchemy.text()``.

    Colons that text() would read as binds are escaped, so ``'10:30'`` or a
    stray ``:name`` stays literal. Only placeholder tokens are counted, never
    a ``?`` inside a string, identifier or comment.

    Returns:
        Rewritten SQL and the bind dict

    Raises:
        ValueError: Placeholder count differs from the number of params, or
            the SQL cannot be tokenized
    """
    params = list(params or [])
    parts: List[str] = []
    literal: List[str] = []
    index = 0

    def flush():
        if literal:
            parts.append(_BIND_LIKE.sub(r"\\:\1", "".join(literal)))
            literal.clear()

    for token, source in walk(sql):
        if _is_placeholder(token):
            flush()
            index += 1
            parts.append(f":p{index}")
        else:
            literal.append(source)
    flush()

    if index != len(params):
        raise ValueError(f"SQL has {index} placeholders but {len(params)} parameters were given")

    binds = {f"p{i}": value for i, value in enumerate(params, start=1)}
    return "".join(parts), binds


def to_pyformat(
    sql: str,
    params: Optional[Sequence[Any]] = None
) -> Tuple[str, Optional[List[Any]]]:
    """
    Adapt ``?`` placeholders to PyMySQL's ``%s`` style.

    Without params the SQL is passed through as-is and PyMySQL does no
    interpolation. With params every literal ``%`` is doubled first.
    """
    if not params:
        return sql, None

    converted = "".join(
        "%s" if _is_placeholder(token) else source.replace("%", "%%")
        for token, source in walk(sql)
    )
    return converted, list(params)


def ensure_limit(sql: str, limit: int) -> str:
    """
    Cap a query at ``limit`` rows unless its outermost query has a LIMIT.

    The query is parsed and the limit set on the expression, so the result
    is regenerated MySQL. SQL the parser cannot read keeps its own text and
    gets ``LIMIT n`` on a new line, unless it has a LIMIT token anywhere.
    """
    statement = sql.strip().rstrip(";").rstrip()

    try:
        expression = sqlglot.parse_one(statement, read=SOURCE_DIALECT)
    except SqlglotError as e:
        logger.debug(f"Could not parse chart SQL, appending LIMIT as text: {e}")
        expression = None

    if isinstance(expression, exp.Query):
        if expression.args.get("limit") is not None:
            return sql
        return expression.limit(limit).sql(dialect=SOURCE_DIALECT)

    try:
        has_limit = any(token.token_type == TokenType.LIMIT for token in tokenize(statement))
    except ValueError:
        has_limit = False
    if has_limit:
        return sql
    return f"{statement}\nLIMIT {limit}"
