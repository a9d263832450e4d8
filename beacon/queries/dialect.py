"""
Dialect translation layer for the relational engines.

Relational queries never contain dialect-specific SQL.  They use the
constructs below, which SQLAlchemy's compiler extension renders per
dialect (PostgreSQL, MySQL, and SQLite as the default).

Format strings are rendered as literals rather than bound parameters so
the same bucket expression in SELECT and GROUP BY compiles to identical
text (PostgreSQL refuses to match ``to_char(x, $1)`` with ``to_char(x, $2)``).
"""

from sqlalchemy import DateTime, Integer, String, cast, func, insert, literal, literal_column
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import ColumnElement, FunctionElement, extract
from sqlalchemy.types import Boolean

from beacon.timeseries import Unit

_PG_TRUNC = {Unit.HOUR: "hour", Unit.DAY: "day", Unit.MONTH: "month"}
_STRFTIME = {
    Unit.HOUR: "%Y-%m-%d %H:00:00",
    Unit.DAY: "%Y-%m-%d 00:00:00",
    Unit.MONTH: "%Y-%m-01 00:00:00",
}


def _first(element):
    return list(element.clauses)[0]


def _quoted(text: str):
    return literal_column("'" + text.replace("'", "''") + "'")


# ── date bucketing ────────────────────────────────────────


class date_bucket(FunctionElement):
    """UTC start of the hour/day/month containing ``expr``, as 'YYYY-MM-DD HH:MM:SS' text."""

    type = String()
    name = "date_bucket"
    inherit_cache = False

    def __init__(self, expr, unit):
        self.unit = Unit(unit)
        super().__init__(expr)


@compiles(date_bucket)
def _date_bucket_default(element, compiler, **kw):
    return compiler.process(func.strftime(_quoted(_STRFTIME[element.unit]), _first(element)), **kw)


@compiles(date_bucket, "postgresql")
def _date_bucket_pg(element, compiler, **kw):
    utc = func.timezone(_quoted("UTC"), _first(element))
    truncated = func.date_trunc(_quoted(_PG_TRUNC[element.unit]), utc)
    return compiler.process(func.to_char(truncated, _quoted("YYYY-MM-DD HH24:MI:SS")), **kw)


@compiles(date_bucket, "mysql")
def _date_bucket_mysql(element, compiler, **kw):
    return compiler.process(func.date_format(_first(element), _quoted(_STRFTIME[element.unit])), **kw)


# ── elapsed seconds ───────────────────────────────────────


class seconds_between(FunctionElement):
    """
    Second boundaries crossed from ``start`` to ``end``, i.e. the difference
    of both timestamps truncated to whole seconds (ClickHouse ``dateDiff``).
    """

    type = Integer()
    name = "seconds_between"
    inherit_cache = True


@compiles(seconds_between)
def _seconds_between_default(element, compiler, **kw):
    start, end = list(element.clauses)
    epoch = _quoted("%s")
    whole = cast(func.strftime(epoch, end), Integer) - cast(func.strftime(epoch, start), Integer)
    return compiler.process(whole, **kw)


@compiles(seconds_between, "postgresql")
def _seconds_between_pg(element, compiler, **kw):
    start, end = list(element.clauses)
    whole = func.floor(extract("epoch", end)) - func.floor(extract("epoch", start))
    return compiler.process(cast(whole, Integer), **kw)


@compiles(seconds_between, "mysql")
def _seconds_between_mysql(element, compiler, **kw):
    start, end = list(element.clauses)
    fmt = _quoted("%Y-%m-%d %H:%i:%s")
    return compiler.process(
        func.timestampdiff(literal_column("SECOND"), func.date_format(start, fmt), func.date_format(end, fmt)),
        **kw,
    )


# ── interval arithmetic ───────────────────────────────────


class add_minutes(FunctionElement):
    """``expr`` shifted forward by a fixed number of minutes."""

    type = DateTime()
    name = "add_minutes"
    inherit_cache = False

    def __init__(self, expr, minutes: int):
        self.minutes = int(minutes)
        super().__init__(expr)


@compiles(add_minutes)
def _add_minutes_default(element, compiler, **kw):
    # pad %f (SS.SSS) to the six fractional digits SQLAlchemy stores
    shifted = func.strftime(_quoted("%Y-%m-%d %H:%M:%f"), _first(element), _quoted(f"+{element.minutes} minutes"))
    return "(%s || '000')" % compiler.process(shifted, **kw)


@compiles(add_minutes, "postgresql")
def _add_minutes_pg(element, compiler, **kw):
    return "(%s + INTERVAL '%d minutes')" % (compiler.process(_first(element), **kw), element.minutes)


@compiles(add_minutes, "mysql")
def _add_minutes_mysql(element, compiler, **kw):
    return "DATE_ADD(%s, INTERVAL %d MINUTE)" % (compiler.process(_first(element), **kw), element.minutes)


# ── text comparison ───────────────────────────────────────


def casefold(expr) -> ColumnElement:
    return func.lower(expr)


class strict_eq(FunctionElement):
    """Case-sensitive equality, even under MySQL's case-insensitive collations."""

    type = Boolean()
    name = "strict_eq"
    inherit_cache = True

    def __init__(self, expr, value: str):
        super().__init__(expr, literal(value, String()))


@compiles(strict_eq)
def _strict_eq_default(element, compiler, **kw):
    expr, value = list(element.clauses)
    return "(%s = %s)" % (compiler.process(expr, **kw), compiler.process(value, **kw))


@compiles(strict_eq, "mysql")
def _strict_eq_mysql(element, compiler, **kw):
    expr, value = list(element.clauses)
    return "(BINARY %s = %s)" % (compiler.process(expr, **kw), compiler.process(value, **kw))


def text_equals(expr, value: str, case_insensitive: bool = False) -> ColumnElement:
    if case_insensitive:
        return casefold(expr) == value.lower()
    return strict_eq(expr, value)


# ── writes ────────────────────────────────────────────────


def insert_ignore(model, dialect_name: str):
    """INSERT that silently skips rows whose primary key already exists."""
    if dialect_name == "postgresql":
        return pg_insert(model).on_conflict_do_nothing(index_elements=["id"])
    if dialect_name == "sqlite":
        return sqlite_insert(model).on_conflict_do_nothing(index_elements=["id"])
    if dialect_name == "mysql":
        return insert(model).prefix_with("IGNORE")
    raise ValueError(f"No insert-or-ignore for dialect {dialect_name!r}")
