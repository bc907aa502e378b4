"""Index recommendations from observed query statistics.

The advisor is fed executed queries by the surrounding application, collapses
them into normalized query shapes, and recommends indexes for shapes that are
both frequent and slow. It never touches a database: recommendations are
returned as SQL text for the planner or an operator to apply.

Usage:
    from db_bridge.advisor import IndexAdvisor

    advisor = IndexAdvisor(min_frequency=3, slow_query_threshold_ms=100.0)
    advisor.record_query("SELECT * FROM users WHERE email = 'a@b.c'", 240.0)
    analysis = advisor.recommend(schema)
    for rec in analysis.recommendations:
        print(rec.priority, rec.sql)
"""

import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from db_bridge.schema.capabilities import Dialect, resolve_dialect
from db_bridge.schema.identifiers import quote_ident
from db_bridge.schema.models import Index, SchemaModel, Table

logger = logging.getLogger(__name__)

Priority = Literal["low", "medium", "high", "critical"]
Impact = Literal["low", "medium", "high"]

_PRIORITY_SCORE = {"critical": 4, "high": 3, "medium": 2, "low": 1}
_IMPACT_SCORE = {"high": 3, "medium": 2, "low": 1}

# Composite recommendations stop at this many leading WHERE columns
MAX_COMPOSITE_COLUMNS = 3

_IDENT = r'(?:"[^"]+"|[A-Za-z_][\w$]*)'
_QUALIFIED = rf"(?:{_IDENT}\.)?({_IDENT})"

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_NUMBER_LITERAL = re.compile(r"(?<![\w$.])-?\d+(?:\.\d+)?(?![\w.])")
_PLACEHOLDERS = re.compile(r"%\(\w+\)s|%s|\$\d+|(?<![:\w]):[A-Za-z_]\w*|\?")
_IN_LIST = re.compile(r"\bin\s*\(\s*\?(?:\s*,\s*\?)*\s*\)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

_FROM_TABLE = re.compile(rf"\b(?:from|update|into)\s+{_QUALIFIED}", re.IGNORECASE)
_WHERE_CLAUSE = re.compile(
    r"\bwhere\b(.*?)(?=\bgroup\s+by\b|\border\s+by\b|\blimit\b|\bhaving\b|\breturning\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_WHERE_COLUMN = re.compile(
    rf"{_QUALIFIED}\s*(?:=|<>|!=|<=|>=|<|>|\bin\b|\blike\b|\bilike\b|\bis\b|\bbetween\b)",
    re.IGNORECASE,
)
_ORDER_BY = re.compile(r"\border\s+by\b(.*?)(?=\blimit\b|\boffset\b|\bfor\b|$)", re.IGNORECASE | re.DOTALL)
_JOIN_ON = re.compile(
    rf"\bjoin\s+{_QUALIFIED}(?:\s+(?:as\s+)?(?!on\b)({_IDENT}))?\s+on\s+(.*?)(?=\bjoin\b|\bwhere\b|\bgroup\b|\border\b|\blimit\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_ON_COLUMN = re.compile(rf"(?:({_IDENT})\.)?({_IDENT})\s*=\s*(?:({_IDENT})\.)?({_IDENT})", re.IGNORECASE)

_KEYWORDS = {"and", "or", "not", "null", "true", "false", "exists", "select"}


def _unquote(name: str) -> str:
    return name[1:-1] if name.startswith('"') and name.endswith('"') else name


def _unique(names: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for name in names:
        name = _unquote(name)
        if name.lower() in _KEYWORDS or name in seen:
            continue
        seen.append(name)
    return seen


# ------------------------------------------------------------------
# Query parsing
# ------------------------------------------------------------------


def normalize_query(sql: str) -> str:
    """Collapse a query into its shape.

    String and number literals and every placeholder style become ``?``,
    ``IN (...)`` lists collapse to ``in (?)``, whitespace is collapsed and
    the text is lower-cased.

    Example:
        >>> normalize_query("SELECT * FROM t WHERE id IN (1, 2, 3) AND name = 'x'")
        'select * from t where id in (?) and name = ?'
    """
    shape = _STRING_LITERAL.sub("?", sql)
    shape = _PLACEHOLDERS.sub("?", shape)
    shape = _NUMBER_LITERAL.sub("?", shape)
    shape = _IN_LIST.sub("in (?)", shape)
    return _WHITESPACE.sub(" ", shape).strip().lower()


def extract_table(sql: str) -> str | None:
    match = _FROM_TABLE.search(sql)
    return _unquote(match.group(1)) if match else None


def extract_where_columns(sql: str) -> list[str]:
    match = _WHERE_CLAUSE.search(sql)
    if not match:
        return []
    return _unique(m.group(1) for m in _WHERE_COLUMN.finditer(match.group(1)))


def extract_order_by_columns(sql: str) -> list[str]:
    match = _ORDER_BY.search(sql)
    if not match:
        return []
    columns = []
    for entry in match.group(1).split(","):
        words = entry.strip().split()
        if words and re.fullmatch(_QUALIFIED, words[0]):
            columns.append(words[0].split(".")[-1])
    return _unique(columns)


def extract_join_columns(sql: str) -> list[str]:
    """Columns of the FROM side compared in ``JOIN ... ON a.x = b.y`` clauses."""
    columns = []
    for join in _JOIN_ON.finditer(sql):
        joined = {_unquote(join.group(1)).lower()}
        if join.group(2):
            joined.add(_unquote(join.group(2)).lower())
        for left_qual, left, right_qual, right in _ON_COLUMN.findall(join.group(3)):
            if left_qual and _unquote(left_qual).lower() in joined:
                columns.append(right)
            else:
                columns.append(left)
    return _unique(columns)


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------


@dataclass
class QueryPattern:
    """Statistics for one normalized query shape."""

    query: str
    table: str | None
    where_columns: list[str] = field(default_factory=list)
    order_by_columns: list[str] = field(default_factory=list)
    join_columns: list[str] = field(default_factory=list)
    frequency: int = 0
    average_time_ms: float = 0.0
    last_executed: datetime | None = None

    def observe(self, execution_time_ms: float) -> None:
        self.frequency += 1
        self.average_time_ms += (execution_time_ms - self.average_time_ms) / self.frequency
        self.last_executed = datetime.now(timezone.utc)


class IndexRecommendation(BaseModel):
    """A suggested index.

    Attributes:
        table: Table to index.
        columns: Indexed columns, in order.
        type: ``single`` or ``composite``.
        priority: ``low``, ``medium``, ``high`` or ``critical``.
        reason: Why the index is suggested.
        estimated_impact: ``low``, ``medium`` or ``high``.
        sql: ``CREATE INDEX IF NOT EXISTS`` statement.
    """

    table: str
    columns: list[str]
    type: Literal["single", "composite"] = "single"
    priority: Priority = "medium"
    reason: str = ""
    estimated_impact: Impact = "medium"
    sql: str = ""

    @property
    def name(self) -> str:
        return f"idx_{self.table}_{'_'.join(self.columns)}"


class IndexAnalysis(BaseModel):
    """Result of ``IndexAdvisor.recommend()``."""

    recommendations: list[IndexRecommendation] = Field(default_factory=list)
    existing_indexes: list[str] = Field(default_factory=list)
    redundant_indexes: list[str] = Field(default_factory=list)
    performance_impact: Impact = "low"
    summary: str = ""


# ------------------------------------------------------------------
# Redundancy
# ------------------------------------------------------------------


def _covers(wider: Index, narrower: Index) -> bool:
    if wider is narrower or narrower.predicate != wider.predicate:
        return False
    if len(narrower.columns) > len(wider.columns):
        return False
    if tuple(wider.columns[: len(narrower.columns)]) != tuple(narrower.columns):
        return False
    if narrower.unique:
        # A unique index enforces a constraint; only an identical unique index replaces it
        return wider.unique and len(wider.columns) == len(narrower.columns)
    return True


def find_redundant_indexes(tables: Iterable[Table]) -> list[str]:
    """Indexes whose columns are a leading prefix of another index on the same table.

    Returns:
        Messages of the form ``"<table>.<index> is covered by <other>"``.
        Of two identical indexes only the later one is reported.
    """
    findings = []
    for table in tables:
        indexes = list(table.indexes)
        for i, index in enumerate(indexes):
            for j, other in enumerate(indexes):
                if i == j or not _covers(other, index):
                    continue
                identical = tuple(other.columns) == tuple(index.columns) and other.unique == index.unique
                if identical and j > i:
                    continue
                findings.append(f"{table.name}.{index.name} is covered by {other.name}")
                break
    return findings


# ------------------------------------------------------------------
# Advisor
# ------------------------------------------------------------------


class IndexAdvisor:
    """Collect query statistics and recommend indexes.

    Instances are independent: create one per application or test. Query
    recording is thread-safe.

    Args:
        min_frequency: Executions of a shape before it is considered.
        slow_query_threshold_ms: Average execution time a shape must reach.
        max_recommendations: Upper bound on returned recommendations.
    """

    def __init__(
        self,
        min_frequency: int = 3,
        slow_query_threshold_ms: float = 100.0,
        max_recommendations: int = 20,
    ):
        self.min_frequency = min_frequency
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.max_recommendations = max_recommendations
        self._patterns: dict[str, QueryPattern] = {}
        self._lock = threading.Lock()

    @property
    def patterns(self) -> list[QueryPattern]:
        with self._lock:
            return list(self._patterns.values())

    def clear(self) -> None:
        with self._lock:
            self._patterns.clear()

    def record_query(self, sql: str, execution_time_ms: float, table: str | None = None) -> None:
        """Record one executed query. Never raises."""
        try:
            shape = normalize_query(sql)
            with self._lock:
                pattern = self._patterns.get(shape)
                if pattern is None:
                    owner = table or extract_table(sql)
                    pattern = QueryPattern(
                        query=shape,
                        table=owner,
                        where_columns=extract_where_columns(sql),
                        order_by_columns=extract_order_by_columns(sql),
                        join_columns=extract_join_columns(sql),
                    )
                    self._patterns[shape] = pattern
                pattern.observe(float(execution_time_ms))
        except Exception as e:
            logger.debug(f"Dropped query statistic: {e}")

    def _is_relevant(self, pattern: QueryPattern) -> bool:
        return (
            pattern.table is not None
            and pattern.frequency >= self.min_frequency
            and pattern.average_time_ms >= self.slow_query_threshold_ms
        )

    def _priority(self, pattern: QueryPattern) -> Priority:
        slow = pattern.average_time_ms / max(self.slow_query_threshold_ms, 1e-9)
        frequent = pattern.frequency / max(self.min_frequency, 1)
        if slow >= 10 and frequent >= 10:
            return "critical"
        if slow >= 5 or frequent >= 10:
            return "high"
        if slow >= 2 or frequent >= 3:
            return "medium"
        return "low"

    @staticmethod
    def _impact(pattern: QueryPattern) -> Impact:
        weight = pattern.frequency * pattern.average_time_ms
        if weight >= 10_000:
            return "high"
        if weight >= 1_000:
            return "medium"
        return "low"

    def recommend(self, schema: SchemaModel | None = None, dialect: "str | Dialect" = Dialect.SQLITE) -> IndexAnalysis:
        """Rank index suggestions for shapes that are both frequent and slow.

        Args:
            schema: Current schema. When given, columns already leading an
                index are skipped, unknown tables/columns are ignored, and
                redundant indexes are reported.
            dialect: Dialect the suggested SQL is written for.

        Returns:
            ``IndexAnalysis`` with at most ``max_recommendations`` entries,
            highest priority first.
        """
        tables = {t.name: t for t in schema.tables if not t.is_view} if schema else {}
        candidates: dict[tuple[str, tuple[str, ...]], IndexRecommendation] = {}

        def propose(pattern: QueryPattern, columns: list[str], priority: Priority, reason: str) -> None:
            table = tables.get(pattern.table) if schema else None
            if schema is not None:
                if table is None or any(table.get_column(c) is None for c in columns):
                    return
                if any(tuple(i.columns[: len(columns)]) == tuple(columns) for i in table.indexes):
                    return
                if tuple(table.primary_key[: len(columns)]) == tuple(columns):
                    return
            key = (pattern.table, tuple(columns))
            current = candidates.get(key)
            if current and _PRIORITY_SCORE[current.priority] >= _PRIORITY_SCORE[priority]:
                return
            rec = IndexRecommendation(
                table=pattern.table,
                columns=columns,
                type="composite" if len(columns) > 1 else "single",
                priority=priority,
                reason=reason,
                estimated_impact=self._impact(pattern),
            )
            rec.sql = (
                f"CREATE INDEX IF NOT EXISTS {quote_ident(rec.name)} "
                f"ON {quote_ident(rec.table)} ({', '.join(quote_ident(c) for c in columns)})"
            )
            candidates[key] = rec

        relevant = sorted(
            (p for p in self.patterns if self._is_relevant(p)),
            key=lambda p: (-p.frequency, -p.average_time_ms, p.query),
        )
        for pattern in relevant:
            priority = self._priority(pattern)
            stats = f"{pattern.frequency} times, avg {round(pattern.average_time_ms)}ms"
            for column in pattern.where_columns:
                propose(pattern, [column], priority, f"Frequently filtered column ({stats})")
            if len(pattern.where_columns) > 1:
                columns = pattern.where_columns[:MAX_COMPOSITE_COLUMNS]
                propose(pattern, columns, priority, f"Multiple filtered columns ({stats})")
            for column in pattern.join_columns:
                propose(pattern, [column], "high" if priority != "critical" else priority, f"Join column ({stats})")
            for column in pattern.order_by_columns:
                propose(pattern, [column], "medium" if priority == "low" else priority, f"Frequently sorted column ({stats})")

        ranked = sorted(
            candidates.values(),
            key=lambda r: (-_PRIORITY_SCORE[r.priority], -_IMPACT_SCORE[r.estimated_impact], r.table, r.columns),
        )[: self.max_recommendations]

        redundant = find_redundant_indexes(tables.values()) if schema else []
        existing = [f"{t.name}.{i.name}" for t in tables.values() for i in t.indexes]

        impact: Impact = "low"
        if any(r.estimated_impact == "high" for r in ranked):
            impact = "high"
        elif any(r.estimated_impact == "medium" for r in ranked):
            impact = "medium"

        summary = f"{len(ranked)} index recommendation(s), {len(redundant)} redundant index(es)"
        logger.info(f"Index analysis for {resolve_dialect(dialect).value}: {summary}")
        return IndexAnalysis(
            recommendations=ranked,
            existing_indexes=existing,
            redundant_indexes=redundant,
            performance_impact=impact,
            summary=summary,
        )
