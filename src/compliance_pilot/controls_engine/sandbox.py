"""Query execution sandbox for control logic and evidence exports.

A query template is never executed as authored. The sandbox:

1. Parses the template with sqlglot and rejects anything that is not a
   single read-only query.
2. Rewrites the one logical table reference to the resolved physical
   dataset table on the AST (the original name is kept as the table alias so
   qualified column references still resolve). Only one distinct table
   reference is supported per template; joins across tables are rejected.
3. Wraps the query as ``SELECT * FROM (<query>) LIMIT max_rows + 1`` so the
   row cap is enforced by the database instead of after materialization.
4. Binds ``:name`` placeholders through SQLAlchemy's native bind parameters.
   Only names that appear as placeholders are bound; a placeholder with no
   parameter fails at execution time. A ``:name`` inside a quoted literal or
   quoted identifier is text, not a placeholder, and is escaped as ``\\:``.
5. Executes on the application's own engine (no elevated credentials) under
   a timeout, inside a transaction that is always rolled back. On PostgreSQL
   the transaction is also READ ONLY with a server-side statement_timeout
   set slightly above the client timeout, and a server-side cancellation
   (SQLSTATE 57014) is reported as ExecutionTimeout like a client timeout.

Backing-store errors are wrapped as LogicExecutionFailed and never retried:
a failing control is evidence, and a retry could mask a real breach.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any

import sqlglot
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlglot import exp
from sqlglot.errors import SqlglotError

from compliance_pilot.controls_engine.binding import DatasetBinding
from compliance_pilot.errors import ExecutionTimeout, LogicExecutionFailed, ResultTooLarge
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

# Same placeholder pattern SQLAlchemy's text() construct recognizes.
_PLACEHOLDER_RE = re.compile(r"(?<![:\w\\]):(\w+)(?!:)")

# Quoted string literals and quoted identifiers, with doubled-quote escapes.
_QUOTED = r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\""
_TEMPLATE_TOKEN_RE = re.compile(rf"{_QUOTED}|{_PLACEHOLDER_RE.pattern}")

# Placeholders are parked as plain identifiers while sqlglot owns the AST,
# since named placeholder syntax is not stable across sqlglot dialects.
_SENTINEL_RE = re.compile(rf"{_QUOTED}|__cp_param_(\d+)__")

# Extra server-side allowance so the client timeout fires first.
_SERVER_TIMEOUT_MARGIN_MS = 1000

# PostgreSQL query_canceled, raised when statement_timeout expires.
_QUERY_CANCELED_SQLSTATE = "57014"

# SQLAlchemy dialect name -> sqlglot dialect name
_SQLGLOT_DIALECTS = {
    "postgresql": "postgres",
    "sqlite": "sqlite",
    "mysql": "mysql",
}

_FORBIDDEN_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Drop,
    exp.Create,
    exp.Alter,
    exp.Command,
    exp.Merge,
)

_BOUNDED_ALIAS = "bounded_result"


@dataclass
class QueryResult:
    """Rows returned by one sandboxed query.

    Attributes:
        rows: Result rows as dicts, in database order.
        columns: Column names in result order.
        sql: The SQL actually executed (after rewriting and bounding).
    """

    rows: list[dict[str, Any]]
    columns: list[str] = field(default_factory=list)
    sql: str = ""

    @property
    def row_count(self) -> int:
        return len(self.rows)


def find_placeholders(sql: str) -> set[str]:
    """Return the ``:name`` placeholder names present in a SQL string."""
    return set(_PLACEHOLDER_RE.findall(sql))


class QuerySandbox:
    """Executes control query templates against a bound dataset table.

    Args:
        engine: The application's async engine. The sandbox uses the same
            credentials as every other data access path.
        timeout_seconds: Per-query timeout.
        max_rows: Row cap; more rows raise ResultTooLarge.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        timeout_seconds: float = 30.0,
        max_rows: int = 100_000,
    ) -> None:
        self._engine = engine
        self._timeout_seconds = timeout_seconds
        self._max_rows = max_rows
        self._dialect = _SQLGLOT_DIALECTS.get(engine.dialect.name, "postgres")

    def build_query(self, template: str, table_name: str) -> str:
        """Rewrite a template onto a physical table and apply the row cap.

        Args:
            template: Query template as authored in the control definition.
            table_name: Physical table from the dataset binding.

        Returns:
            Executable SQL text still containing ``:name`` placeholders.

        Raises:
            LogicExecutionFailed: If the template does not parse, is not a
                single read-only query, or references zero or several tables.
        """
        placeholder_names: list[str] = []

        def _park(match: re.Match[str]) -> str:
            if match.group(1) is None:
                return match.group(0)
            placeholder_names.append(match.group(1))
            return f"__cp_param_{len(placeholder_names) - 1}__"

        def _restore(match: re.Match[str]) -> str:
            if match.group(1) is None:
                return _PLACEHOLDER_RE.sub(lambda m: "\\" + m.group(0), match.group(0))
            return f":{placeholder_names[int(match.group(1))]}"

        parked = _TEMPLATE_TOKEN_RE.sub(_park, template)

        try:
            statements = [s for s in sqlglot.parse(parked, read=self._dialect) if s is not None]
        except SqlglotError as exc:
            raise LogicExecutionFailed(f"Query template could not be parsed: {exc}") from exc

        if len(statements) != 1:
            raise LogicExecutionFailed(
                f"Query template must contain exactly one statement, found {len(statements)}"
            )
        expression = statements[0]

        if not isinstance(expression, exp.Query):
            raise LogicExecutionFailed(
                f"Query template must be a read-only SELECT, got {expression.key.upper()}"
            )
        forbidden = next(expression.find_all(*_FORBIDDEN_NODES), None)
        if forbidden is not None:
            raise LogicExecutionFailed(
                f"Query template contains a forbidden {forbidden.key.upper()} clause"
            )

        cte_names = {cte.alias_or_name for cte in expression.find_all(exp.CTE)}
        tables = [
            table
            for table in expression.find_all(exp.Table)
            if not (table.name in cte_names and not table.db)
        ]
        references = {(table.catalog, table.db, table.name) for table in tables}
        if not references:
            raise LogicExecutionFailed("Query template does not reference a dataset table")
        if len(references) > 1:
            names = sorted(".".join(part for part in ref if part) for ref in references)
            raise LogicExecutionFailed(
                f"Query template references more than one table ({', '.join(names)}); "
                "only a single dataset reference is supported"
            )

        for table in tables:
            logical_name = table.name
            table.set("this", exp.to_identifier(table_name))
            table.set("db", None)
            table.set("catalog", None)
            if not table.alias:
                table.set("alias", exp.TableAlias(this=exp.to_identifier(logical_name)))

        bounded = (
            exp.select("*")
            .from_(expression.subquery(_BOUNDED_ALIAS))
            .limit(self._max_rows + 1)
        )
        sql = bounded.sql(dialect=self._dialect)
        return _SENTINEL_RE.sub(_restore, sql)

    async def execute(
        self,
        template: str,
        params: dict[str, Any],
        binding: DatasetBinding,
    ) -> QueryResult:
        """Execute a query template against a bound dataset.

        Args:
            template: Query template from the control definition.
            params: Named parameter values from the definition.
            binding: Resolved, tenant-checked dataset binding.

        Returns:
            The bounded QueryResult.

        Raises:
            ExecutionTimeout: If the query exceeds the timeout.
            ResultTooLarge: If the query returns more than max_rows rows.
            LogicExecutionFailed: On any rewrite or backing-store error.
        """
        sql = self.build_query(template, binding.table_name)
        placeholders = find_placeholders(sql)
        bound_params = {name: value for name, value in params.items() if name in placeholders}

        try:
            async with asyncio.timeout(self._timeout_seconds):
                async with self._engine.connect() as conn:
                    await self._apply_session_limits(conn)
                    result = await conn.execute(text(sql), bound_params)
                    columns = list(result.keys())
                    rows = [dict(row) for row in result.mappings()]
                    await conn.rollback()
        except TimeoutError as exc:
            logger.warning(
                "Sandboxed query timed out",
                table_name=binding.table_name,
                timeout_seconds=self._timeout_seconds,
            )
            raise ExecutionTimeout(self._timeout_seconds) from exc
        except SQLAlchemyError as exc:
            orig = getattr(exc, "orig", None)
            if _is_query_canceled(orig):
                logger.warning(
                    "Sandboxed query cancelled by server timeout",
                    table_name=binding.table_name,
                    timeout_seconds=self._timeout_seconds,
                )
                raise ExecutionTimeout(self._timeout_seconds) from exc
            message = str(orig) if orig is not None else str(exc)
            logger.warning(
                "Sandboxed query failed",
                table_name=binding.table_name,
                error=message,
            )
            raise LogicExecutionFailed(f"Query execution failed: {message}") from exc

        if len(rows) > self._max_rows:
            raise ResultTooLarge(self._max_rows)

        return QueryResult(rows=rows, columns=columns, sql=sql)

    async def _apply_session_limits(self, conn: AsyncConnection) -> None:
        """Make the transaction read-only with a server-side timeout where supported."""
        if conn.dialect.name != "postgresql":
            return
        await conn.execute(text("SET TRANSACTION READ ONLY"))
        await conn.execute(
            text("SELECT set_config('statement_timeout', :timeout_ms, true)"),
            {"timeout_ms": str(self.server_timeout_ms)},
        )

    @property
    def server_timeout_ms(self) -> int:
        """statement_timeout for PostgreSQL, above the client-side timeout."""
        return int(self._timeout_seconds * 1000) + _SERVER_TIMEOUT_MARGIN_MS


def _is_query_canceled(orig: BaseException | None) -> bool:
    # asyncpg exposes sqlstate, psycopg exposes pgcode.
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _QUERY_CANCELED_SQLSTATE
