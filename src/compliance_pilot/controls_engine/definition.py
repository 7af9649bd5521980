"""Control definition parser and validator.

Turns raw YAML text into a typed ControlDefinition or raises
InvalidDefinition naming the offending field. Parsing uses ``yaml.safe_load``
exclusively, so tags that would construct arbitrary Python objects are
rejected as syntax errors rather than executed.

Example definition::

    id: SEG-001
    title: Client funds segregation
    dataset: ledger
    frequency: daily
    severity: high
    logic:
      query: |
        SELECT client_id FROM ledger
        WHERE balance < :min_balance
      params:
        min_balance: 0
    pass_condition: result_count = 0
    evidence:
      exports:
        - name: negative_balances
          query: SELECT * FROM ledger WHERE balance < 0

The source format used ``logic.sql`` for the query; both ``logic.query`` and
``logic.sql`` are accepted.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import yaml

from compliance_pilot.controls_engine.pass_condition import PassCondition, parse_pass_condition
from compliance_pilot.errors import InvalidDefinition

# Parameter values are bound as driver parameters, so only scalars are allowed.
_SCALAR_TYPES = (str, int, float, bool, date, datetime)


@dataclass(frozen=True)
class LogicSpec:
    """Core logic of a control: a query template plus named parameters."""

    query: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvidenceExportSpec:
    """One declared evidence export: a named, independent query template."""

    name: str
    query: str


@dataclass(frozen=True)
class ControlDefinition:
    """Parsed and validated control definition.

    Attributes:
        id: Stable identifier; must equal the owning Control's id.
        title: Human-readable title, used in run summaries.
        dataset: Logical dataset reference (the dataset type the logic targets).
        frequency: Scheduling hint (daily, weekly, monthly, on_demand).
        severity: Classification (high, medium, low).
        logic: Query template and parameters.
        pass_condition: Raw pass condition text as authored.
        condition: Parsed pass condition, or None when outside the grammar.
        exports: Evidence exports in declaration order.
    """

    id: str
    title: str
    dataset: str
    logic: LogicSpec
    frequency: str = ""
    severity: str = ""
    pass_condition: str = ""
    condition: PassCondition | None = None
    exports: tuple[EvidenceExportSpec, ...] = ()


def _require_text(document: dict[str, Any], key: str, path: str | None = None) -> str:
    """Return a required, non-empty string field.

    Integers are accepted for identifiers (``id: 101``) and converted to text.
    """
    field_path = path or key
    value = document.get(key)
    if value is None:
        raise InvalidDefinition("required field is missing", field=field_path)
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidDefinition(
            f"expected a string, got {type(value).__name__}", field=field_path
        )
    text = str(value).strip()
    if not text:
        raise InvalidDefinition("required field is empty", field=field_path)
    return text


def _optional_text(document: dict[str, Any], key: str, path: str | None = None) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise InvalidDefinition(
            f"expected a string, got {type(value).__name__}", field=path or key
        )
    return str(value).strip()


def _parse_logic(document: dict[str, Any]) -> LogicSpec:
    logic = document.get("logic")
    if logic is None:
        raise InvalidDefinition("required field is missing", field="logic.query")
    if not isinstance(logic, dict):
        raise InvalidDefinition(
            f"expected a mapping, got {type(logic).__name__}", field="logic"
        )

    query_key = "query" if logic.get("query") is not None else "sql"
    query = _require_text(logic, query_key, path="logic.query")

    params = logic.get("params") or {}
    if not isinstance(params, dict):
        raise InvalidDefinition(
            f"expected a mapping, got {type(params).__name__}", field="logic.params"
        )
    for name, value in params.items():
        if not isinstance(name, str) or not name.isidentifier():
            raise InvalidDefinition(
                f"parameter name {name!r} is not a valid identifier", field="logic.params"
            )
        if value is not None and not isinstance(value, _SCALAR_TYPES):
            raise InvalidDefinition(
                f"expected a scalar value, got {type(value).__name__}",
                field=f"logic.params.{name}",
            )

    return LogicSpec(query=query, params=dict(params))


def _parse_exports(document: dict[str, Any]) -> tuple[EvidenceExportSpec, ...]:
    evidence = document.get("evidence")
    if evidence is None:
        return ()
    if not isinstance(evidence, dict):
        raise InvalidDefinition(
            f"expected a mapping, got {type(evidence).__name__}", field="evidence"
        )

    exports = evidence.get("exports")
    if exports is None:
        return ()
    if not isinstance(exports, list):
        raise InvalidDefinition(
            f"expected a list, got {type(exports).__name__}", field="evidence.exports"
        )

    parsed: list[EvidenceExportSpec] = []
    for index, item in enumerate(exports):
        path = f"evidence.exports[{index}]"
        if not isinstance(item, dict):
            raise InvalidDefinition(
                f"expected a mapping, got {type(item).__name__}", field=path
            )
        parsed.append(
            EvidenceExportSpec(
                name=_require_text(item, "name", path=f"{path}.name"),
                query=_require_text(item, "query", path=f"{path}.query"),
            )
        )
    return tuple(parsed)


def parse_control_definition(text: str) -> ControlDefinition:
    """Parse and validate a control definition.

    Pure function: no I/O, no code execution.

    Args:
        text: Raw YAML definition text.

    Returns:
        The validated ControlDefinition.

    Raises:
        InvalidDefinition: On YAML syntax errors (with line/column), a
            non-mapping document, missing or empty required fields
            (id, title, dataset, logic.query), or type mismatches.
    """
    if not isinstance(text, str) or not text.strip():
        raise InvalidDefinition("definition text is empty")

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        problem = getattr(exc, "problem", None) or str(exc)
        if mark is not None:
            raise InvalidDefinition(
                f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            ) from exc
        raise InvalidDefinition(f"YAML syntax error: {problem}") from exc

    if not isinstance(document, dict):
        raise InvalidDefinition(
            f"definition must be a mapping, got {type(document).__name__}"
        )

    control_id = _require_text(document, "id")
    title = _require_text(document, "title")
    dataset = _require_text(document, "dataset")
    logic = _parse_logic(document)

    raw_condition = document.get("pass_condition")
    if raw_condition is not None and not isinstance(raw_condition, str):
        raise InvalidDefinition(
            f"expected a string, got {type(raw_condition).__name__}", field="pass_condition"
        )

    return ControlDefinition(
        id=control_id,
        title=title,
        dataset=dataset,
        logic=logic,
        frequency=_optional_text(document, "frequency"),
        severity=_optional_text(document, "severity"),
        pass_condition=raw_condition or "",
        condition=parse_pass_condition(raw_condition),
        exports=_parse_exports(document),
    )


def validate_control_definition(
    text: str,
    strict_pass_condition: bool = False,
) -> ControlDefinition:
    """Validate definition text before a Control is created or updated.

    Args:
        text: Raw YAML definition text.
        strict_pass_condition: Also reject a pass_condition outside the
            closed grammar (otherwise it is accepted and fails closed at
            run time).

    Returns:
        The validated ControlDefinition.

    Raises:
        InvalidDefinition: If the definition is invalid.
    """
    definition = parse_control_definition(text)
    if strict_pass_condition and definition.condition is None:
        raise InvalidDefinition(
            "expected 'result_count <op> <integer>' with op one of =, >, <",
            field="pass_condition",
        )
    return definition
