"""Compliance control execution engine.

Modules:
- definition: YAML control definition parser and validator
- pass_condition: closed pass-condition grammar and evaluator
- binding: dataset id to physical table resolution
- sandbox: parameterized, bounded query execution
- evidence: CSV evidence exports and the aggregate evidence hash
- lifecycle: run status state machine
- engine: orchestration of a single control run
"""

from __future__ import annotations

from compliance_pilot.controls_engine.binding import DatasetBinding, DatasetBindingResolver
from compliance_pilot.controls_engine.definition import (
    ControlDefinition,
    parse_control_definition,
    validate_control_definition,
)
from compliance_pilot.controls_engine.engine import ControlsEngine
from compliance_pilot.controls_engine.evidence import EvidenceGenerator, compute_evidence_hash
from compliance_pilot.controls_engine.lifecycle import RunLifecycle, RunStatus
from compliance_pilot.controls_engine.pass_condition import (
    PassCondition,
    evaluate_pass_condition,
    parse_pass_condition,
)
from compliance_pilot.controls_engine.sandbox import QuerySandbox

__all__ = [
    "ControlDefinition",
    "ControlsEngine",
    "DatasetBinding",
    "DatasetBindingResolver",
    "EvidenceGenerator",
    "PassCondition",
    "QuerySandbox",
    "RunLifecycle",
    "RunStatus",
    "compute_evidence_hash",
    "evaluate_pass_condition",
    "parse_control_definition",
    "parse_pass_condition",
    "validate_control_definition",
]
