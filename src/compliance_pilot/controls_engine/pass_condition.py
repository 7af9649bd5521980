"""Closed-grammar pass conditions for control definitions.

A pass condition is a single comparison between the reserved token
``result_count`` and an integer literal, using one of ``=``, ``>`` or ``<``.
Either operand order is accepted::

    result_count = 0
    result_count > 10
    5 > result_count      (normalized to result_count < 5)

The condition is parsed once into a PassCondition and evaluated with integer
arithmetic. Anything outside the grammar parses to None and evaluates to
False: an unparseable condition never reports a pass.
"""

import enum
import re
from dataclasses import dataclass

from compliance_pilot.observability import get_logger

logger = get_logger(__name__)

RESULT_COUNT_TOKEN = "result_count"

_OPERAND = rf"(?:{RESULT_COUNT_TOKEN}|[+-]?\d+)"
_CONDITION_RE = re.compile(rf"^\s*({_OPERAND})\s*(=|<|>)\s*({_OPERAND})\s*$")


class Comparison(str, enum.Enum):
    """Comparison operator of a pass condition, always read as ``result_count <op> threshold``."""

    EQ = "="
    GT = ">"
    LT = "<"

    def mirrored(self) -> "Comparison":
        """Return the operator with operands swapped (``5 > x`` is ``x < 5``)."""
        if self is Comparison.GT:
            return Comparison.LT
        if self is Comparison.LT:
            return Comparison.GT
        return self


@dataclass(frozen=True)
class PassCondition:
    """Parsed pass condition: ``result_count <comparison> threshold``.

    Attributes:
        comparison: EQ, GT or LT.
        threshold: Integer literal compared against the result count.
    """

    comparison: Comparison
    threshold: int

    def evaluate(self, result_count: int) -> bool:
        """Apply the condition to an actual row count."""
        if self.comparison is Comparison.EQ:
            return result_count == self.threshold
        if self.comparison is Comparison.GT:
            return result_count > self.threshold
        return result_count < self.threshold

    def __str__(self) -> str:
        return f"{RESULT_COUNT_TOKEN} {self.comparison.value} {self.threshold}"


def parse_pass_condition(text: str | None) -> PassCondition | None:
    """Parse a pass condition string into a PassCondition.

    Args:
        text: Raw condition from the control definition.

    Returns:
        The parsed PassCondition, or None when the text is outside the
        closed grammar (including missing, empty, or comparing two literals
        or two ``result_count`` tokens).
    """
    if not isinstance(text, str):
        return None

    match = _CONDITION_RE.match(text)
    if match is None:
        return None

    left, operator, right = match.groups()
    comparison = Comparison(operator)

    if left == RESULT_COUNT_TOKEN and right != RESULT_COUNT_TOKEN:
        return PassCondition(comparison=comparison, threshold=int(right))
    if right == RESULT_COUNT_TOKEN and left != RESULT_COUNT_TOKEN:
        return PassCondition(comparison=comparison.mirrored(), threshold=int(left))
    return None


def evaluate_pass_condition(
    condition: PassCondition | None,
    result_count: int,
    raw_condition: str | None = None,
) -> bool:
    """Decide pass/fail for a result count.

    Args:
        condition: Parsed condition, or None if the raw text did not parse.
        result_count: Rows returned by the control's logic query.
        raw_condition: Original text, used only for logging.

    Returns:
        True only when a parsed condition holds for ``result_count``.
    """
    if condition is None:
        logger.warning(
            "Pass condition outside supported grammar, evaluating as failed",
            pass_condition=raw_condition,
            result_count=result_count,
        )
        return False
    return condition.evaluate(result_count)
