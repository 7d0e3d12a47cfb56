"""Stage trigger evaluation.

Given a stage, a card and the mutation that just happened to the card,
decide which workflow templates should fire. Evaluation is pure: it reads
the stage and card and never dispatches anything itself.
"""

from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass

from pydantic import JsonValue

from ..errors import ConfigurationError
from .models import (
    AttributeChangeCondition,
    ComparisonOperator,
    KanbanCard,
    KanbanStage,
    StageEntryCondition,
    TriggerCondition,
)

logger = logging.getLogger(__name__)

# Plain decimal notation only; rejects "1_000", "inf" and "nan".
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

_NUMERIC = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LTE: operator.le,
    ComparisonOperator.EQ: operator.eq,
    ComparisonOperator.NE: operator.ne,
}


@dataclass(frozen=True, slots=True)
class StageEntry:
    """The card has just been placed in the stage (created or moved in)."""

    from_stage_id: str | None = None


@dataclass(frozen=True, slots=True)
class AttributeChange:
    """One custom field of the card changed value."""

    field_name: str
    old_value: JsonValue = None
    new_value: JsonValue = None


Mutation = StageEntry | AttributeChange


@dataclass(frozen=True, slots=True)
class TriggerEvaluation:
    template_ids: tuple[str, ...] = ()
    errors: tuple[ConfigurationError, ...] = ()


def as_number(value: JsonValue) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER_RE.fullmatch(text):
            return None
        number = float(text)
    else:
        return None
    return number if math.isfinite(number) else None


def _as_text(value: JsonValue) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def compare(left: JsonValue, op: ComparisonOperator, right: JsonValue) -> bool:
    """Compare a card value against a condition threshold.

    Numeric when both sides parse as numbers, otherwise string equality for
    ``=`` and ``!=``. An ordering operator on non-numeric operands raises
    :class:`ConfigurationError`; a missing card value never matches one.
    """

    lnum, rnum = as_number(left), as_number(right)
    if lnum is not None and rnum is not None:
        return _NUMERIC[op](lnum, rnum)

    if op is ComparisonOperator.EQ:
        return _as_text(left) == _as_text(right)
    if op is ComparisonOperator.NE:
        return _as_text(left) != _as_text(right)

    if left is None:
        return False
    raise ConfigurationError(
        f"Operator {op.value!r} needs numeric operands, got {left!r} and {right!r}",
        details={"operator": op.value, "left": left, "right": right},
    )


def _condition_matches(condition: TriggerCondition, card: KanbanCard, mutation: Mutation) -> bool:
    if isinstance(mutation, StageEntry):
        if isinstance(condition, StageEntryCondition):
            return True
        # Threshold conditions on entry are checked against the card as it lands.
        return compare(
            card.custom_fields.get(condition.field_name),
            condition.operator,
            condition.field_value,
        )

    if not isinstance(condition, AttributeChangeCondition):
        return False
    if condition.field_name != mutation.field_name:
        return False
    return compare(mutation.new_value, condition.operator, condition.field_value)


def evaluate_detailed(
    stage: KanbanStage, card: KanbanCard, mutation: Mutation
) -> TriggerEvaluation:
    """Matched template ids plus any misconfigured conditions encountered.

    A trigger fires when any one of its conditions matches; a trigger with no
    conditions behaves like a single ``stage_entry`` condition. Each template
    appears at most once, in declaration order.
    """

    matched: list[str] = []
    errors: list[ConfigurationError] = []

    for trigger in stage.effective_triggers():
        if trigger.template_id in matched:
            continue
        conditions = trigger.conditions or [StageEntryCondition()]
        for condition in conditions:
            try:
                hit = _condition_matches(condition, card, mutation)
            except ConfigurationError as e:
                errors.append(
                    ConfigurationError(
                        e.message,
                        details={
                            **e.details,
                            "stage_id": stage.id,
                            "template_id": trigger.template_id,
                        },
                    )
                )
                continue
            if hit:
                matched.append(trigger.template_id)
                break

    return TriggerEvaluation(template_ids=tuple(matched), errors=tuple(errors))


def evaluate(stage: KanbanStage, card: KanbanCard, mutation: Mutation) -> list[str]:
    """Template ids to dispatch for ``mutation``. Never raises on bad config."""

    result = evaluate_detailed(stage, card, mutation)
    for error in result.errors:
        logger.warning(
            "Skipping misconfigured trigger condition: %s",
            error.message,
            extra={"card_id": card.id, **error.details},
        )
    return list(result.template_ids)
