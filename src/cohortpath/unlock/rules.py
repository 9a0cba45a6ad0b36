"""Week unlock rule document and the typed rules compiled from it.

A week stores its rules as a small JSON document::

    {"min_coins": 100,
     "min_previous_week_progress": 80,
     "required_completions": [{"type": "topics", "count": 2, "week_number": 1}]}

``compile_rules`` turns that document (plus the week's drip schedule) into a
list of rule objects the evaluator interprets one by one.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cohortpath.tracking.counters import ActivityType

logger = logging.getLogger(__name__)


class MinCoinsRule(BaseModel):
    kind: Literal["min_coins"] = "min_coins"
    amount: int = Field(ge=0)


class MinPreviousWeekProgressRule(BaseModel):
    kind: Literal["min_previous_week_progress"] = "min_previous_week_progress"
    percentage: float = Field(ge=0, le=100)


class RequiredCompletionRule(BaseModel):
    kind: Literal["required_completion"] = "required_completion"
    type: ActivityType
    count: int = Field(default=1, ge=0)
    week_number: int | None = None


class DripScheduleRule(BaseModel):
    """Week opens ``days`` days after the cohort start date."""

    kind: Literal["drip_schedule"] = "drip_schedule"
    days: int = Field(ge=0)


UnlockRule = Annotated[
    Union[MinCoinsRule, MinPreviousWeekProgressRule, RequiredCompletionRule, DripScheduleRule],
    Field(discriminator="kind"),
]


class UnlockRuleDocument(BaseModel):
    """The stored ``Week.unlock_rules`` document."""

    model_config = ConfigDict(extra="ignore")

    min_coins: int | None = Field(default=None, ge=0)
    min_previous_week_progress: float | None = Field(default=None, ge=0, le=100)
    required_completions: list[RequiredCompletionRule] = Field(default_factory=list)

    @field_validator("required_completions", mode="before")
    @classmethod
    def drop_unknown_types(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        known = {activity.value for activity in ActivityType}
        kept = []
        for entry in value:
            if isinstance(entry, dict) and entry.get("type") not in known:
                logger.warning("Ignoring unlock requirement with unknown type %r", entry.get("type"))
                continue
            kept.append(entry)
        return kept


def parse_rule_document(raw: dict[str, Any] | None) -> UnlockRuleDocument:
    return UnlockRuleDocument.model_validate(raw or {})


def compile_rules(
    raw: dict[str, Any] | None,
    *,
    week_number: int,
    drip_days: int = 0,
    default_previous_week_progress: float = 100.0,
) -> list[UnlockRule]:
    """Typed rules for a week, in evaluation order. Week 0 has none."""
    if week_number == 0:
        return []

    document = parse_rule_document(raw)
    rules: list[UnlockRule] = []

    threshold = document.min_previous_week_progress
    if threshold is None:
        threshold = default_previous_week_progress
    rules.append(MinPreviousWeekProgressRule(percentage=threshold))

    if document.min_coins is not None:
        rules.append(MinCoinsRule(amount=document.min_coins))

    rules.extend(document.required_completions)

    if drip_days > 0:
        rules.append(DripScheduleRule(days=drip_days))
    return rules
