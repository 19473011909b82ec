"""Transition matching rules."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from uuid import UUID

from ..domain_errors import AmbiguousTransition

_NUMERIC_CONDITION_RE = re.compile(r"^(>=|<=|>|<|=)\s*(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class TransitionDecision:
    fires: bool
    target_stage_id: UUID | None = None
    requires_override: bool = False
    transition_id: UUID | None = None
    override_candidates: tuple[UUID, ...] = field(default_factory=tuple)


def condition_matches(condition: str | None, value: str) -> bool:
    """Match an answer against a trigger condition.

    Empty condition matches any answer, ">=90" style conditions compare
    numerically, everything else is case-insensitive equality.
    """
    cond = (condition or "").strip()
    if not cond:
        return True

    numeric = _NUMERIC_CONDITION_RE.match(cond)
    if numeric:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return False
        op, threshold = numeric.group(1), float(numeric.group(2))
        if op == ">=":
            return number >= threshold
        if op == ">":
            return number > threshold
        if op == "<=":
            return number <= threshold
        if op == "<":
            return number < threshold
        return number == threshold

    return cond.casefold() == (value or "").strip().casefold()


def _fires_automatically(transition) -> bool:
    return bool(transition.is_automatic) and not transition.requires_override


def resolve_transition(transitions: list, value: str) -> TransitionDecision:
    """Pick the rule fired by this answer among the stage/question candidates.

    Raises AmbiguousTransition when automatic rules disagree on the target.
    """
    matched = [t for t in transitions if condition_matches(t.trigger_condition, value)]
    if not matched:
        return TransitionDecision(fires=False)

    automatic = [t for t in matched if _fires_automatically(t)]
    targets = {t.to_stage_id for t in automatic}
    if len(targets) > 1:
        raise AmbiguousTransition(
            "More than one automatic transition matched this answer",
            transition_ids=sorted(str(t.id) for t in automatic),
        )
    if automatic:
        chosen = automatic[0]
        return TransitionDecision(
            fires=True,
            target_stage_id=chosen.to_stage_id,
            transition_id=chosen.id,
        )

    return TransitionDecision(
        fires=False,
        requires_override=True,
        override_candidates=tuple(t.to_stage_id for t in matched),
    )
