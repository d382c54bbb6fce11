"""
Candidate pipeline stages and the rules for moving between them.

Moves between open stages are permissive: skipping ahead (Applied -> Offer) and
moving back (Offer -> Screening) are both allowed, and Hired/Rejected can be
reached from any open stage. Hired and Rejected are closed; leaving them needs
an explicit reopen.
"""
from __future__ import annotations

from dataclasses import dataclass

from utils import InvalidStateError, ValidationError


STAGES = ["Applied", "Screening", "Interview", "Offer", "Hired", "Rejected"]
TERMINAL_STAGES = {"Hired", "Rejected"}
OPEN_STAGES = [s for s in STAGES if s not in TERMINAL_STAGES]

DEFAULT_STAGE = "Applied"
DEFAULT_REOPEN_STAGE = "Screening"

_BY_LOWER = {s.lower(): s for s in STAGES}


@dataclass(frozen=True)
class StageChange:
    fromStage: str
    toStage: str
    changed: bool


def normalize_stage(value) -> str | None:
    """Canonical stage name for case-insensitive input, or None if unknown."""
    return _BY_LOWER.get(str(value or "").strip().lower())


def require_stage(value, *, field: str = "stage") -> str:
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(f"Missing {field}")
    stage = normalize_stage(raw)
    if not stage:
        raise ValidationError(f"Invalid {field}: {raw}. Allowed: {', '.join(STAGES)}")
    return stage


def is_terminal(stage: str) -> bool:
    return stage in TERMINAL_STAGES


def validate_transition(current: str, target: str) -> StageChange:
    cur = normalize_stage(current)
    if not cur:
        raise InvalidStateError(f"Candidate has an unknown stage: {current}")
    tgt = require_stage(target)

    if cur == tgt:
        return StageChange(fromStage=cur, toStage=tgt, changed=False)
    if is_terminal(cur):
        raise InvalidStateError(f"Candidate is {cur}; reopen before moving to {tgt}")
    return StageChange(fromStage=cur, toStage=tgt, changed=True)


def validate_reopen(current: str, target: str | None) -> StageChange:
    cur = normalize_stage(current)
    if not cur or not is_terminal(cur):
        raise InvalidStateError(f"Only Hired or Rejected candidates can be reopened (current: {current})")
    tgt = require_stage(target or DEFAULT_REOPEN_STAGE)
    if is_terminal(tgt):
        raise ValidationError(f"Reopen target must be an open stage: {', '.join(OPEN_STAGES)}")
    return StageChange(fromStage=cur, toStage=tgt, changed=True)
