from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Set

from .errors import InvalidTransition

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

_TRANSITIONS: Dict[str, Set[str]] = {
    PENDING: {PROCESSING, FAILED},
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

_TERMINAL_STATES = {COMPLETED, FAILED}


def normalize_job_state(state: object) -> str:
    text = str(state or "").strip().lower()
    return text or PENDING


def is_terminal_job_state(state: object) -> bool:
    return normalize_job_state(state) in _TERMINAL_STATES


def can_transition(current: object, target: object) -> bool:
    return normalize_job_state(target) in _TRANSITIONS.get(normalize_job_state(current), set())


@dataclass
class JobStateMachine:
    state: str

    def __post_init__(self) -> None:
        self.state = normalize_job_state(self.state)
        if self.state not in _TRANSITIONS:
            raise ValueError(f"unknown_job_state:{self.state}")

    def transition(self, next_state: object) -> str:
        target = normalize_job_state(next_state)
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(self.state, target)
        self.state = target
        return self.state


def transition_job_state(current_state: object, target_state: object) -> str:
    return JobStateMachine(normalize_job_state(current_state)).transition(target_state)
