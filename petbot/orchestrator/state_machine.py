"""
Status model shared by the trade and custody flows.

Each flow is an ordered happy path plus an absorbing `failed` status. Normal
progress (timers, platform confirmations) goes through `advance`, which only
moves forward. Manual operations (resend friend request, execute now) go
through `force`, which may skip or repeat steps but never leaves a terminal status.
"""

from __future__ import annotations

from petbot.domain.models import CUSTODY, TRADE

FAILED = "failed"

TRADE_FLOW: tuple[str, ...] = (
    "pending",
    "friend_request_sent",
    "friend_accepted",
    "in_game",
    "trading",
    "completed",
)

CUSTODY_FLOW: tuple[str, ...] = (
    "pending",
    "friend_request_sent",
    "friend_accepted",
    "pet_received",
    "custody_complete",
)

_FLOWS = {TRADE: TRADE_FLOW, CUSTODY: CUSTODY_FLOW}

# Status -> client UI step.
_UI_STEPS = {
    TRADE: {
        "pending": "processing",
        "friend_request_sent": "friend_request",
        "friend_accepted": "join_game",
        "in_game": "trading",
        "trading": "trading",
        "completed": "complete",
        FAILED: "error",
    },
    CUSTODY: {
        "pending": "processing",
        "friend_request_sent": "friend_request",
        "friend_accepted": "trade_pet",
        "pet_received": "verifying",
        "custody_complete": "complete",
        FAILED: "error",
    },
}


class InvalidTransition(Exception):
    """Raised when a status change is not allowed for the flow."""


def flow(kind: str) -> tuple[str, ...]:
    try:
        return _FLOWS[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown request kind: {kind}") from exc


def statuses(kind: str) -> tuple[str, ...]:
    return (*flow(kind), FAILED)


def is_terminal(kind: str, status: str) -> bool:
    return status == FAILED or status == flow(kind)[-1]


def rank(kind: str, status: str) -> int:
    """Position on the happy path; `failed` ranks after everything."""
    steps = flow(kind)
    if status == FAILED:
        return len(steps)
    try:
        return steps.index(status)
    except ValueError as exc:
        raise InvalidTransition(f"Unknown {kind} status: {status}") from exc


def has_reached(kind: str, status: str, milestone: str) -> bool:
    """True when `status` is at or past `milestone` on the happy path."""
    if status == FAILED:
        return False
    return rank(kind, status) >= rank(kind, milestone)


def _check_known(kind: str, target: str) -> None:
    if target not in statuses(kind):
        raise InvalidTransition(f"Unknown {kind} status: {target}")


def advance(kind: str, current: str, target: str) -> str:
    """Validate a normal forward transition and return the new status."""
    _check_known(kind, target)
    if is_terminal(kind, current):
        raise InvalidTransition(f"{kind} is already {current}; cannot move to {target}")
    if target == FAILED:
        return target
    if rank(kind, target) <= rank(kind, current):
        raise InvalidTransition(f"{kind} cannot go from {current} back to {target}")
    return target


def force(kind: str, current: str, target: str) -> str:
    """Validate a manual transition; any non-terminal status may be set."""
    _check_known(kind, target)
    if is_terminal(kind, current):
        raise InvalidTransition(f"{kind} is already {current}; cannot move to {target}")
    return target


def ui_step(kind: str, status: str) -> str:
    return _UI_STEPS[kind].get(status, "processing")
