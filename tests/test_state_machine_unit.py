import pytest

from petbot.orchestrator import state_machine
from petbot.orchestrator.state_machine import InvalidTransition


def test_trade_flow_order():
    assert state_machine.flow("trade") == (
        "pending",
        "friend_request_sent",
        "friend_accepted",
        "in_game",
        "trading",
        "completed",
    )
    assert state_machine.statuses("trade")[-1] == "failed"


def test_custody_flow_order():
    assert state_machine.flow("custody")[-2:] == ("pet_received", "custody_complete")


def test_unknown_kind_rejected():
    with pytest.raises(ValueError, match="Unknown request kind"):
        state_machine.flow("swap")


def test_advance_moves_forward_and_may_skip():
    assert state_machine.advance("trade", "pending", "friend_request_sent") == "friend_request_sent"
    assert state_machine.advance("trade", "friend_accepted", "trading") == "trading"


def test_advance_rejects_backwards_and_repeats():
    with pytest.raises(InvalidTransition):
        state_machine.advance("trade", "friend_accepted", "friend_request_sent")
    with pytest.raises(InvalidTransition):
        state_machine.advance("custody", "pet_received", "pet_received")


def test_failed_reachable_from_any_open_status():
    for status in state_machine.flow("custody")[:-1]:
        assert state_machine.advance("custody", status, "failed") == "failed"


def test_terminal_statuses_are_absorbing():
    for terminal in ("completed", "failed"):
        with pytest.raises(InvalidTransition):
            state_machine.advance("trade", terminal, "failed")
        with pytest.raises(InvalidTransition):
            state_machine.force("trade", terminal, "friend_request_sent")


def test_force_allows_repeat_and_backwards():
    assert state_machine.force("trade", "friend_accepted", "friend_request_sent") == "friend_request_sent"
    assert state_machine.force("trade", "pending", "completed") == "completed"


def test_status_from_other_flow_rejected():
    with pytest.raises(InvalidTransition, match="Unknown trade status"):
        state_machine.advance("trade", "pending", "pet_received")
    with pytest.raises(InvalidTransition):
        state_machine.force("custody", "pending", "in_game")


def test_has_reached():
    assert state_machine.has_reached("trade", "in_game", "friend_accepted")
    assert not state_machine.has_reached("trade", "friend_request_sent", "friend_accepted")
    assert not state_machine.has_reached("trade", "failed", "friend_accepted")


def test_ui_steps():
    assert state_machine.ui_step("trade", "friend_accepted") == "join_game"
    assert state_machine.ui_step("trade", "in_game") == "trading"
    assert state_machine.ui_step("trade", "trading") == "trading"
    assert state_machine.ui_step("custody", "custody_complete") == "complete"
    assert state_machine.ui_step("custody", "failed") == "error"
    assert state_machine.ui_step("trade", "something-new") == "processing"
