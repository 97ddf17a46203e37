"""Tests for captain turn rotation."""
import pytest

from bot.services import captain_turns
from bot.services.state_store import TeamSlot


def slots(*rows):
    """rows: (player_id, team, is_captain, captain_turn)"""
    return [TeamSlot(player_id=p, team=t, is_captain=c, captain_turn=turn) for p, t, c, turn in rows]


def test_team_labels():
    assert captain_turns.team_labels(2) == ["A", "B"]
    assert captain_turns.team_labels(4) == ["A", "B", "C", "D"]
    with pytest.raises(ValueError):
        captain_turns.team_labels(0)


def test_first_turn_goes_to_team_a():
    assignments = slots((1, "A", True, False), (2, "B", True, False))
    assert captain_turns.next_captain_team(assignments, 2, 3) == "A"


def test_turn_passes_round_robin():
    assignments = slots((1, "A", True, True), (2, "B", True, False), (3, "C", True, False))
    assert captain_turns.next_captain_team(assignments, 3, 3) == "B"
    assignments = slots((1, "A", True, False), (2, "B", True, False), (3, "C", True, True))
    assert captain_turns.next_captain_team(assignments, 3, 3) == "A"


def test_full_team_is_skipped():
    assignments = slots(
        (1, "A", True, True),
        (2, "B", True, False),
        (4, "B", False, False),
        (3, "C", True, False),
    )
    assert captain_turns.next_captain_team(assignments, 3, 2) == "C"


def test_team_without_captain_is_skipped():
    assignments = slots((1, "A", True, True), (3, "C", True, False))
    assert captain_turns.next_captain_team(assignments, 3, 2) == "C"


def test_no_turn_when_rosters_full():
    assignments = slots(
        (1, "A", True, True),
        (3, "A", False, False),
        (2, "B", True, False),
        (4, "B", False, False),
    )
    assert captain_turns.next_captain_team(assignments, 2, 2) is None


def test_current_turn_rejects_two_turns():
    with pytest.raises(ValueError):
        captain_turns.current_turn(slots((1, "A", True, True), (2, "B", True, True)))
    assert captain_turns.current_turn(slots((1, "A", True, False))) is None


def test_open_slots_and_last_open_team():
    assignments = slots((1, "A", True, False), (3, "A", False, False), (2, "B", True, False))
    assert captain_turns.open_slots(assignments, 2, 2) == {"A": 0, "B": 1}
    assert captain_turns.last_open_team(assignments, 2, 2) == "B"
    assert captain_turns.last_open_team(assignments[:1], 2, 2) is None
