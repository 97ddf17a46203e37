"""Captain turn rotation for manual picking.

Pure functions over the persisted team assignments of one pickup. Nothing is
cached here: after a restart the next turn is re-derived from storage.

Teams are labelled A, B, C... and take turns in that order. The first turn
goes to team A. After each pick the turn passes to the next team (modulo the
team count) that still has an open roster slot and a captain to act for it.
"""
from __future__ import annotations

import string
from typing import Iterable, Optional, Protocol, Sequence


class Assignment(Protocol):
    team: str
    is_captain: bool
    captain_turn: bool


def team_labels(team_count: int) -> list[str]:
    """Fixed team order: A, B, C, ..."""
    if team_count < 1 or team_count > len(string.ascii_uppercase):
        raise ValueError(f"Unsupported team count: {team_count}")
    return list(string.ascii_uppercase[:team_count])


def roster_counts(assignments: Iterable[Assignment], team_count: int) -> dict[str, int]:
    counts = {label: 0 for label in team_labels(team_count)}
    for a in assignments:
        if a.team in counts:
            counts[a.team] += 1
    return counts


def open_slots(assignments: Sequence[Assignment], team_count: int, team_size: int) -> dict[str, int]:
    """Free roster slots per team."""
    return {
        label: max(team_size - count, 0)
        for label, count in roster_counts(assignments, team_count).items()
    }


def current_turn(assignments: Iterable[Assignment]) -> Optional[str]:
    """Team whose captain holds the turn, or None."""
    turns = [a.team for a in assignments if a.captain_turn]
    if len(turns) > 1:
        raise ValueError("More than one captain holds the turn")
    return turns[0] if turns else None


def next_captain_team(
    assignments: Sequence[Assignment],
    team_count: int,
    team_size: int,
) -> Optional[str]:
    """Team that should pick next, or None when every roster is full."""
    labels = team_labels(team_count)
    slots = open_slots(assignments, team_count, team_size)
    captained = {a.team for a in assignments if a.is_captain}

    def eligible(label: str) -> bool:
        return slots[label] > 0 and label in captained

    turn = current_turn(assignments)
    start = 0 if turn is None else (labels.index(turn) + 1) % team_count
    for offset in range(team_count):
        label = labels[(start + offset) % team_count]
        if eligible(label):
            return label
    return None


def last_open_team(assignments: Sequence[Assignment], team_count: int, team_size: int) -> Optional[str]:
    """The only team with open slots, if exactly one remains (it gets the leftover players)."""
    remaining = [label for label, free in open_slots(assignments, team_count, team_size).items() if free > 0]
    return remaining[0] if len(remaining) == 1 else None
