"""Pickup error taxonomy.

Only StoreFailure and CollaboratorFailure change lifecycle state (they drive
the fallback cascade). DeliveryFailure is logged where it happens and never
propagated.
"""
from __future__ import annotations


class PickupError(Exception):
    """Base class for pickup errors."""


class NotFound(PickupError):
    """Referenced pickup, config or live state does not exist."""


class AlreadyTransitioned(NotFound):
    """Live state is no longer in the stage the caller expected (duplicate trigger, lost race)."""


class AlreadyExists(PickupError):
    """A pickup with that name is already configured in the guild."""


class PickupFull(PickupError):
    """Adding the player(s) would exceed the pickup's player count."""


class InvalidPick(PickupError):
    """Pick rejected: not the captain's turn, or the player cannot be picked."""


class StoreFailure(PickupError):
    """A store transaction could not commit. Nothing was written."""


class CollaboratorFailure(PickupError):
    """A stage collaborator (away check, manual picking, team generator) gave up."""


class DeliveryFailure(PickupError):
    """A channel message or direct message could not be delivered."""
