"""
services/waitlist.py — Waitlist reads, promotion and reorder.

Shared by participation_service (a confirmed rider departs) and ride_service
(max_participants raised or cleared). Both callers load the waitlist before
their first mutation and write every returned row in the same
atomic_multi_write as the ride.

Layer rules:
  - No Flask imports.
  - Mutates the aggregates it is given; never flushes.
"""

from __future__ import annotations

import logging

from backend.app.models.participation import Participation, ParticipationStatus
from backend.app.models.ride import Ride
from backend.app.services.persistence_gateway import PersistenceGateway

logger = logging.getLogger(__name__)


def load_waitlist(ride_id: int, gateway: PersistenceGateway) -> list[Participation]:
    """Waitlisted participations of the ride, in waitlist order."""
    page = gateway.query_by_index(
        Participation,
        {"ride_id": ride_id, "status": ParticipationStatus.WAITLISTED},
        sort_column="waitlist_position",
    )
    waitlisted = [p for p in page.items if p.status == ParticipationStatus.WAITLISTED]
    return sorted(waitlisted, key=lambda p: (p.waitlist_position, p.id))


def reorder(waitlisted: list[Participation]) -> list[Participation]:
    """Renumbers `waitlisted` to 1..N keeping their relative order. Returns the rows."""
    ordered = sorted(waitlisted, key=lambda p: (p.waitlist_position, p.id))
    for position, participation in enumerate(ordered, start=1):
        participation.update_waitlist_position(position)
    return ordered


def promote(ride: Ride, waitlisted: list[Participation], limit: int | None = 1) -> list[Participation]:
    """
    Moves waitlist heads into free confirmed slots, then reorders the rest.

    At most `limit` riders are promoted; None fills every free slot. Returns
    every participation it touched (possibly none).
    """
    remaining = sorted(waitlisted, key=lambda p: (p.waitlist_position, p.id))
    promoted: list[Participation] = []

    while remaining and ride.can_accept_participants():
        if limit is not None and len(promoted) >= limit:
            break
        head = remaining.pop(0)
        head.promote_from_waitlist()
        ride.increment_participants()
        ride.decrement_waitlist()
        promoted.append(head)
        logger.info("Promoted user %s from the waitlist of ride %s", head.user_id, ride.id)

    if not promoted:
        return []
    return promoted + reorder(remaining)
