"""
services/authorization_service.py — Ride capability checks (the authorization gate).

Every mutating ride operation passes through require_ride_capability() before
any state changes. The decision is an ordered chain of independent rules;
each rule returns GRANT, DENY or DEFER, and the first non-DEFER answer wins:

  1. platform_override  — system capability manage_all_clubs → GRANT
  2. active_membership  — no membership, or membership not active → DENY
  3. creator_override   — ride creator asking for manage_rides / cancel_rides → GRANT
  4. membership_matrix  — club role's ride capabilities contain it → GRANT, else DENY

A chain that runs out of rules denies.

Failure policy (fail closed):
  If the membership lookup itself fails, the check is treated as a denial and
  the failure is logged with its traceback. A storage outage never grants.

Errors:
  INSUFFICIENT_PRIVILEGES (403) — the caller is known but not allowed.
  401s are the middleware's job and never raised here.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.auth_context import AuthContext
from backend.app.errors import AppError, ErrorCode
from backend.app.models.club_membership import ClubMembership
from backend.app.models.ride import RideScope, RideStatus
from backend.app.services import membership_service
from backend.app.services.capability_resolver import (
    CapabilityResolver,
    RideCapability,
    SystemCapability,
    capability_resolver,
    ride_capabilities_for,
)

logger = logging.getLogger(__name__)

CREATOR_OVERRIDE_CAPABILITIES = frozenset({
    RideCapability.MANAGE_RIDES,
    RideCapability.CANCEL_RIDES,
})


class Decision(enum.Enum):
    GRANT = "grant"
    DENY  = "deny"
    DEFER = "defer"


class AccessRequest:
    """
    One capability question. The membership is looked up lazily, at most
    once, so rules that never need it (platform override) cost no query.
    """

    def __init__(
            self,
            capability: RideCapability,
            auth_context: AuthContext,
            club_id: int,
            session: Session,
            resolver: CapabilityResolver,
            ride_id: int | None = None,
            ride_created_by: str | None = None,
    ) -> None:
        self.capability = RideCapability(capability)
        self.auth_context = auth_context
        self.club_id = club_id
        self.session = session
        self.resolver = resolver
        self.ride_id = ride_id
        self.ride_created_by = ride_created_by
        self._membership: ClubMembership | None = None
        self._membership_loaded = False

    @property
    def membership(self) -> ClubMembership | None:
        if not self._membership_loaded:
            self._membership = _lookup_membership(self.club_id, self.auth_context.user_id, self.session)
            self._membership_loaded = True
        return self._membership

    @property
    def target(self) -> str:
        return _describe_target(self.club_id, self.ride_id)


# ── Rules ──────────────────────────────────────────────────────────────────

def platform_override(req: AccessRequest) -> Decision:
    if req.resolver.has_capability(req.auth_context, SystemCapability.MANAGE_ALL_CLUBS):
        return Decision.GRANT
    return Decision.DEFER


def active_membership(req: AccessRequest) -> Decision:
    membership = req.membership
    if membership is None or not membership.is_active:
        return Decision.DENY
    return Decision.DEFER


def creator_override(req: AccessRequest) -> Decision:
    if (
        req.ride_created_by is not None
        and req.ride_created_by == req.auth_context.user_id
        and req.capability in CREATOR_OVERRIDE_CAPABILITIES
    ):
        return Decision.GRANT
    return Decision.DEFER


def membership_matrix(req: AccessRequest) -> Decision:
    if req.capability in ride_capabilities_for(req.membership.role):
        return Decision.GRANT
    return Decision.DENY


RULE_CHAIN: tuple[Callable[[AccessRequest], Decision], ...] = (
    platform_override,
    active_membership,
    creator_override,
    membership_matrix,
)


def evaluate(req: AccessRequest, rules=RULE_CHAIN) -> tuple[Decision, str | None]:
    """Runs `rules` in order. Returns the decision and the name of the rule that made it."""
    for rule in rules:
        decision = rule(req)
        if decision is not Decision.DEFER:
            return decision, rule.__name__
    return Decision.DENY, None


# ── Public gate functions ──────────────────────────────────────────────────

def check_ride_capability(
        capability: RideCapability,
        auth_context: AuthContext,
        club_id: int,
        session: Session,
        ride_id: int | None = None,
        ride_created_by: str | None = None,
        resolver: CapabilityResolver | None = None,
) -> bool:
    """Same decision as require_ride_capability(), returned as a bool."""
    req = AccessRequest(
        capability,
        auth_context,
        club_id,
        session,
        resolver or capability_resolver,
        ride_id=ride_id,
        ride_created_by=ride_created_by,
    )
    decision, rule = evaluate(req)

    if decision is Decision.GRANT:
        logger.debug(
            "granted %s to user %s for %s (rule=%s)",
            req.capability.value, auth_context.user_id, req.target, rule,
        )
        return True

    logger.info(
        "denied %s to user %s for %s (rule=%s)",
        req.capability.value, auth_context.user_id, req.target, rule,
    )
    return False


def require_ride_capability(
        capability: RideCapability,
        auth_context: AuthContext,
        club_id: int,
        session: Session,
        ride_id: int | None = None,
        ride_created_by: str | None = None,
        resolver: CapabilityResolver | None = None,
) -> None:
    """
    Raises INSUFFICIENT_PRIVILEGES (403) unless the caller holds `capability`
    for `club_id` (or for the specific ride, via the creator override).
    """
    allowed = check_ride_capability(
        capability,
        auth_context,
        club_id,
        session,
        ride_id=ride_id,
        ride_created_by=ride_created_by,
        resolver=resolver,
    )
    if not allowed:
        target = _describe_target(club_id, ride_id)
        raise AppError(
            ErrorCode.INSUFFICIENT_PRIVILEGES,
            f"You do not have the '{RideCapability(capability).value}' capability "
            f"for {target}.",
            403,
        )


def can_view_ride(
        auth_context: AuthContext,
        club_id: int,
        *,
        status: RideStatus,
        scope: RideScope,
        created_by: str,
        is_public: bool,
        session: Session,
        resolver: CapabilityResolver | None = None,
) -> bool:
    """
    Visibility rule:
      - platform override sees everything
      - a public, published ride is visible to anyone
      - otherwise the ride must be club-scoped and the caller an active member
      - drafts are visible only to their creator or holders of view_draft_rides
    """
    resolver = resolver or capability_resolver
    if resolver.has_capability(auth_context, SystemCapability.MANAGE_ALL_CLUBS):
        return True

    if is_public and status == RideStatus.PUBLISHED:
        return True

    if scope != RideScope.CLUB:
        return False

    membership = _lookup_membership(club_id, auth_context.user_id, session)
    if membership is None or not membership.is_active:
        return False

    if status == RideStatus.DRAFT:
        return (
            created_by == auth_context.user_id
            or RideCapability.VIEW_DRAFT_RIDES in ride_capabilities_for(membership.role)
        )

    return True


def can_publish_ride(
        auth_context: AuthContext,
        club_id: int,
        session: Session,
        resolver: CapabilityResolver | None = None,
) -> bool:
    return check_ride_capability(
        RideCapability.PUBLISH_OFFICIAL_RIDES,
        auth_context,
        club_id,
        session,
        resolver=resolver,
    )


def get_user_ride_capabilities(
        auth_context: AuthContext,
        club_id: int,
        session: Session,
        resolver: CapabilityResolver | None = None,
) -> list[str]:
    """Every ride capability the caller holds in `club_id`, sorted by value."""
    resolver = resolver or capability_resolver
    if resolver.has_capability(auth_context, SystemCapability.MANAGE_ALL_CLUBS):
        return sorted(c.value for c in RideCapability)

    membership = _lookup_membership(club_id, auth_context.user_id, session)
    if membership is None or not membership.is_active:
        return []
    return sorted(c.value for c in ride_capabilities_for(membership.role))


# ── Private helpers ────────────────────────────────────────────────────────

def _describe_target(club_id: int, ride_id: int | None) -> str:
    if ride_id is None:
        return f"club {club_id}"
    return f"ride {ride_id} in club {club_id}"


def _lookup_membership(club_id: int, user_id: str, session: Session) -> ClubMembership | None:
    """Membership lookup that fails closed: a storage error reads as 'no membership'."""
    try:
        return membership_service.get_membership(club_id, user_id, session)
    except SQLAlchemyError:
        logger.error(
            "Membership lookup failed for user %s in club %s; denying",
            user_id, club_id,
            exc_info=True,
        )
        return None
