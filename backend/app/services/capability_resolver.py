"""
services/capability_resolver.py — Role → capability matrices and the TTL cache.

Two static matrices, built once at import time and never mutated:

  SYSTEM_CAPABILITIES  SystemRole → frozenset[SystemCapability]
  RIDE_CAPABILITIES    ClubRole   → frozenset[RideCapability]

The club matrix is cumulative: each role holds everything the role below it
holds, plus its own additions. Owner holds every ride capability.

derive_capabilities(auth_context) resolves the platform-wide (system) set and
caches it per (user_id, system_role) for CAPABILITY_CACHE_TTL_SECONDS. The
cache is a plain dict with an explicit sweep; there is no background timer.
A cache miss triggers the sweep, at most once per TTL window.
Ride-scoped checks do not go through the cache: they look up the caller's
club role in RIDE_CAPABILITIES directly (see authorization_service.py).

Layer rules:
  - No Flask imports at module level. init_app() only reads app.config.
  - No database access.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable

from backend.app.auth_context import AuthContext, SystemRole
from backend.app.models.club_membership import ClubRole

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class SystemCapability(str, enum.Enum):
    MANAGE_PLATFORM  = "manage_platform"
    MANAGE_ALL_CLUBS = "manage_all_clubs"


class RideCapability(str, enum.Enum):
    VIEW_CLUB_RIDES        = "view_club_rides"
    JOIN_RIDES             = "join_rides"
    CREATE_RIDE_PROPOSALS  = "create_ride_proposals"
    VIEW_DRAFT_RIDES       = "view_draft_rides"
    PUBLISH_OFFICIAL_RIDES = "publish_official_rides"
    MANAGE_PARTICIPANTS    = "manage_participants"
    MANAGE_RIDES           = "manage_rides"
    CANCEL_RIDES           = "cancel_rides"
    ASSIGN_LEADERSHIP      = "assign_leadership"


# ── Static matrices ────────────────────────────────────────────────────────

SYSTEM_CAPABILITIES: MappingProxyType = MappingProxyType({
    SystemRole.USER:       frozenset(),
    SystemRole.SITE_ADMIN: frozenset({
        SystemCapability.MANAGE_PLATFORM,
        SystemCapability.MANAGE_ALL_CLUBS,
    }),
})

_MEMBER = frozenset({
    RideCapability.VIEW_CLUB_RIDES,
    RideCapability.JOIN_RIDES,
    RideCapability.CREATE_RIDE_PROPOSALS,
})
_CAPTAIN = _MEMBER | {
    RideCapability.VIEW_DRAFT_RIDES,
    RideCapability.PUBLISH_OFFICIAL_RIDES,
    RideCapability.MANAGE_PARTICIPANTS,
}
_ADMIN = _CAPTAIN | {
    RideCapability.MANAGE_RIDES,
    RideCapability.CANCEL_RIDES,
    RideCapability.ASSIGN_LEADERSHIP,
}

RIDE_CAPABILITIES: MappingProxyType = MappingProxyType({
    ClubRole.MEMBER:  _MEMBER,
    ClubRole.CAPTAIN: _CAPTAIN,
    ClubRole.ADMIN:   _ADMIN,
    ClubRole.OWNER:   frozenset(RideCapability),
})


def ride_capabilities_for(role: ClubRole | str | None) -> frozenset:
    """Looks up the club matrix. Unknown or missing roles get no capabilities."""
    if role is None:
        return frozenset()
    try:
        return RIDE_CAPABILITIES[ClubRole(role)]
    except ValueError:
        logger.warning("Unknown club role %r; granting no ride capabilities", role)
        return frozenset()


# ── TTL cache ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _CacheEntry:
    capabilities: frozenset
    expires_at: float


class CapabilityResolver:
    """
    Resolves system capabilities with a short-lived per-user cache.

    Follows the Flask extension pattern: create once at module level, bind
    to an app with init_app() to pick up CAPABILITY_CACHE_TTL_SECONDS.
    `clock` is injectable so tests can move time without sleeping.
    """

    def __init__(
            self,
            ttl_seconds: int = DEFAULT_TTL_SECONDS,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[tuple[str, str], _CacheEntry] = {}
        self._next_sweep_at = 0.0

    def init_app(self, app) -> None:
        self.ttl_seconds = int(app.config.get("CAPABILITY_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        self.clear()
        app.extensions["capability_resolver"] = self

    def derive_capabilities(self, auth_context: AuthContext) -> frozenset:
        """Returns the caller's system capabilities, from cache when fresh."""
        role = auth_context.system_role
        key = (auth_context.user_id, getattr(role, "value", str(role)))
        now = self._clock()

        entry = self._cache.get(key)
        if entry is not None and entry.expires_at > now:
            logger.debug("Capability cache hit for %s", key)
            return entry.capabilities

        logger.debug("Capability cache miss for %s", key)
        # At most one sweep per TTL window, run on the write path.
        if now >= self._next_sweep_at:
            self.sweep_expired()
            self._next_sweep_at = now + self.ttl_seconds
        capabilities = self._system_capabilities(auth_context.system_role)
        self._cache[key] = _CacheEntry(capabilities, now + self.ttl_seconds)
        return capabilities

    def has_capability(self, auth_context: AuthContext, capability: SystemCapability) -> bool:
        return capability in self.derive_capabilities(auth_context)

    def sweep_expired(self) -> int:
        """Drops expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if entry.expires_at <= now]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Swept %d expired capability cache entries", len(expired))
        return len(expired)

    def clear_user_cache(self, user_id: str) -> int:
        """Evicts every entry for `user_id`, e.g. after a role change."""
        keys = [key for key in self._cache if key[0] == user_id]
        for key in keys:
            del self._cache[key]
        logger.debug("Evicted %d capability cache entries for user %s", len(keys), user_id)
        return len(keys)

    def clear(self) -> None:
        self._cache.clear()
        self._next_sweep_at = 0.0

    def cache_stats(self) -> dict:
        now = self._clock()
        expired = sum(1 for entry in self._cache.values() if entry.expires_at <= now)
        return {
            "size": len(self._cache),
            "expired": expired,
            "ttl_seconds": self.ttl_seconds,
        }

    @staticmethod
    def _system_capabilities(system_role) -> frozenset:
        try:
            return SYSTEM_CAPABILITIES[SystemRole(system_role)]
        except ValueError:
            logger.warning("Unknown system role %r; granting no system capabilities", system_role)
            return frozenset()


capability_resolver = CapabilityResolver()
