"""
Router-to-unit identity resolution.

Maps an InControl2 router to a stable unit id, in priority order:

1. An existing binding for the router id.
2. A unit whose display name equals the router name (the match is then
   bound by id, so later renames on either side do not break the link).
3. A synthetic unit id ``-router_id`` for router-only trailers. A synthetic
   binding is provisional: step 2 is retried on every resolution and a
   later exact name match replaces it.

Every new or changed outcome is upserted to the persistence collaborator in
the background; resolving the same router again with the same outcome does
not write. Resolution never raises.

CHANGELOG:
- 2026-03-11: Let a name match replace a synthetic binding (STORY-114)
- 2026-03-06: Add manual linking with last-writer-wins eviction (STORY-109)
- 2026-03-04: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from fleet.src.models import ResolvedIdentity, RouterBinding, RouterDevice
from fleet.src.store import BackgroundWrites, FleetStore

logger = logging.getLogger(__name__)


class IdentityResolver:
    """In-memory router binding map mirrored to persistence.

    Invariants: a router id maps to at most one unit id, and a unit id is
    targeted by at most one router id. Automatic name matching never steals
    a unit already bound to another router; :meth:`link` (an operator action)
    does, evicting the previous router's binding.

    Args:
        store: Persistence collaborator, or None for memory-only operation.
        writes: Background write tracker shared with the rest of the core.
    """

    def __init__(
        self,
        store: FleetStore | None = None,
        writes: BackgroundWrites | None = None,
    ) -> None:
        self._store = store
        self._writes = writes or BackgroundWrites()
        self._bindings: dict[int, RouterBinding] = {}
        self._by_unit: dict[int, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def seed(self, bindings: Iterable[RouterBinding]) -> int:
        """Load persisted bindings at startup without writing them back.

        Later bindings win on unit-id conflicts. Returns the number loaded.
        """
        count = 0
        for binding in bindings:
            self._put(binding)
            count += 1
        return count

    def resolve(
        self,
        router: RouterDevice,
        known_units: Mapping[int, str],
    ) -> ResolvedIdentity:
        """Resolve *router* to a unit id and display name.

        Args:
            router: The router device record.
            known_units: Current ``{unit_id: display_name}`` of the VRM fleet.

        Returns:
            The resolved unit id and the name to display for it.
        """
        existing = self._bindings.get(router.router_id)
        if existing is not None and existing.unit_id != -router.router_id:
            if existing.router_name != router.name:
                self._bind(existing.model_copy(update={"router_name": router.name}))
            return ResolvedIdentity(
                unit_id=existing.unit_id,
                display_name=known_units.get(existing.unit_id) or router.name,
            )

        for unit_id, name in known_units.items():
            if name != router.name:
                continue
            owner = self._by_unit.get(unit_id)
            if owner is not None and owner != router.router_id:
                logger.info(
                    "Router %d name-matches unit %d already bound to router %d",
                    router.router_id,
                    unit_id,
                    owner,
                )
                continue
            self._bind(
                RouterBinding(
                    router_id=router.router_id,
                    unit_id=unit_id,
                    router_name=router.name,
                )
            )
            logger.info(
                "Bound router %d to unit %d by name '%s'",
                router.router_id,
                unit_id,
                router.name,
            )
            return ResolvedIdentity(unit_id=unit_id, display_name=name)

        synthetic = -router.router_id
        if existing is not None:
            if existing.router_name != router.name:
                self._bind(existing.model_copy(update={"router_name": router.name}))
            return ResolvedIdentity(unit_id=synthetic, display_name=router.name)
        self._bind(
            RouterBinding(
                router_id=router.router_id,
                unit_id=synthetic,
                router_name=router.name,
            )
        )
        logger.info(
            "Router %d has no VRM counterpart, using synthetic unit %d",
            router.router_id,
            synthetic,
        )
        return ResolvedIdentity(unit_id=synthetic, display_name=router.name)

    def link(self, router_id: int, unit_id: int, router_name: str) -> RouterBinding:
        """Bind a router to a unit on operator request (last writer wins)."""
        binding = RouterBinding(
            router_id=router_id, unit_id=unit_id, router_name=router_name
        )
        self._bind(binding)
        logger.info("Router %d manually linked to unit %d", router_id, unit_id)
        return binding

    def unit_for(self, router_id: int) -> int | None:
        """Return the bound unit id for a router, if any."""
        binding = self._bindings.get(router_id)
        return binding.unit_id if binding is not None else None

    def router_for(self, unit_id: int) -> int | None:
        """Return the router currently bound to a unit, if any."""
        return self._by_unit.get(unit_id)

    def bindings(self) -> list[RouterBinding]:
        """Return a copy of all current bindings."""
        return list(self._bindings.values())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _put(self, binding: RouterBinding) -> int | None:
        """Store *binding* in memory; returns an evicted router id, if any."""
        previous = self._bindings.get(binding.router_id)
        if previous is not None and self._by_unit.get(previous.unit_id) == binding.router_id:
            del self._by_unit[previous.unit_id]

        evicted = self._by_unit.get(binding.unit_id)
        if evicted is not None and evicted != binding.router_id:
            del self._bindings[evicted]
        else:
            evicted = None

        self._bindings[binding.router_id] = binding
        self._by_unit[binding.unit_id] = binding.router_id
        return evicted

    def _bind(self, binding: RouterBinding) -> None:
        if self._bindings.get(binding.router_id) == binding:
            return
        evicted = self._put(binding)
        if self._store is None:
            return
        if evicted is not None:
            self._writes.spawn(
                self._store.delete_router_binding(evicted),
                f"delete router binding {evicted}",
            )
        self._writes.spawn(
            self._store.upsert_router_binding(binding),
            f"router binding {binding.router_id}->{binding.unit_id}",
        )
