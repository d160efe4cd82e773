"""
GPS proximity clustering of trailers into job-site locations.

``cluster_units`` is single-linkage (transitive closure) clustering: a unit
joins a cluster when it is within the threshold of *any* current member, so
two units farther apart than the threshold can still share a cluster through
a third unit between them.

``LocationClusterer.run`` reconciles the clusters with persisted locations:

- units with a manual override are never reclustered;
- each cluster is matched to the persisted location sharing the most member
  units (ties go to the lowest location id);
- unmatched clusters become new locations named by reverse geocoding the
  centroid, with a ``" #N"`` suffix on name collisions, and a fixed delay
  after each geocode call;
- every clustered unit's assignment is persisted.

CHANGELOG:
- 2026-03-06: Update matched location centroids (STORY-109)
- 2026-03-05: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from fleet.src.geo import haversine_m
from fleet.src.geocoder import ReverseGeocoder
from fleet.src.models import ClusterResult, GpsUnit, LocationCluster, PersistedLocation
from fleet.src.store import FleetStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_M: float = 300.0
DEFAULT_GEOCODE_DELAY_S: float = 1.1


# ---------------------------------------------------------------------------
# Pure clustering
# ---------------------------------------------------------------------------


def cluster_units(
    units: Sequence[GpsUnit], threshold_m: float = DEFAULT_THRESHOLD_M
) -> list[LocationCluster]:
    """Group units whose GPS points are linked by chains of short hops.

    Args:
        units: Units with GPS positions, in the order clusters are seeded.
        threshold_m: Maximum hop distance in meters (exclusive).

    Returns:
        Clusters with arithmetic-mean centroids, in seed order.
    """
    assigned: set[int] = set()
    groups: list[list[GpsUnit]] = []

    for seed in units:
        if seed.unit_id in assigned:
            continue
        members = [seed]
        assigned.add(seed.unit_id)

        changed = True
        while changed:
            changed = False
            for other in units:
                if other.unit_id in assigned:
                    continue
                if any(
                    haversine_m(m.latitude, m.longitude, other.latitude, other.longitude)
                    < threshold_m
                    for m in members
                ):
                    members.append(other)
                    assigned.add(other.unit_id)
                    changed = True

        groups.append(members)

    return [
        LocationCluster(
            centroid_lat=sum(u.latitude for u in members) / len(members),
            centroid_lng=sum(u.longitude for u in members) / len(members),
            units=members,
        )
        for members in groups
    ]


def best_overlap(
    member_ids: set[int], existing: dict[int, set[int]]
) -> int | None:
    """Return the location id sharing the most members, or None.

    Ties are broken by the lowest location id.
    """
    best_id: int | None = None
    best_count = 0
    for location_id in sorted(existing):
        count = len(member_ids & existing[location_id])
        if count > best_count:
            best_id, best_count = location_id, count
    return best_id


def unique_name(base: str, taken: Sequence[str]) -> str:
    """Return *base*, or ``"base #N"`` when it collides with *taken*."""
    related = [n for n in taken if n == base or n.startswith(base + " #")]
    if not related:
        return base
    counter = len(related) + 1
    name = f"{base} #{counter}"
    while name in taken:
        counter += 1
        name = f"{base} #{counter}"
    return name


# ---------------------------------------------------------------------------
# Reconciliation with persisted locations
# ---------------------------------------------------------------------------


class LocationClusterer:
    """Clusters GPS-equipped units and reconciles with persisted locations.

    Args:
        store: Persistence collaborator holding locations and assignments.
        geocoder: Reverse geocoder for naming new locations, or None.
        geocode_delay_s: Pause after each geocode call (provider policy).
        sleep: Awaitable sleep function; injectable for tests.
    """

    def __init__(
        self,
        store: FleetStore,
        geocoder: ReverseGeocoder | None = None,
        *,
        geocode_delay_s: float = DEFAULT_GEOCODE_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._geocoder = geocoder
        self._geocode_delay_s = geocode_delay_s
        self._sleep = sleep

    async def run(
        self,
        threshold_m: float = DEFAULT_THRESHOLD_M,
        units: Sequence[GpsUnit] | None = None,
    ) -> ClusterResult:
        """Cluster units and persist their location assignments.

        Args:
            threshold_m: Linkage distance in meters.
            units: Units to cluster; loaded from the store when omitted.

        Returns:
            The clusters with their assigned locations and counts.
        """
        if units is None:
            units = await self._store.get_units_with_gps()
        candidates = [u for u in units if not u.manual_override]
        if not candidates:
            logger.info("Clustering: no units with GPS data yet")
            return ClusterResult()

        clusters = cluster_units(candidates, threshold_m)

        locations = await self._store.get_locations()
        existing: dict[int, set[int]] = {}
        for location in locations:
            existing[location.id] = await self._store.get_location_members(location.id)
        names = [location.name for location in locations]
        by_id = {location.id: location for location in locations}

        created = 0
        updated = 0
        for cluster in clusters:
            member_ids = {u.unit_id for u in cluster.units}
            match = best_overlap(member_ids, existing)

            if match is not None:
                await self._store.update_location_centroid(
                    match, cluster.centroid_lat, cluster.centroid_lng
                )
                cluster.location_id = match
                cluster.location_name = by_id[match].name
                updated += 1
            else:
                location = await self._create_location(
                    cluster, names, fallback_index=len(locations) + created + 1
                )
                names.append(location.name)
                by_id[location.id] = location
                cluster.location_id = location.id
                cluster.location_name = location.name
                cluster.is_new = True
                created += 1

            for unit in cluster.units:
                await self._store.upsert_unit_assignment(
                    unit.unit_id,
                    unit.unit_name,
                    unit.latitude,
                    unit.longitude,
                    cluster.location_id,
                )

        total = sum(len(c.units) for c in clusters)
        logger.info(
            "Clustering complete: %d locations (%d new, %d matched), %d units assigned",
            len(clusters),
            created,
            updated,
            total,
        )
        return ClusterResult(
            locations=clusters, created=created, updated=updated, total_assigned=total
        )

    async def _create_location(
        self,
        cluster: LocationCluster,
        taken: list[str],
        *,
        fallback_index: int,
    ) -> PersistedLocation:
        base = f"Site {fallback_index}"
        address = None
        if self._geocoder is not None:
            geo = await self._geocoder.reverse(cluster.centroid_lat, cluster.centroid_lng)
            if geo is not None:
                base = geo.display_name
                address = geo.address
            await self._sleep(self._geocode_delay_s)

        name = unique_name(base, taken)
        location = await self._store.insert_location(
            name, cluster.centroid_lat, cluster.centroid_lng, address
        )
        logger.info(
            "Created location %d '%s' for %d units",
            location.id,
            name,
            len(cluster.units),
        )
        return location
