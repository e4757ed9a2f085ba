"""Reconciliation of IP reservations left behind by pods that no longer exist."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable

from .client import Client
from .cluster import ApiError
from .resources import OverlappingRangeIPReservation, PodPhase
from .storage import POD_REFRESH_RETRIES, IPPool, TemporaryError
from .types import IPAddress, IPReservation
from .wrapped_pod import (
    PodWrapper,
    get_pod_refs_served_by_whereabouts,
    index_pods,
    is_ip_on_pod,
    split_pod_ref,
    wrap_pod,
)

log = logging.getLogger(__name__)

REFRESH_INTERVAL = 0.25
"""Seconds to wait between refreshes of a pending pod."""

_UPDATE_ERRORS = (ApiError, TemporaryError, ValueError, LookupError)


class ReconcileError(Exception):
    """Reconciling the IP reservations failed."""


@dataclass
class OrphanedIPReservations:
    """The reservations of one pool that belong to no live pod."""

    pool: IPPool
    allocations: list[IPReservation] = field(default_factory=list)


class ReconcileLooper:
    """Finds and removes reservations whose pods are gone."""

    def __init__(
        self,
        client: Client | None = None,
        live_whereabouts_pods: dict[str, PodWrapper] | None = None,
        orphaned_ips: list[OrphanedIPReservations] | None = None,
        orphaned_cluster_wide_ips: list[OverlappingRangeIPReservation] | None = None,
    ) -> None:
        self.client = client
        self.live_whereabouts_pods = dict(live_whereabouts_pods or {})
        self.orphaned_ips = list(orphaned_ips or [])
        self.orphaned_cluster_wide_ips = list(orphaned_cluster_wide_ips or [])

    @classmethod
    def from_client(cls, client: Client) -> ReconcileLooper:
        """Read pools, pods and cluster-wide reservations and find the orphans."""
        try:
            ip_pools = client.list_ip_pools()
        except (ApiError, ValueError) as err:
            raise ReconcileError(f"failed to retrieve all IP pools: {err}") from err

        pods = client.list_pods()
        served_refs = get_pod_refs_served_by_whereabouts(ip_pools)
        looper = cls(client=client, live_whereabouts_pods=index_pods(pods, served_refs))
        looper._find_orphaned_ips_per_pool(ip_pools)
        looper._find_cluster_wide_ip_reservations()
        return looper

    def _find_orphaned_ips_per_pool(self, ip_pools: Iterable[IPPool]) -> None:
        for pool in ip_pools:
            orphaned = OrphanedIPReservations(pool=pool)
            for reservation in pool.allocations():
                log.debug("the IP reservation: %s", reservation)
                if not reservation.pod_ref:
                    log.error("pod ref missing for Allocations: %s", reservation)
                    continue
                if not self._is_ip_live(reservation.pod_ref, str(reservation.ip)):
                    log.debug("pod ref %s is not listed in the live pods list", reservation.pod_ref)
                    orphaned.allocations.append(reservation)
            if orphaned.allocations:
                self.orphaned_ips.append(orphaned)

    def _find_cluster_wide_ip_reservations(self) -> None:
        assert self.client is not None
        try:
            reservations = self.client.list_overlapping_ips()
        except ApiError as err:
            raise ReconcileError(f"failed to list all OverLappingIPs: {err}") from err

        for reservation in reservations:
            # Names are normalized to be valid resource names; undo that to compare with pod IPs.
            denormalized_ip = reservation.name.replace("-", ":")
            if not self._is_ip_live(reservation.pod_ref, denormalized_ip):
                log.debug("pod ref %s is not listed in the live pods list", reservation.pod_ref)
                self.orphaned_cluster_wide_ips.append(reservation)

    def _is_ip_live(self, pod_ref: str, ip: str) -> bool:
        """Tell whether a live pod with this reference carries the IP."""
        live_pod = self.live_whereabouts_pods.get(pod_ref)
        if live_pod is None:
            return False

        found = is_ip_on_pod(live_pod, pod_ref, ip)
        if found or live_pod.phase != PodPhase.PENDING:
            return found

        # A pending pod may not carry its network-status annotation yet.
        log.debug("Re-fetching Pending Pod: %s IP-to-match: %s", pod_ref, ip)
        pod_to_match = live_pod
        for _ in range(POD_REFRESH_RETRIES):
            refreshed = self._refresh_pod(pod_ref)
            if refreshed is None:
                log.debug("Cleaning up...")
                return False
            pod_to_match = refreshed
            if pod_to_match.phase != PodPhase.PENDING:
                log.debug("Pending Pod is now in phase: %s", pod_to_match.phase.value)
                break
            if is_ip_on_pod(pod_to_match, pod_ref, ip):
                log.debug("Pod now has IP annotation while in Pending")
                return True
            time.sleep(REFRESH_INTERVAL)
        return is_ip_on_pod(pod_to_match, pod_ref, ip)

    def _refresh_pod(self, pod_ref: str) -> PodWrapper | None:
        try:
            namespace, name = split_pod_ref(pod_ref)
        except ValueError as err:
            log.error("%s", err)
            return None
        if not namespace or not name or self.client is None:
            log.error("Invalid podRef format: %s", pod_ref)
            return None
        try:
            pod = self.client.get_pod(namespace, name)
        except ApiError as err:
            log.error("Failed to refresh Pod %s: %s", pod_ref, err)
            return None
        wrapped = wrap_pod(pod)
        log.debug("Got refreshed pod: %s", wrapped)
        return wrapped

    def reconcile_ip_pools(self) -> list[IPAddress]:
        """Remove the orphaned reservations from their pools; return the freed IPs."""
        total_cleaned: list[IPAddress] = []
        for orphaned in self.orphaned_ips:
            current = orphaned.pool.allocations()
            cleaned: list[IPAddress] = []
            for allocation in orphaned.allocations:
                index = next(
                    (
                        i
                        for i, reservation in enumerate(current)
                        if reservation.pod_ref == allocation.pod_ref
                        and reservation.ip == allocation.ip
                    ),
                    None,
                )
                if index is None:
                    log.debug(
                        "Failed to find allocation for pod ref: %s and IP: %s",
                        allocation.pod_ref, allocation.ip,
                    )
                    continue
                current[index] = current[-1]
                del current[-1]
                cleaned.append(allocation.ip)

            if cleaned:
                log.debug("Going to update the reserve list to: %s", current)
                try:
                    orphaned.pool.update(current)
                except _UPDATE_ERRORS as err:
                    raise ReconcileError(f"failed to update the reservation list: {err}") from err
                total_cleaned.extend(cleaned)
        return total_cleaned

    def reconcile_overlapping_ip_addresses(self) -> None:
        """Delete the orphaned cluster-wide reservations."""
        failed: list[str] = []
        for reservation in self.orphaned_cluster_wide_ips:
            try:
                if self.client is None:
                    raise ApiError("no client to delete with")
                self.client.delete_overlapping_ip(reservation)
            except ApiError:
                log.error("failed to remove cluster wide IP: %s", reservation.name)
                failed.append(reservation.name)
                continue
            log.info("removed stale overlappingIP allocation [%s]", reservation.name)

        if failed:
            raise ReconcileError(f"could not reconcile cluster wide IPs: [{' '.join(failed)}]")


def reconcile_ips(client: Client) -> list[IPAddress]:
    """Run one reconciliation pass; return the IPs freed from the pools."""
    log.info("starting reconciler run")
    try:
        looper = ReconcileLooper.from_client(client)
    except (ReconcileError, ApiError) as err:
        log.error("failed to create the reconcile looper: %s", err)
        raise

    try:
        cleaned = looper.reconcile_ip_pools()
    except ReconcileError as err:
        log.error("failed to clean up IP for allocations: %s", err)
        raise

    if cleaned:
        log.debug("successfully cleanup IPs: %s", [str(ip) for ip in cleaned])
    else:
        log.debug("no IP addresses to cleanup")

    looper.reconcile_overlapping_ip_addresses()
    return cleaned