"""Live pods reduced to the secondary IPs they carry."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .resources import (
    CONDITION_TRUE,
    DISRUPTION_TARGET,
    NETWORK_STATUS_ANNOT,
    Pod,
    PodCondition,
    PodPhase,
)
from .storage import IPPool

log = logging.getLogger(__name__)


@dataclass
class PodWrapper:
    """The secondary-interface IPs and phase of a pod."""

    ips: set[str] = field(default_factory=set)
    phase: PodPhase = PodPhase.UNSET


def compose_pod_ref(pod: Pod) -> str:
    """Return the "namespace/name" reference of a pod."""
    return f"{pod.namespace}/{pod.name}"


def split_pod_ref(pod_ref: str) -> tuple[str, str]:
    """Split "namespace/name" into its parts; raise ValueError on other shapes."""
    parts = pod_ref.split("/")
    if len(parts) != 2:
        raise ValueError(f"Failed to split podRef {pod_ref}")
    return parts[0], parts[1]


def network_status_from_pod(pod: Pod) -> str:
    """Return the network-status annotation, or "[]" when it is absent or empty."""
    return pod.annotations.get(NETWORK_STATUS_ANNOT) or "[]"


def get_flat_ip_set(pod: Pod) -> set[str]:
    """Return the IPs of the pod's non-default networks.

    Raises ValueError when the network-status annotation cannot be parsed.
    """
    value = network_status_from_pod(pod)

    def fail(reason: Any) -> ValueError:
        return ValueError(
            f"could not parse network annotation {value} for pod: "
            f"{compose_pod_ref(pod)}; error: {reason}"
        )

    try:
        statuses = json.loads(value)
    except json.JSONDecodeError as err:
        raise fail(err) from err
    if statuses is None:
        statuses = []
    if not isinstance(statuses, list):
        raise fail("expected an array of network statuses")

    ips: set[str] = set()
    for status in statuses:
        if status is None:
            continue
        if not isinstance(status, dict):
            raise fail("expected a network status object")
        default = status.get("default")
        if default is not None and not isinstance(default, bool):
            raise fail("default must be a boolean")
        network_ips = status.get("ips") or []
        if not isinstance(network_ips, list) or not all(isinstance(ip, str) for ip in network_ips):
            raise fail("ips must be an array of strings")
        if default:
            continue
        for ip in network_ips:
            ips.add(ip)
            log.debug("Added IP %s for pod %s", ip, compose_pod_ref(pod))
    return ips


def wrap_pod(pod: Pod) -> PodWrapper:
    """Wrap a pod; an unreadable annotation yields no IPs."""
    try:
        ips = get_flat_ip_set(pod)
    except ValueError as err:
        log.error("%s", err)
        ips = set()
    return PodWrapper(ips=ips, phase=pod.phase)


def get_pod_refs_served_by_whereabouts(ip_pools: Iterable[IPPool]) -> set[str]:
    """Return the pod references holding a reservation in any of the pools."""
    return {
        reservation.pod_ref for pool in ip_pools for reservation in pool.allocations()
    }


def is_pod_marked_for_deletion(conditions: Iterable[PodCondition]) -> bool:
    """Tell whether the taint manager has marked the pod for deletion."""
    return any(
        c.type == DISRUPTION_TARGET
        and c.status == CONDITION_TRUE
        and c.reason == "DeletionByTaintManager"
        for c in conditions
    )


def index_pods(pods: Iterable[Pod], whereabouts_pod_refs: set[str]) -> dict[str, PodWrapper]:
    """Map the references of live, served pods to their wrappers."""
    index: dict[str, PodWrapper] = {}
    for pod in pods:
        pod_ref = compose_pod_ref(pod)
        if pod_ref not in whereabouts_pod_refs:
            continue
        if is_pod_marked_for_deletion(pod.conditions):
            log.debug("Pod %s is marked for deletion; skipping", pod_ref)
            continue
        index[pod_ref] = wrap_pod(pod)
    return index


def is_ip_on_pod(live_pod: PodWrapper, pod_ref: str, ip: str) -> bool:
    """Tell whether the pod carries the IP."""
    log.debug(
        "pod reference %s matches allocation; Allocation IP: %s; PodIPs: %s",
        pod_ref, ip, sorted(live_pod.ips),
    )
    return ip in live_pod.ips