"""IP pools kept as cluster resources, and the naming of pools and reservations."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .cluster import Cluster, ConflictError
from .resources import IPAllocation, IPPoolResource
from .storage import IPPool, TemporaryError
from .types import IPAddress, IPReservation

log = logging.getLogger(__name__)

UNNAMED_NETWORK = ""

_OFFSET = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass(frozen=True)
class PoolIdentifier:
    """What selects an IP pool: its range, network and, for node slices, node."""

    ip_range: str
    network_name: str = UNNAMED_NETWORK
    node_name: str = ""


def normalize_range(ip_range: str) -> str:
    """Turn a CIDR range into a valid resource name."""
    if not ip_range:
        raise ValueError("empty IP range")
    if ip_range.endswith(":"):
        ip_range += "0"
    return ip_range.replace(":", "-").replace("/", "-")


def ip_pool_name(pool_identifier: PoolIdentifier) -> str:
    """Return the resource name of the pool for the identifier."""
    normalized = normalize_range(pool_identifier.ip_range)
    prefix = [
        part
        for part in (pool_identifier.network_name, pool_identifier.node_name)
        if part
    ]
    return "-".join([*prefix, normalized])


def normalize_ip(ip: IPAddress, network_name: str) -> str:
    """Turn an IP into a valid resource name, prefixed by a named network."""
    ip_str = str(ip)
    if ip_str.endswith(":"):
        ip_str += "0"
        log.debug("modified: %s", ip_str)
    normalized = ip_str.replace(":", "-")
    if network_name != UNNAMED_NETWORK:
        normalized = f"{network_name}-{normalized}"
    return normalized


def _ip_add_offset(first_ip: IPAddress, offset: int) -> IPAddress:
    return type(first_ip)(int(first_ip) + offset)


def _ip_get_offset(ip: IPAddress, first_ip: IPAddress) -> int:
    if ip.version != first_ip.version:
        raise ValueError(f"cannot compute offset of {ip} from {first_ip}: IP versions differ")
    offset = int(ip) - int(first_ip)
    if offset < 0:
        raise ValueError(f"{ip} lies before the first IP {first_ip}")
    return offset


def to_ip_reservation_list(
    allocations: dict[str, IPAllocation], first_ip: IPAddress
) -> list[IPReservation]:
    """Turn offset-keyed allocations into reservations, ignoring bad offsets."""
    parsed: list[tuple[int, IPAllocation]] = []
    for offset, allocation in allocations.items():
        if not _OFFSET.fullmatch(offset) or not _INT64_MIN <= int(offset) <= _INT64_MAX:
            log.error("Error decoding ip offset (backend: kubernetes): %r", offset)
            continue
        parsed.append((int(offset), allocation))
    reservations = []
    for offset, allocation in sorted(parsed, key=lambda item: item[0]):
        try:
            ip = _ip_add_offset(first_ip, offset)
        except ValueError:
            log.error("ip offset %d out of range of %s", offset, first_ip)
            continue
        reservations.append(
            IPReservation(
                ip=ip,
                container_id=allocation.container_id,
                pod_ref=allocation.pod_ref,
                if_name=allocation.if_name,
            )
        )
    return reservations


def to_allocation_map(
    reservations: list[IPReservation], first_ip: IPAddress
) -> dict[str, IPAllocation]:
    """Turn reservations into allocations keyed by their offset from first_ip."""
    return {
        str(_ip_get_offset(r.ip, first_ip)): IPAllocation(
            container_id=r.container_id, pod_ref=r.pod_ref, if_name=r.if_name
        )
        for r in reservations
    }


class KubernetesIPPool(IPPool):
    """An IP pool resource with its allocations read relative to its first IP."""

    def __init__(self, cluster: Cluster, first_ip: IPAddress, pool: IPPoolResource) -> None:
        self.cluster = cluster
        self.first_ip = first_ip
        self.pool = pool

    def allocations(self) -> list[IPReservation]:
        """Return the allocations as retrieved with the pool."""
        return to_ip_reservation_list(self.pool.allocations, self.first_ip)

    def update(self, reservations: list[IPReservation]) -> None:
        """Store the reservations, only if the pool is unchanged since it was read."""
        self.pool.allocations = to_allocation_map(reservations, self.first_ip)
        try:
            self.cluster.update(self.pool)
        except ConflictError as err:
            raise TemporaryError(str(err)) from err