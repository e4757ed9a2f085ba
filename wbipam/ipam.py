"""IP allocation storage backed by cluster resources."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .client import Client
from .cluster import AlreadyExistsError, ApiError, NotFoundError
from .pools import UNNAMED_NETWORK, KubernetesIPPool, PoolIdentifier, ip_pool_name, normalize_ip
from .resources import IPPoolResource, OverlappingRangeIPReservation
from .storage import OverlappingRangeStore, Store, TemporaryError
from .types import IPAddress, IPAMConfig, Mode

log = logging.getLogger(__name__)

NAMESPACE_SYSTEM = "kube-system"
HOSTNAME_FILE = Path("/etc/hostname")
_READ_LIMIT = 1024


class KubernetesOverlappingRangeStore(OverlappingRangeStore):
    """Cluster-wide reservations kept as resources named after the IP."""

    def __init__(self, client: Client, namespace: str) -> None:
        self.client = client
        self.namespace = namespace

    def get_overlapping_range_ip_reservation(
        self, ip: IPAddress, pod_ref: str, network_name: str
    ) -> OverlappingRangeIPReservation | None:
        """Return the reservation of the IP, or None when nobody holds it."""
        normalized = normalize_ip(ip, network_name)
        log.debug(
            "Get overlappingRangewide allocation; normalized IP: %r, IP: %r, networkName: %r",
            normalized, str(ip), network_name,
        )
        try:
            reservation = self.client.cluster.get(
                "OverlappingRangeIPReservation", self.namespace, normalized
            )
        except NotFoundError:
            return None
        except ApiError as err:
            log.error("k8s get OverlappingRangeIPReservation error: %s", err)
            raise ApiError(f"k8s get OverlappingRangeIPReservation error: {err}") from err
        log.debug(
            "Normalized IP is reserved; normalized IP: %r, IP: %r, networkName: %r",
            normalized, str(ip), network_name,
        )
        return reservation

    def update_overlapping_range_allocation(
        self, mode: Mode, ip: IPAddress, pod_ref: str, if_name: str, network_name: str
    ) -> None:
        """Create the reservation when allocating, delete it when deallocating."""
        mode = Mode(mode)
        reservation = OverlappingRangeIPReservation(
            name=normalize_ip(ip, network_name), namespace=self.namespace
        )
        if mode is Mode.ALLOCATE:
            reservation.pod_ref = pod_ref
            reservation.if_name = if_name
            self.client.cluster.create(reservation)
            verb = "allocate"
        else:
            self.client.cluster.delete(
                "OverlappingRangeIPReservation", self.namespace, reservation.name
            )
            verb = "deallocate"
        log.debug("K8s UpdateOverlappingRangeAllocation success on %s: %s", verb, reservation)


class KubernetesIPAM(Store):
    """Manages IP blocks kept as IP pool resources in one namespace."""

    def __init__(
        self,
        client: Client,
        config: IPAMConfig,
        namespace: str = NAMESPACE_SYSTEM,
        container_id: str = "",
        if_name: str = "",
    ) -> None:
        self.client = client
        self.config = config
        self.namespace = namespace
        self.container_id = container_id
        self.if_name = if_name

    def get_ip_pool(self, pool_identifier: PoolIdentifier) -> KubernetesIPPool:
        """Return the pool for the identifier, creating it if it is missing.

        A freshly created pool raises TemporaryError so that the caller reads it again.
        """
        resource = self._get_pool(ip_pool_name(pool_identifier), pool_identifier.ip_range)
        first_ip, _ = resource.parse_cidr()
        return KubernetesIPPool(self.client.cluster, first_ip, resource)

    def _get_pool(self, name: str, ip_range: str) -> IPPoolResource:
        cluster = self.client.cluster
        try:
            return cluster.get("IPPool", self.namespace, name)
        except NotFoundError:
            pass
        except ApiError as err:
            raise ApiError(f"k8s get error: {err}") from err

        new_pool = IPPoolResource(name=name, namespace=self.namespace, range=ip_range)
        try:
            cluster.create(new_pool)
        except AlreadyExistsError as err:
            raise TemporaryError(str(err)) from err
        except ApiError as err:
            raise ApiError(f"k8s create error: {err}") from err
        raise TemporaryError("k8s pool initialized")

    def status(self) -> None:
        """Raise if the pools of the namespace cannot be listed."""
        self.client.cluster.list("IPPool", self.namespace)

    def close(self) -> None:
        """Nothing to release."""

    def get_overlapping_range_store(self) -> KubernetesOverlappingRangeStore:
        return KubernetesOverlappingRangeStore(self.client, self.namespace)


def get_node_name(ipam: KubernetesIPAM) -> str:
    """Return the node name from NODENAME, a nodename file, or /etc/hostname."""
    env_name = os.environ.get("NODENAME", "")
    if env_name:
        return env_name.strip()

    candidates = (Path(f"{ipam.config.configuration_path}/nodename"), HOSTNAME_FILE)
    last_error: OSError | None = None
    for path in candidates:
        try:
            handle = open(path, "rb")
        except OSError as err:
            last_error = err
            continue
        with handle:
            try:
                data = handle.read(_READ_LIMIT)
            except OSError as err:
                log.error("Error reading file %s: %s", path, err)
                data = b""
        hostname = data.decode(errors="replace").strip()
        log.debug("discovered current hostname as: %s", hostname)
        return hostname

    log.error("Could not determine nodename and could not open %s: %s", HOSTNAME_FILE, last_error)
    assert last_error is not None
    raise last_error


def _node_slice_name(ipam: KubernetesIPAM) -> str:
    if ipam.config.network_name == UNNAMED_NETWORK:
        return ipam.config.name
    return ipam.config.network_name


def get_node_slice_pool_range(ipam: KubernetesIPAM, node_name: str) -> str:
    """Return the slice range assigned to a node; raise LookupError if it has none."""
    log.debug("ipam namespace is %s", ipam.namespace)
    slice_name = _node_slice_name(ipam)
    try:
        node_slice = ipam.client.cluster.get("NodeSlicePool", ipam.namespace, slice_name)
    except ApiError as err:
        log.error("error getting node slice %s/%s %s", ipam.namespace, slice_name, err)
        raise
    for allocation in node_slice.allocations:
        if allocation.node_name == node_name:
            log.debug(
                "found matching node slice allocation for hostname %s: %s", node_name, allocation
            )
            return allocation.slice_range
    log.error("error finding node within node slice allocations")
    raise LookupError("no allocated node slice for node")