"""Access to the resources the reconciler reads and cleans up."""

from __future__ import annotations

import logging

from .cluster import Cluster
from .pools import KubernetesIPPool
from .resources import OverlappingRangeIPReservation, Pod
from .storage import DATASTORE_RETRIES

log = logging.getLogger(__name__)


class Client:
    """Reads pools, pods and cluster-wide reservations from a cluster."""

    def __init__(self, cluster: Cluster, retries: int = DATASTORE_RETRIES) -> None:
        self.cluster = cluster
        self.retries = retries

    def list_ip_pools(self) -> list[KubernetesIPPool]:
        """Return every IP pool; raise ValueError if a pool's range is invalid."""
        log.debug("listing IP pools")
        pools = []
        for resource in self.cluster.list("IPPool", ""):
            first_ip, _ = resource.parse_cidr()
            pools.append(KubernetesIPPool(self.cluster, first_ip, resource))
        return pools

    def list_pods(self) -> list[Pod]:
        """Return the pods of all namespaces."""
        log.debug("listing Pods")
        return self.cluster.list("Pod", "")

    def get_pod(self, namespace: str, name: str) -> Pod:
        """Return one pod; raise NotFoundError if it does not exist."""
        return self.cluster.get("Pod", namespace, name)

    def list_overlapping_ips(self) -> list[OverlappingRangeIPReservation]:
        """Return the cluster-wide reservations of all namespaces."""
        return self.cluster.list("OverlappingRangeIPReservation", "")

    def delete_overlapping_ip(self, reservation: OverlappingRangeIPReservation) -> None:
        """Delete a cluster-wide reservation."""
        self.cluster.delete(
            "OverlappingRangeIPReservation", reservation.namespace, reservation.name
        )