"""Cluster resources handled by the IPAM controllers."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum

from .types import IPAddress

WHEREABOUTS_API_VERSION = "whereabouts.cni.cncf.io/v1alpha1"
NAD_API_VERSION = "k8s.cni.cncf.io/v1"
CORE_API_VERSION = "v1"

NETWORK_STATUS_ANNOT = "k8s.v1.cni.cncf.io/network-status"
NETWORK_ATTACHMENT_ANNOT = "k8s.v1.cni.cncf.io/networks"

DISRUPTION_TARGET = "DisruptionTarget"
CONDITION_TRUE = "True"


class PodPhase(str, Enum):
    """Lifecycle phase of a pod."""

    UNSET = ""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass(kw_only=True)
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None


@dataclass(kw_only=True)
class _Resource:
    kind: str = ""
    api_version: str = ""
    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    owner_references: list[OwnerReference] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(kw_only=True)
class IPAllocation:
    container_id: str = ""
    pod_ref: str = ""
    if_name: str = ""


@dataclass(kw_only=True)
class IPPoolResource(_Resource):
    """An IP pool with allocations keyed by offset from its first IP."""

    kind: str = "IPPool"
    api_version: str = WHEREABOUTS_API_VERSION
    range: str = ""
    allocations: dict[str, IPAllocation] = field(default_factory=dict)

    def parse_cidr(
        self,
    ) -> tuple[IPAddress, ipaddress.IPv4Network | ipaddress.IPv6Network]:
        """Return the address written in the range and the network containing it."""
        if "/" not in self.range or "%" in self.range:
            raise ValueError(f"invalid CIDR address: {self.range}")
        try:
            interface = ipaddress.ip_interface(self.range)
        except ValueError:
            raise ValueError(f"invalid CIDR address: {self.range}") from None
        return interface.ip, interface.network


@dataclass(kw_only=True)
class NodeSliceAllocation:
    node_name: str = ""
    slice_range: str = ""


@dataclass(kw_only=True)
class NodeSlicePool(_Resource):
    """A network range divided into per-node slices."""

    kind: str = "NodeSlicePool"
    api_version: str = WHEREABOUTS_API_VERSION
    range: str = ""
    slice_size: str = ""
    allocations: list[NodeSliceAllocation] = field(default_factory=list)


@dataclass(kw_only=True)
class OverlappingRangeIPReservation(_Resource):
    """A cluster-wide reservation of one IP."""

    kind: str = "OverlappingRangeIPReservation"
    api_version: str = WHEREABOUTS_API_VERSION
    pod_ref: str = ""
    if_name: str = ""


@dataclass(kw_only=True)
class PodCondition:
    type: str = ""
    status: str = ""
    reason: str = ""


@dataclass(kw_only=True)
class Pod(_Resource):
    kind: str = "Pod"
    api_version: str = CORE_API_VERSION
    phase: PodPhase = PodPhase.UNSET
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass(kw_only=True)
class Node(_Resource):
    kind: str = "Node"
    api_version: str = CORE_API_VERSION


@dataclass(kw_only=True)
class NetworkAttachmentDefinition(_Resource):
    """A network attachment whose config holds the CNI configuration JSON."""

    kind: str = "NetworkAttachmentDefinition"
    api_version: str = NAD_API_VERSION
    config: str = ""

    def controller_ref(self) -> OwnerReference:
        """Return an owner reference marking this definition as controller."""
        return OwnerReference(
            api_version=NAD_API_VERSION,
            kind="NetworkAttachmentDefinition",
            name=self.name,
            uid=self.uid,
            controller=True,
            block_owner_deletion=True,
        )