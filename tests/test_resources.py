import ipaddress

import pytest

from wbipam.resources import (
    IPAllocation,
    IPPoolResource,
    NetworkAttachmentDefinition,
    NodeSlicePool,
    Pod,
    PodPhase,
)


def test_parse_cidr_keeps_written_address():
    pool = IPPoolResource(name="pool1", namespace="default", range="10.10.10.0/16")
    first_ip, network = pool.parse_cidr()
    assert first_ip == ipaddress.ip_address("10.10.10.0")
    assert network.prefixlen == 16
    assert first_ip in network


def test_parse_cidr_ipv6():
    pool = IPPoolResource(range="2001:1b74:480:60b1::10/64")
    first_ip, network = pool.parse_cidr()
    assert first_ip == ipaddress.ip_address("2001:1b74:480:60b1::10")
    assert network.prefixlen == 64
    assert first_ip in network


@pytest.mark.parametrize("bad", ["10.10.10.0", "garbage/8", "10.0.0.0/40", ""])
def test_parse_cidr_invalid(bad):
    with pytest.raises(ValueError):
        IPPoolResource(range=bad).parse_cidr()


def test_controller_ref():
    nad = NetworkAttachmentDefinition(name="test", namespace="default", uid="uid-1")
    ref = nad.controller_ref()
    assert ref.name == "test"
    assert ref.uid == "uid-1"
    assert ref.kind == "NetworkAttachmentDefinition"
    assert ref.api_version == "k8s.cni.cncf.io/v1"
    assert ref.controller is True
    assert ref.block_owner_deletion is True


def test_node_slice_pool_type_meta():
    pool = NodeSlicePool(name="test", range="10.0.0.0/8", slice_size="/10")
    assert pool.kind == "NodeSlicePool"
    assert pool.api_version == "whereabouts.cni.cncf.io/v1alpha1"
    assert pool.allocations == []


def test_pools_do_not_share_allocations():
    first = IPPoolResource()
    second = IPPoolResource()
    first.allocations["1"] = IPAllocation(pod_ref="default/pod1")
    assert second.allocations == {}


def test_pod_phase_compares_as_text():
    pod = Pod(name="pod1", namespace="default", phase=PodPhase.PENDING)
    assert pod.phase == "Pending"
    assert PodPhase("Running") is PodPhase.RUNNING
    assert Pod().phase == ""