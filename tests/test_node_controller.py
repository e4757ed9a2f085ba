import json
import threading
import time

import pytest

from wbipam.cluster import Cluster
from wbipam.node_controller import (
    Controller,
    assign_node_to_slice,
    check_ipam_conf_match,
    divide_range_by_size,
    get_auxiliary_owner_ref,
    get_slice_name,
    has_owner_ref,
    ipam_configuration,
    node_has_allocation,
    remove_unused_nodes,
    split_meta_namespace_key,
)
from wbipam.resources import (
    NetworkAttachmentDefinition,
    Node,
    NodeSliceAllocation,
    NodeSlicePool,
)
from wbipam.types import IPAMConfig, RangeConfiguration

NS = "default"


@pytest.fixture
def conf_path(tmp_path):
    path = tmp_path / "whereabouts.conf"
    path.write_text(
        json.dumps(
            {
                "datastore": "kubernetes",
                "kubernetes": {"kubeconfig": "/etc/cni/net.d/whereabouts.d/whereabouts.kubeconfig"},
                "log_file": "/tmp/whereabouts.log",
                "log_level": "debug",
                "gateway": "192.168.5.5",
            }
        )
    )
    return str(path)


def new_nad(name, network_name, network_range, slice_size, conf_path):
    config = {
        "cniVersion": "0.3.1",
        "name": "test-name",
        "plugins": [
            {
                "type": "macvlan",
                "master": "test",
                "mode": "bridge",
                "mtu": "mtu",
                "ipam": {
                    "configuration_path": conf_path,
                    "type": "whereabouts",
                    "range": network_range,
                    "node_slice_size": slice_size,
                    "network_name": network_name,
                    "enable_overlapping_ranges": False,
                },
            }
        ],
    }
    return NetworkAttachmentDefinition(name=name, namespace=NS, config=json.dumps(config))


def owner_refs(nads):
    if not nads:
        return []
    return [nads[0].controller_ref()] + [get_auxiliary_owner_ref(n) for n in nads[1:]]


def new_pool(name, network_range, slice_size, allocations, *nads):
    return NodeSlicePool(
        name=name,
        namespace=NS,
        range=network_range,
        slice_size=slice_size,
        allocations=[NodeSliceAllocation(slice_range=r, node_name=n) for n, r in allocations],
        owner_references=owner_refs(nads),
    )


EMPTY_8_10 = [("", "10.0.0.0/10"), ("", "10.64.0.0/10"), ("", "10.128.0.0/10"), ("", "10.192.0.0/10")]
TWO_NODES_8_10 = [
    ("node1", "10.0.0.0/10"),
    ("node2", "10.64.0.0/10"),
    ("", "10.128.0.0/10"),
    ("", "10.192.0.0/10"),
]


def mutating(cluster):
    return [a for a in cluster.actions if a.verb in ("create", "update", "delete")]


def pairs(pool):
    return [(a.node_name, a.slice_range) for a in pool.allocations]


def sync(objects, key):
    cluster = Cluster(objects)
    controller = Controller(cluster, NS, sort_results=True)
    controller.sync_handler(key)
    return cluster, mutating(cluster)


def test_creates_node_slice_pool_no_nodes(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    _, actions = sync([nad], "default/test")
    assert [(a.verb, a.kind, a.namespace) for a in actions] == [("create", "NodeSlicePool", NS)]
    pool = actions[0].obj
    assert pool.name == "test"
    assert (pool.range, pool.slice_size) == ("10.0.0.0/8", "/10")
    assert pairs(pool) == EMPTY_8_10
    assert [r.name for r in pool.owner_references] == ["test"]


def test_creates_node_slice_pool_with_nodes(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    _, actions = sync([nad, Node(name="node2"), Node(name="node1")], "default/test")
    assert [a.verb for a in actions] == ["create"]
    assert pairs(actions[0].obj) == TWO_NODES_8_10


def test_do_nothing_without_nad(conf_path):
    _, actions = sync([Node(name="node1"), Node(name="node2")], "default/test")
    assert actions == []


def test_node_joins(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", EMPTY_8_10, nad)
    _, actions = sync([nad, pool, Node(name="node1")], "default/test")
    assert [a.verb for a in actions] == ["update"]
    assert pairs(actions[0].obj) == [("node1", "10.0.0.0/10")] + EMPTY_8_10[1:]


def test_node_leaves(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", [("node1", "10.0.0.0/10")] + EMPTY_8_10[1:], nad)
    _, actions = sync([nad, pool], "default/test")
    assert [a.verb for a in actions] == ["update"]
    assert pairs(actions[0].obj) == EMPTY_8_10


def test_nad_delete_removes_pool(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad)
    cluster, actions = sync([pool, Node(name="node1"), Node(name="node2")], "default/test")
    assert [(a.verb, a.namespace, a.name) for a in actions] == [("delete", NS, "test")]
    assert cluster.list("NodeSlicePool", "") == []


def test_update_no_impactful_change(conf_path):
    nad = new_nad("test2", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad)
    _, actions = sync([nad, pool, Node(name="node1"), Node(name="node2")], "default/test2")
    assert [a.verb for a in actions] == ["update"]
    assert pairs(actions[0].obj) == TWO_NODES_8_10


def test_update_range_and_slice_change(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/10", "/12", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad)
    _, actions = sync([nad, pool, Node(name="node1"), Node(name="node2")], "default/test")
    assert [a.verb for a in actions] == ["update"]
    updated = actions[0].obj
    assert (updated.range, updated.slice_size) == ("10.0.0.0/10", "/12")
    assert pairs(updated) == [
        ("node1", "10.0.0.0/12"),
        ("node2", "10.16.0.0/12"),
        ("", "10.32.0.0/12"),
        ("", "10.48.0.0/12"),
    ]


def test_update_range_change(conf_path):
    nad = new_nad("test", "test", "11.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad)
    _, actions = sync([nad, pool, Node(name="node1"), Node(name="node2")], "default/test")
    assert pairs(actions[0].obj) == [
        ("node1", "11.0.0.0/10"),
        ("node2", "11.64.0.0/10"),
        ("", "11.128.0.0/10"),
        ("", "11.192.0.0/10"),
    ]
    assert actions[0].obj.range == "11.0.0.0/8"


def test_update_slice_change(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/11", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad)
    _, actions = sync([nad, pool, Node(name="node1"), Node(name="node2")], "default/test")
    assert pairs(actions[0].obj) == [
        ("node1", "10.0.0.0/11"),
        ("node2", "10.32.0.0/11"),
        ("", "10.64.0.0/11"),
        ("", "10.96.0.0/11"),
        ("", "10.128.0.0/11"),
        ("", "10.160.0.0/11"),
        ("", "10.192.0.0/11"),
        ("", "10.224.0.0/11"),
    ]


def test_multiple_nads_same_network_name_adds_owner(conf_path):
    nad1 = new_nad("test1", "test", "10.0.0.0/8", "/10", conf_path)
    nad2 = new_nad("test2", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad1)
    _, actions = sync([nad1, nad2, pool, Node(name="node1"), Node(name="node2")], "default/test2")
    assert [a.verb for a in actions] == ["update"]
    assert [r.name for r in actions[0].obj.owner_references] == ["test1", "test2"]
    assert pairs(actions[0].obj) == TWO_NODES_8_10


def test_multiple_nads_delete_one_does_nothing(conf_path):
    nad1 = new_nad("test1", "test", "10.0.0.0/8", "/10", conf_path)
    nad2 = new_nad("test2", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", TWO_NODES_8_10, nad1, nad2)
    _, actions = sync([nad1, pool, Node(name="node1"), Node(name="node2")], "default/test2")
    assert actions == []


def test_two_networks_range_and_slice_mismatch(conf_path):
    nad1 = new_nad("test1", "test", "10.0.0.0/8", "/10", conf_path)
    nad2 = new_nad("test2", "test", "10.0.0.0/8", "/8", conf_path)
    cluster = Cluster([nad1, nad2, Node(name="node1"), Node(name="node2")])
    controller = Controller(cluster, NS, sort_results=True)
    with pytest.raises(ValueError, match="mismatch"):
        controller.sync_handler("default/test2")
    assert mutating(cluster) == []


def test_ipam_configuration_merges_flat_file(conf_path):
    nad = new_nad("test", "net", "10.0.0.0/8", "/10", conf_path)
    conf = ipam_configuration(nad, "")
    assert conf.log_level == "debug"
    assert conf.name == "test-name"
    assert conf.network_name == "net"
    assert [r.range for r in conf.ip_ranges] == ["10.0.0.0/8"]
    assert conf.overlapping_ranges is False


def test_ipam_configuration_without_ipam_raises():
    nad = NetworkAttachmentDefinition(name="x", namespace=NS, config='{"name": "n", "type": "macvlan"}')
    with pytest.raises(ValueError):
        ipam_configuration(nad, "")


def test_divide_range_by_size():
    assert divide_range_by_size("10.0.0.0/8", "/10") == [
        "10.0.0.0/10", "10.64.0.0/10", "10.128.0.0/10", "10.192.0.0/10",
    ]
    with pytest.raises(ValueError):
        divide_range_by_size("10.0.0.0/10", "/8")


def test_split_meta_namespace_key():
    assert split_meta_namespace_key("default/test") == ("default", "test")
    assert split_meta_namespace_key("test") == ("", "test")
    with pytest.raises(ValueError):
        split_meta_namespace_key("a/b/c")


def test_assign_and_remove_nodes():
    allocations = [NodeSliceAllocation(slice_range=r) for _, r in EMPTY_8_10]
    assign_node_to_slice(allocations, "node1")
    assign_node_to_slice(allocations, "node1")
    assign_node_to_slice(allocations, "node2")
    assert [a.node_name for a in allocations] == ["node1", "node2", "", ""]
    assert node_has_allocation(allocations, "node2")
    remove_unused_nodes(allocations, [Node(name="node2")])
    assert [a.node_name for a in allocations] == ["", "node2", "", ""]
    assert not node_has_allocation(allocations, "node1")


def test_slice_name_and_conf_match():
    conf = IPAMConfig(name="conf", ip_ranges=[RangeConfiguration(range="10.0.0.0/8")], node_slice_size="/10")
    assert get_slice_name(conf) == "conf"
    conf.network_name = "net"
    assert get_slice_name(conf) == "net"
    other = IPAMConfig(network_name="net", ip_ranges=[RangeConfiguration(range="10.0.0.0/8")], node_slice_size="/8")
    assert not check_ipam_conf_match(conf, other)
    other.network_name = "elsewhere"
    assert check_ipam_conf_match(conf, other)


def test_has_owner_ref(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    pool = new_pool("test", "10.0.0.0/8", "/10", EMPTY_8_10, nad)
    assert has_owner_ref(pool, "test")
    assert not has_owner_ref(pool, "other")


def test_event_queue_processing(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    cluster = Cluster([nad])
    controller = Controller(cluster, NS, sort_results=True)
    controller.on_nad_event(nad)
    controller.on_nad_event(nad)
    assert len(controller.workqueue) == 1
    assert controller.process_next_work_item() is True
    assert [p.name for p in cluster.list("NodeSlicePool", NS)] == ["test"]


def test_requeue_nads_queues_every_definition(conf_path):
    nads = [new_nad(n, n, "10.0.0.0/8", "/10", conf_path) for n in ("a", "b")]
    controller = Controller(Cluster(nads), NS)
    controller.requeue_nads(Node(name="node1"))
    assert len(controller.workqueue) == 2


def test_run_syncs_until_stopped(conf_path):
    nad = new_nad("test", "test", "10.0.0.0/8", "/10", conf_path)
    cluster = Cluster([nad, Node(name="node1")])
    controller = Controller(cluster, NS, sort_results=True)
    controller.on_nad_event(nad)
    stop = threading.Event()
    runner = threading.Thread(target=controller.run, args=(2, stop))
    runner.start()
    deadline = time.monotonic() + 5
    pools = []
    while time.monotonic() < deadline and not pools:
        pools = [a for a in cluster.actions if a.verb == "create"]
        time.sleep(0.01)
    stop.set()
    runner.join(timeout=5)
    assert not runner.is_alive()
    assert pairs(pools[0].obj)[0] == ("node1", "10.0.0.0/10")