# wbipam

`wbipam` is a library for managing IP addresses across a cluster. It keeps
named IP pools whose allocations are stored as offsets from the first
address of a range, splits a large range into per-node slices, records
cluster-wide reservations so that overlapping ranges never hand out the same
address twice, and reconciles away allocations whose pods no longer exist.

All resources live in `wbipam.cluster.Cluster`, an in-memory object store.

## Modules

- `wbipam.types` – the IPAM configuration (`IPAMConfig`, `Net`,
  `NetConfList`, `RangeConfiguration`, `Address`, `KubernetesConfig`) built
  from decoded network configuration JSON, `IPReservation` records, the
  `Mode` enum (`ALLOCATE`, `DEALLOCATE`) and `sanitize_ip`, which also
  accepts IPv4 octets with leading zeros.
- `wbipam.resources` – the stored objects: `IPPoolResource`,
  `NodeSlicePool`, `OverlappingRangeIPReservation`, `Pod`, `Node` and
  `NetworkAttachmentDefinition`, with `PodPhase` and `OwnerReference`.
- `wbipam.cluster` – `Cluster`, with `create`, `get`, `list`, `update` and
  `delete`. Every request is recorded in `Cluster.actions`. Failures raise
  `NotFoundError`, `AlreadyExistsError` or `ConflictError` (an update based
  on a stale `resource_version`), all subclasses of `ApiError`.
- `wbipam.storage` – the abstract `IPPool`, `Store` and
  `OverlappingRangeStore` interfaces, `TemporaryError` and `is_temporary`.
- `wbipam.pools` – pool naming (`PoolIdentifier`, `ip_pool_name`,
  `normalize_range`, `normalize_ip`), conversion between offset maps and
  reservations, and `KubernetesIPPool`, whose `update` raises
  `TemporaryError` when the pool changed since it was read.
- `wbipam.client` – `Client`, which lists pools, pods and cluster-wide
  reservations, fetches a pod and deletes a reservation.
- `wbipam.ipam` – `KubernetesIPAM`, a `Store` over the pools of one
  namespace (a missing pool is created and `TemporaryError` is raised so the
  caller reads it again), `KubernetesOverlappingRangeStore`,
  `get_node_name` (from `NODENAME`, a `nodename` file in the configuration
  path, or `/etc/hostname`) and `get_node_slice_pool_range`.
- `wbipam.wrapped_pod` – reduces pods to the IPs of their non-default
  networks, read from the `k8s.v1.cni.cncf.io/network-status` annotation.
- `wbipam.iploop` – `ReconcileLooper` and `reconcile_ips`.
- `wbipam.config_watcher` – a cron `Scheduler` and `ConfigWatcher`, which
  reschedules a job when the cron expression in its file changes.
- `wbipam.node_controller` – `Controller`, which keeps a `NodeSlicePool`
  per network in step with network attachment definitions and nodes.
- `wbipam.signals` – `setup_signal_handler`.
- `wbipam.version` – build version strings (`get_full_version` returns
  `"UNKNOWN"` until `VERSION` is set).

## Pool names

```python
from wbipam.pools import PoolIdentifier, ip_pool_name

ip_pool_name(PoolIdentifier(ip_range="10.0.0.0/8"))
# '10.0.0.0-8'
ip_pool_name(PoolIdentifier(ip_range="10.0.0.0/8", network_name="test"))
# 'test-10.0.0.0-8'
ip_pool_name(PoolIdentifier(ip_range="10.0.0.0/8", network_name="testnetwork",
                            node_name="testnode"))
# 'testnetwork-testnode-10.0.0.0-8'
```

## Reading an IPAM configuration

```python
from wbipam.types import IPAMConfig

conf = IPAMConfig.from_json('{"type": "whereabouts", "range": "192.168.2.0/24"}')
conf.range               # '192.168.2.0/24'
conf.overlapping_ranges  # True unless "enable_overlapping_ranges" is false
```

## Slicing a range per node

```python
import json
from wbipam.cluster import Cluster
from wbipam.node_controller import Controller
from wbipam.resources import NetworkAttachmentDefinition, Node

nad = NetworkAttachmentDefinition(
    name="test",
    namespace="default",
    config=json.dumps({
        "cniVersion": "0.3.1",
        "name": "test-name",
        "plugins": [{
            "type": "macvlan",
            "ipam": {"type": "whereabouts", "range": "10.0.0.0/8",
                     "node_slice_size": "/10", "network_name": "test"},
        }],
    }),
)
cluster = Cluster([nad, Node(name="node1")])
controller = Controller(cluster, whereabouts_namespace="default", sort_results=True)
controller.sync_handler("default/test")

pool = cluster.get("NodeSlicePool", "default", "test")
[(a.slice_range, a.node_name) for a in pool.allocations]
# [('10.0.0.0/10', 'node1'), ('10.64.0.0/10', ''),
#  ('10.128.0.0/10', ''), ('10.192.0.0/10', '')]
```

`Controller.run(workers, stop_event)` processes queued keys in worker
threads until the event is set; `on_nad_event` and `requeue_nads` queue
keys. `setup_signal_handler()` returns such an event, set on SIGINT or
SIGTERM.

## Reconciling orphaned addresses

```python
from wbipam.client import Client
from wbipam.iploop import ReconcileLooper

looper = ReconcileLooper.from_client(Client(cluster))
released = looper.reconcile_ip_pools()        # list of freed IP addresses
looper.reconcile_overlapping_ip_addresses()
```

`reconcile_ips(client)` runs the same pass in one call. Failures raise
`ReconcileError` or an `ApiError`.

## What this package does not do

- It does not talk to a real cluster API server: `Cluster` is an in-memory
  store, and there is no kubeconfig or in-cluster connection.
- It has no CNI plugin entry point and no command-line program, and it does
  not choose new IP addresses for a pod or run leader election; it provides
  the pools, naming, reservations, reconciliation and node slicing around
  such an allocator.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.