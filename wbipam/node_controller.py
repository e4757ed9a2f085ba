"""Controller that slices network ranges into per-node pools."""

from __future__ import annotations

import copy
import ipaddress
import json
import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Hashable, Iterable

from .cluster import Cluster, NotFoundError
from .resources import (
    NetworkAttachmentDefinition,
    Node,
    NodeSliceAllocation,
    NodeSlicePool,
    OwnerReference,
)
from .types import IPAMConfig, RangeConfiguration

log = logging.getLogger(__name__)

CONTROLLER_AGENT_NAME = "node-controller"
WHEREABOUTS_CONFIG_PATH = "/etc/cni/net.d/whereabouts.d/whereabouts.conf"

NAD_KIND = "NetworkAttachmentDefinition"
NODE_KIND = "Node"
NODE_SLICE_POOL_KIND = "NodeSlicePool"


class _RateLimiter:
    """The larger of a per-item exponential backoff and an overall token bucket."""

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        rate: float = 50.0,
        burst: int = 300,
    ) -> None:
        self._base = base_delay
        self._max = max_delay
        self._rate = rate
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            backoff = self._max if failures > 60 else min(self._base * 2**failures, self._max)

            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._rate)
            self._last = now
            self._tokens -= 1
            bucket = max(0.0, -self._tokens / self._rate)
            return max(backoff, bucket)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class _WorkQueue:
    """A deduplicating work queue that never hands out one item to two workers."""

    def __init__(self, limiter: _RateLimiter | None = None) -> None:
        self._limiter = limiter or _RateLimiter()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._cond = threading.Condition()
        self._shutting_down = False
        self._timers: set[threading.Timer] = set()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(item,))
            timer.daemon = True
            self._timers.add(timer)
            timer._wbipam_self = timer  # type: ignore[attr-defined]
        timer.start()

    def _fire(self, item: Hashable) -> None:
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self._limiter.forget(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers, self._timers = self._timers, set()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()


def _meta_namespace_key(obj: Any) -> str:
    if not getattr(obj, "name", ""):
        raise ValueError(f"object has no name: {obj!r}")
    namespace = getattr(obj, "namespace", "")
    return f"{namespace}/{obj.name}" if namespace else obj.name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split "namespace/name" or "name" into namespace and name."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def divide_range_by_size(network_range: str, slice_size: str) -> list[str]:
    """Split a CIDR range into subnets with the prefix length given as "/N" or "N"."""
    size_text = slice_size[1:] if slice_size.startswith("/") else slice_size
    if not (size_text.isascii() and size_text.isdigit()):
        raise ValueError(f"invalid slice size {slice_size!r}")
    new_prefix = int(size_text)
    network = ipaddress.ip_network(network_range, strict=False)
    if not network.prefixlen <= new_prefix <= network.max_prefixlen:
        raise ValueError(
            f"slice size {slice_size} does not fit in range {network_range}"
        )
    return [str(subnet) for subnet in network.subnets(new_prefix=new_prefix)]


def _read_flat_config(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text()
    except OSError:
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    flat = data.get("ipam", data)
    return dict(flat) if isinstance(flat, dict) else {}


def ipam_configuration(nad: NetworkAttachmentDefinition, mount_path: str) -> IPAMConfig:
    """Read the IPAM configuration of a network attachment definition.

    Settings from the flat configuration file fill in what the definition leaves out.
    Raises ValueError when the definition holds no usable IPAM section.
    """
    try:
        data = json.loads(nad.config)
    except json.JSONDecodeError as err:
        raise ValueError(f"invalid network configuration: {err}") from err
    if not isinstance(data, dict):
        raise ValueError("network configuration must be a JSON object")

    if "plugins" in data:
        plugins = data.get("plugins") or []
        if not isinstance(plugins, list):
            raise ValueError("plugins must be an array")
        ipam = next(
            (p["ipam"] for p in plugins if isinstance(p, dict) and isinstance(p.get("ipam"), dict)),
            None,
        )
    else:
        ipam = data.get("ipam")
    if not isinstance(ipam, dict):
        raise ValueError("IPAM config missing 'ipam' key")

    configured = ipam.get("configuration_path")
    if isinstance(configured, str) and configured:
        flat_path = Path(configured)
    else:
        flat_path = Path(mount_path + WHEREABOUTS_CONFIG_PATH)
    merged = {**_read_flat_config(flat_path), **ipam}

    config = IPAMConfig.from_dict(merged)
    name = data.get("name", "")
    config.name = name if isinstance(name, str) else ""
    if config.range:
        config.ip_ranges.insert(
            0,
            RangeConfiguration(
                range=config.range,
                omit_ranges=list(config.omit_ranges),
                range_start=config.range_start,
                range_end=config.range_end,
            ),
        )
    return config


def _first_range(conf: IPAMConfig) -> str:
    return conf.ip_ranges[0].range if conf.ip_ranges else ""


def check_ipam_conf_match(conf1: IPAMConfig, conf2: IPAMConfig) -> bool:
    """Tell whether two configurations of the same network agree on range and slice size."""
    if conf1.network_name == conf2.network_name:
        return (
            _first_range(conf1) == _first_range(conf2)
            and conf1.node_slice_size == conf2.node_slice_size
        )
    return True


def has_owner_ref(node_slice: NodeSlicePool, name: str) -> bool:
    return any(ref.name == name for ref in node_slice.owner_references)


def get_slice_name(ipam_conf: IPAMConfig) -> str:
    """Return the network name, or the configuration name when there is none."""
    return ipam_conf.network_name or ipam_conf.name


def get_auxiliary_owner_ref(nad: NetworkAttachmentDefinition) -> OwnerReference:
    """An owner reference that does not claim to be the controller."""
    return OwnerReference(
        api_version=getattr(nad, "api_version", ""),
        kind=nad.kind,
        name=nad.name,
        uid=getattr(nad, "uid", ""),
    )


def node_has_allocation(allocations: Iterable[NodeSliceAllocation], node_name: str) -> bool:
    return any(a.node_name == node_name for a in allocations)


def assign_node_to_slice(allocations: list[NodeSliceAllocation], node_name: str) -> None:
    """Give the node the first free slice unless it already has one."""
    if node_has_allocation(allocations, node_name):
        return
    for index, allocation in enumerate(allocations):
        if not allocation.node_name:
            allocations[index] = NodeSliceAllocation(
                slice_range=allocation.slice_range, node_name=node_name
            )
            return


def remove_unused_nodes(allocations: list[NodeSliceAllocation], nodes: Iterable[Node]) -> None:
    """Free the slices of nodes that no longer exist."""
    names = {node.name for node in nodes}
    for index, allocation in enumerate(allocations):
        if allocation.node_name and allocation.node_name not in names:
            allocations[index] = NodeSliceAllocation(slice_range=allocation.slice_range)


def _fresh_allocations(network_range: str, slice_size: str) -> list[NodeSliceAllocation]:
    return [
        NodeSliceAllocation(slice_range=subnet)
        for subnet in divide_range_by_size(network_range, slice_size)
    ]


class Controller:
    """Keeps node slice pools in step with network attachment definitions and nodes."""

    def __init__(
        self,
        cluster: Cluster,
        whereabouts_namespace: str,
        sort_results: bool = False,
        mount_path: str = "",
    ) -> None:
        self.cluster = cluster
        self.whereabouts_namespace = whereabouts_namespace
        self.sort_results = sort_results
        self.mount_path = mount_path
        self.workqueue = _WorkQueue()

    def on_nad_event(self, obj: Any) -> None:
        """Queue the definition, or the object inside a deletion tombstone."""
        log.info("handling network attachment definition event")
        target = getattr(obj, "obj", obj)
        try:
            key = _meta_namespace_key(target)
        except (AttributeError, ValueError) as err:
            log.error("couldn't get key for object %r: %s", obj, err)
            return
        self.workqueue.add(key)

    def requeue_nads(self, obj: Any = None) -> None:
        """Queue every definition, as after a node joins or leaves."""
        log.info("handling requeueNADs")
        for nad in self.cluster.list(NAD_KIND, ""):
            try:
                key = _meta_namespace_key(nad)
            except ValueError as err:
                log.error("couldn't get key for object %r: %s", nad, err)
                return
            self.workqueue.add(key)

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Process the queue with workers until stop_event is set."""
        log.info("Starting node-slice controller")
        threads = [
            threading.Thread(target=self._run_worker, name=f"{CONTROLLER_AGENT_NAME}-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()
        log.info("Started workers")
        try:
            stop_event.wait()
        finally:
            log.info("Shutting down workers")
            self.workqueue.shut_down()
            for thread in threads:
                thread.join()

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Sync one queued key; return False once the queue is shut down."""
        key, shutdown = self.workqueue.get()
        if shutdown:
            return False
        try:
            self.sync_handler(str(key))
        except Exception as err:
            self.workqueue.add_rate_limited(key)
            log.error("error syncing '%s': %s, requeuing", key, err)
        else:
            self.workqueue.forget(key)
            log.info("Successfully synced %s", key)
        finally:
            self.workqueue.done(key)
        return True

    def _node_list(self) -> list[Node]:
        nodes = self.cluster.list(NODE_KIND, "")
        if self.sort_results:
            nodes.sort(key=lambda node: node.name)
        return nodes

    def _check_for_multi_nad_mismatch(self, name: str, namespace: str) -> None:
        try:
            nad = self.cluster.get(NAD_KIND, namespace, name)
        except NotFoundError:
            return
        conf = ipam_configuration(nad, self.mount_path)
        for other in self.cluster.list(NAD_KIND, ""):
            if not check_ipam_conf_match(conf, ipam_configuration(other, self.mount_path)):
                raise ValueError(
                    "found IPAM conf mismatch for network-attachment-definitions "
                    "with same network name"
                )

    def _cleanup_deleted(self, name: str) -> None:
        for node_slice in self.cluster.list(NODE_SLICE_POOL_KIND, ""):
            if has_owner_ref(node_slice, name) and len(node_slice.owner_references) == 1:
                try:
                    self.cluster.delete(NODE_SLICE_POOL_KIND, self.whereabouts_namespace, name)
                except NotFoundError:
                    pass

    def sync_handler(self, key: str) -> None:
        """Bring the node slice pool of the keyed definition up to date."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            log.error("invalid resource key: %s", key)
            return
        self._check_for_multi_nad_mismatch(name, namespace)

        try:
            nad = self.cluster.get(NAD_KIND, namespace, name)
        except NotFoundError:
            self._cleanup_deleted(name)
            return

        conf = ipam_configuration(nad, self.mount_path)
        if not conf.node_slice_size or not conf.ip_ranges:
            log.info(
                "skipping update node slices for network-attachment-definition %s/%s "
                "due missing node slice or range configurations",
                namespace, name,
            )
            return

        network_range = conf.ip_ranges[0].range
        slice_name = get_slice_name(conf)
        try:
            current = self.cluster.get(NODE_SLICE_POOL_KIND, self.whereabouts_namespace, slice_name)
        except NotFoundError:
            log.info("node slice pool does not exist, creating")
            self._create_pool(nad, slice_name, network_range, conf.node_slice_size)
            return

        node_slice = copy.deepcopy(current)
        if not has_owner_ref(node_slice, name):
            node_slice.owner_references.append(get_auxiliary_owner_ref(nad))

        nodes = self._node_list()
        if current.slice_size != conf.node_slice_size or current.range != network_range:
            log.info(
                "network-attachment-definition range or slice size changed, "
                "re-allocating node slices: range %s, slice size %s",
                network_range, conf.node_slice_size,
            )
            allocations = _fresh_allocations(network_range, conf.node_slice_size)
            for node in nodes:
                assign_node_to_slice(allocations, node.name)
            node_slice.range = network_range
            node_slice.slice_size = conf.node_slice_size
        else:
            log.info("node slice exists and range configuration did not change, ensuring nodes assigned")
            allocations = list(node_slice.allocations)
            for node in nodes:
                assign_node_to_slice(allocations, node.name)
            remove_unused_nodes(allocations, nodes)
        node_slice.allocations = allocations
        self.cluster.update(node_slice)

    def _create_pool(
        self, nad: NetworkAttachmentDefinition, slice_name: str, network_range: str, slice_size: str
    ) -> None:
        allocations = _fresh_allocations(network_range, slice_size)
        for node in self._node_list():
            log.info("assigning node to slice: %s", node.name)
            assign_node_to_slice(allocations, node.name)
        node_slice = NodeSlicePool(
            name=slice_name,
            namespace=self.whereabouts_namespace,
            range=network_range,
            slice_size=slice_size,
            allocations=allocations,
            owner_references=[nad.controller_ref()],
        )
        self.cluster.create(node_slice)