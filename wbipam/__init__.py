"""Cluster-wide IP address management: IP pools, node slices, overlapping-range reservations and an orphaned-IP reconciler."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "version",
    "storage",
    "resources",
    "cluster",
    "pools",
    "client",
    "ipam",
    "wrapped_pod",
    "iploop",
    "config_watcher",
    "node_controller",
    "signals",
]