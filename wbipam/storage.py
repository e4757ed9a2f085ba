"""Storage interfaces for IP pools and cluster-wide reservations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from .types import IPAddress, IPReservation, Mode

if TYPE_CHECKING:
    from .resources import OverlappingRangeIPReservation

REQUEST_TIMEOUT = 10.0
"""Seconds a single storage request may take."""

DATASTORE_RETRIES = 100
"""How many times updating a pool is attempted."""

POD_REFRESH_RETRIES = 3


class TemporaryError(Exception):
    """A storage failure that is worth retrying."""

    def temporary(self) -> bool:
        return True


def is_temporary(error: BaseException) -> bool:
    """Tell whether an error reports itself as temporary."""
    check = getattr(error, "temporary", None)
    return bool(callable(check) and check())


class IPPool(ABC):
    """A manageable pool of allocated IPs."""

    @abstractmethod
    def allocations(self) -> list[IPReservation]:
        """Return the reservations held by the pool."""

    @abstractmethod
    def update(self, reservations: list[IPReservation]) -> None:
        """Replace the pool's reservations."""


class OverlappingRangeStore(ABC):
    """Storage for cluster-wide reservations across overlapping ranges."""

    @abstractmethod
    def get_overlapping_range_ip_reservation(
        self, ip: IPAddress, pod_ref: str, network_name: str
    ) -> OverlappingRangeIPReservation | None:
        """Return the reservation for an IP, or None when it is free."""

    @abstractmethod
    def update_overlapping_range_allocation(
        self, mode: Mode, ip: IPAddress, pod_ref: str, if_name: str, network_name: str
    ) -> None:
        """Allocate or release a cluster-wide reservation."""


class Store(ABC):
    """The basic IP allocation operations of a storage backend."""

    @abstractmethod
    def get_ip_pool(self, pool_identifier: Any) -> IPPool:
        """Return the pool for the given identifier."""

    @abstractmethod
    def get_overlapping_range_store(self) -> OverlappingRangeStore:
        """Return the cluster-wide reservation store."""

    @abstractmethod
    def status(self) -> None:
        """Raise if the backend cannot be reached."""

    @abstractmethod
    def close(self) -> None:
        """Release the backend."""

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()