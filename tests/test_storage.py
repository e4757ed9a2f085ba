import ipaddress

import pytest

from wbipam.storage import IPPool, Store, TemporaryError, is_temporary
from wbipam.types import IPReservation


class MemoryPool(IPPool):
    def __init__(self, reservations):
        self._reservations = list(reservations)

    def allocations(self):
        return list(self._reservations)

    def update(self, reservations):
        self._reservations = list(reservations)


class MemoryStore(Store):
    def __init__(self):
        self.closed = False
        self.pool = MemoryPool([])

    def get_ip_pool(self, pool_identifier):
        return self.pool

    def get_overlapping_range_store(self):
        raise NotImplementedError

    def status(self):
        return None

    def close(self):
        self.closed = True


def test_abstract_pool_cannot_be_instantiated():
    with pytest.raises(TypeError):
        IPPool()


def test_pool_update_round_trip():
    reservation = IPReservation(ip=ipaddress.ip_address("10.0.0.1"), pod_ref="default/pod1")
    pool = MemoryPool([])
    pool.update([reservation])
    assert pool.allocations() == [reservation]


def test_store_context_manager_closes():
    reservation = IPReservation(ip=ipaddress.ip_address("10.0.0.2"), pod_ref="default/pod2")
    with MemoryStore() as store:
        pool = store.get_ip_pool(None)
        pool.update([reservation])
        assert store.closed is False
    assert store.closed is True
    assert pool.allocations() == [reservation]


def test_temporary_error_is_temporary():
    error = TemporaryError("k8s pool initialized")
    assert is_temporary(error) is True
    assert str(error) == "k8s pool initialized"


def test_plain_error_is_not_temporary():
    assert is_temporary(ValueError("boom")) is False


def test_error_reporting_not_temporary():
    class Declined(Exception):
        def temporary(self):
            return False

    assert is_temporary(Declined()) is False


def test_temporary_error_keeps_cause():
    cause = RuntimeError("already exists")
    try:
        raise TemporaryError(str(cause)) from cause
    except TemporaryError as error:
        assert error.__cause__ is cause
        assert is_temporary(error)