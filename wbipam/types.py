"""Configuration and reservation types for the IPAM plugin."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum
from typing import Any, Iterable, Mapping

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

DEFAULT_LEADER_LEASE_DURATION = 1500
DEFAULT_LEADER_RENEW_DEADLINE = 1000
DEFAULT_LEADER_RETRY_PERIOD = 500
ADD_TIME_LIMIT = timedelta(minutes=2)
DEL_TIME_LIMIT = timedelta(minutes=1)
DEFAULT_OVERLAPPING_IPS_FEATURES = True
DEFAULT_SLEEP_FOR_RACE = 0


class Mode(IntEnum):
    """Kind of IP management operation."""

    ALLOCATE = 0
    DEALLOCATE = 1


def _parse_ip(address: str) -> IPAddress:
    if "%" in address:
        raise ValueError(f"{address} is not a valid IP address")
    return ipaddress.ip_address(address)


def sanitize_ip(address: str) -> IPAddress:
    """Parse an IP address, accepting IPv4 octets with leading zeros."""
    if isinstance(address, str):
        try:
            return _parse_ip(address)
        except ValueError:
            pass
        parts = address.split(".")
        if len(parts) == 4 and all(p.isascii() and p.isdigit() for p in parts):
            try:
                return ipaddress.IPv4Address(".".join(str(int(p)) for p in parts))
            except ValueError:
                pass
    raise ValueError(f"{address} is not a valid IP address")


def backwards_compatible_ip_address(ip: str) -> IPAddress | None:
    """Return the parsed address, or None when it does not parse."""
    try:
        return sanitize_ip(ip)
    except ValueError:
        return None


class _Fields:
    """Typed access to a decoded JSON object, matching keys like encoding/json."""

    def __init__(self, data: Any, keys: Iterable[str], where: str) -> None:
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError(f"{where}: expected a JSON object, got {type(data).__name__}")
        self._data = data
        self._keys = frozenset(keys)
        self._where = where

    def raw(self, key: str) -> Any:
        if key in self._data:
            return self._data[key]
        folded = key.casefold()
        for name, value in self._data.items():
            if isinstance(name, str) and name not in self._keys and name.casefold() == folded:
                return value
        return None

    def _fail(self, key: str, expected: str, value: Any) -> None:
        raise ValueError(f"{self._where}.{key}: expected {expected}, got {type(value).__name__}")

    def string(self, key: str, default: str = "") -> str:
        value = self.raw(key)
        if value is None:
            return default
        if not isinstance(value, str):
            self._fail(key, "a string", value)
        return value

    def integer(self, key: str, default: int = 0) -> int:
        value = self.raw(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            self._fail(key, "an integer", value)
        return value

    def boolean(self, key: str, default: bool = False) -> bool:
        value = self.raw(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self._fail(key, "a boolean", value)
        return value

    def items(self, key: str) -> list[Any]:
        value = self.raw(key)
        if value is None:
            return []
        if not isinstance(value, list):
            self._fail(key, "an array", value)
        return list(value)

    def strings(self, key: str) -> list[str]:
        values = self.items(key)
        for value in values:
            if not isinstance(value, str):
                self._fail(key, "an array of strings", value)
        return values

    def mapping(self, key: str) -> dict[str, Any]:
        value = self.raw(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self._fail(key, "an object", value)
        return dict(value)

    def ip(self, key: str) -> IPAddress | None:
        value = self.string(key)
        if not value:
            return None
        try:
            return _parse_ip(value)
        except ValueError:
            raise ValueError(f"{self._where}.{key}: invalid IP address {value!r}") from None


@dataclass
class KubernetesConfig:
    """Kubernetes-specific connection settings."""

    kubeconfig_path: str = ""
    k8s_api_root: str = ""


def _kubernetes_from(data: Any) -> KubernetesConfig:
    fields = _Fields(data, ("kubeconfig", "k8s_api_root"), "kubernetes")
    return KubernetesConfig(
        kubeconfig_path=fields.string("kubeconfig"),
        k8s_api_root=fields.string("k8s_api_root"),
    )


@dataclass
class RangeConfiguration:
    """One entry of the ipRanges list."""

    range: str = ""
    omit_ranges: list[str] = field(default_factory=list)
    range_start: IPAddress | None = None
    range_end: IPAddress | None = None


def _range_from(data: Any) -> RangeConfiguration:
    fields = _Fields(data, ("exclude", "range", "range_start", "range_end"), "ipRanges")
    return RangeConfiguration(
        range=fields.string("range"),
        omit_ranges=fields.strings("exclude"),
        range_start=fields.ip("range_start"),
        range_end=fields.ip("range_end"),
    )


@dataclass
class Address:
    """A static address entry."""

    address_str: str = ""
    gateway: IPAddress | None = None
    address: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None
    version: str = ""


def _address_from(data: Any) -> Address:
    fields = _Fields(data, ("address", "gateway", "Address", "Version"), "addresses")
    return Address(
        address_str=fields.string("address"),
        gateway=fields.ip("gateway"),
        version=fields.string("Version"),
    )


@dataclass
class IPReservation:
    """An address reserved for a pod interface."""

    ip: IPAddress
    container_id: str = ""
    pod_ref: str = ""
    if_name: str = ""
    is_allocated: bool = False

    def __str__(self) -> str:
        return f"IP: {self.ip} is reserved for pod: {self.pod_ref}"


_IPAM_KEYS = (
    "Name", "type", "routes", "datastore", "addresses", "ipRanges", "node_slice_size",
    "exclude", "dns", "range", "range_start", "range_end", "gateway", "etcd_host",
    "etcd_username", "etcd_password", "etcd_key_file", "etcd_cert_file",
    "etcd_ca_cert_file", "leader_lease_duration", "leader_renew_deadline",
    "leader_retry_period", "log_file", "log_level", "reconciler_cron_expression",
    "enable_overlapping_ranges", "sleep_for_race", "Gateway", "kubernetes",
    "configuration_path", "PodName", "PodNamespace", "network_name",
)


@dataclass
class IPAMConfig:
    """The IPAM section of a network configuration."""

    name: str = ""
    type: str = ""
    routes: list[dict[str, Any]] = field(default_factory=list)
    addresses: list[Address] = field(default_factory=list)
    ip_ranges: list[RangeConfiguration] = field(default_factory=list)
    omit_ranges: list[str] = field(default_factory=list)
    dns: dict[str, Any] = field(default_factory=dict)
    range: str = ""
    node_slice_size: str = ""
    range_start: IPAddress | None = None
    range_end: IPAddress | None = None
    gateway_str: str = ""
    leader_lease_duration: int = 0
    leader_renew_deadline: int = 0
    leader_retry_period: int = 0
    log_file: str = ""
    log_level: str = ""
    reconciler_cron_expression: str = ""
    overlapping_ranges: bool = DEFAULT_OVERLAPPING_IPS_FEATURES
    sleep_for_race: int = DEFAULT_SLEEP_FOR_RACE
    gateway: IPAddress | None = None
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    configuration_path: str = ""
    pod_name: str = ""
    pod_namespace: str = ""
    network_name: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> IPAMConfig:
        """Build a configuration from a decoded JSON object."""
        f = _Fields(data, _IPAM_KEYS, "ipam")
        routes = f.items("routes")
        for route in routes:
            if route is not None and not isinstance(route, Mapping):
                f._fail("routes", "an array of objects", route)
        return cls(
            name=f.string("Name"),
            type=f.string("type"),
            routes=[dict(r) for r in routes if r is not None],
            addresses=[_address_from(a) for a in f.items("addresses")],
            ip_ranges=[_range_from(r) for r in f.items("ipRanges")],
            omit_ranges=f.strings("exclude"),
            dns=f.mapping("dns"),
            range=f.string("range"),
            node_slice_size=f.string("node_slice_size"),
            range_start=backwards_compatible_ip_address(f.string("range_start")),
            range_end=backwards_compatible_ip_address(f.string("range_end")),
            gateway_str=f.string("gateway"),
            leader_lease_duration=f.integer("leader_lease_duration"),
            leader_renew_deadline=f.integer("leader_renew_deadline"),
            leader_retry_period=f.integer("leader_retry_period"),
            log_file=f.string("log_file"),
            log_level=f.string("log_level"),
            reconciler_cron_expression=f.string("reconciler_cron_expression"),
            overlapping_ranges=f.boolean(
                "enable_overlapping_ranges", DEFAULT_OVERLAPPING_IPS_FEATURES
            ),
            sleep_for_race=f.integer("sleep_for_race", DEFAULT_SLEEP_FOR_RACE),
            gateway=backwards_compatible_ip_address(f.string("Gateway")),
            kubernetes=_kubernetes_from(f.raw("kubernetes")),
            configuration_path=f.string("configuration_path"),
            pod_name=f.string("PodName"),
            pod_namespace=f.string("PodNamespace"),
            network_name=f.string("network_name"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> IPAMConfig:
        """Build a configuration from JSON text."""
        return cls.from_dict(json.loads(data))

    def pod_ref(self) -> str:
        """Return the "namespace/name" reference of the pod."""
        return f"{self.pod_namespace}/{self.pod_name}"


@dataclass
class Net:
    """A network configuration carrying an IPAM section."""

    name: str = ""
    cni_version: str = ""
    ipam: IPAMConfig | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Net:
        f = _Fields(data, ("name", "cniVersion", "ipam"), "net")
        ipam = f.raw("ipam")
        return cls(
            name=f.string("name"),
            cni_version=f.string("cniVersion"),
            ipam=None if ipam is None else IPAMConfig.from_dict(ipam),
        )


@dataclass
class NetConfList:
    """An ordered list of network configurations."""

    cni_version: str = ""
    name: str = ""
    disable_check: bool = False
    plugins: list[Net | None] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> NetConfList:
        f = _Fields(data, ("cniVersion", "name", "disableCheck", "plugins"), "conflist")
        return cls(
            cni_version=f.string("cniVersion"),
            name=f.string("name"),
            disable_check=f.boolean("disableCheck"),
            plugins=[None if p is None else Net.from_dict(p) for p in f.items("plugins")],
        )