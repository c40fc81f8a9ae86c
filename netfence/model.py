"""Network and port-forwarding descriptions shared by the firewall drivers."""

from __future__ import annotations

import enum
import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class FirewallError(Exception):
    """Raised when a firewall operation cannot be completed."""


class IsolateOption(enum.Enum):
    """How strictly a network is isolated from other networks."""

    NORMAL = "Normal"
    STRICT = "Strict"
    NEVER = "Never"


def _expect_str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"field {key!r} must be a string")
    return value


def _expect_int(data: dict[str, Any], key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"field {key!r} must be an integer")
    return value


def _optional_ip(value: Any) -> Optional[IPAddress]:
    return None if value is None else ipaddress.ip_address(value)


def _optional_net(value: Any) -> Optional[IPNetwork]:
    return None if value is None else ipaddress.ip_network(value, strict=False)


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _loads(text: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except ValueError as err:
        raise FirewallError(f"invalid {what} json: {err}") from err
    if not isinstance(data, dict):
        raise FirewallError(f"invalid {what} json: expected an object")
    return data


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"))


@dataclass(frozen=True)
class PortMapping:
    """A host port (or range of ports) forwarded to a container port."""

    container_port: int
    host_port: int
    protocol: str
    host_ip: str = ""
    range: int = 1

    def _to_dict(self) -> dict[str, Any]:
        return {
            "host_ip": self.host_ip,
            "container_port": self.container_port,
            "host_port": self.host_port,
            "range": self.range,
            "protocol": self.protocol,
        }

    @classmethod
    def _from_dict(cls, data: Any) -> PortMapping:
        if not isinstance(data, dict):
            raise TypeError("port mapping must be an object")
        return cls(
            container_port=_expect_int(data, "container_port"),
            host_port=_expect_int(data, "host_port"),
            protocol=_expect_str(data, "protocol"),
            host_ip=_expect_str(data, "host_ip"),
            range=_expect_int(data, "range"),
        )


@dataclass
class SetupNetwork:
    """Everything a driver needs to set up the firewall for one network."""

    bridge_name: str
    network_id: str
    network_hash_name: str
    isolation: IsolateOption
    dns_port: int
    subnets: Optional[list[IPNetwork]] = None

    def to_json(self) -> str:
        """Serialize to the compact JSON stored in the state directory."""
        return _dumps(
            {
                "subnets": None
                if self.subnets is None
                else [str(net) for net in self.subnets],
                "bridge_name": self.bridge_name,
                "network_id": self.network_id,
                "network_hash_name": self.network_hash_name,
                "isolation": self.isolation.value,
                "dns_port": self.dns_port,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> SetupNetwork:
        """Parse the JSON written by :meth:`to_json`."""
        data = _loads(text, "network config")
        try:
            subnets = data["subnets"]
            if subnets is not None and not isinstance(subnets, list):
                raise TypeError("field 'subnets' must be a list")
            return cls(
                bridge_name=_expect_str(data, "bridge_name"),
                network_id=_expect_str(data, "network_id"),
                network_hash_name=_expect_str(data, "network_hash_name"),
                isolation=IsolateOption(data["isolation"]),
                dns_port=_expect_int(data, "dns_port"),
                subnets=None
                if subnets is None
                else [ipaddress.ip_network(net, strict=False) for net in subnets],
            )
        except (KeyError, TypeError, ValueError) as err:
            raise FirewallError(f"invalid network config: {err}") from err


@dataclass
class PortForwardConfig:
    """Port forwarding and DNS redirection settings for one container."""

    container_id: str
    network_id: str
    network_name: str
    network_hash_name: str
    port_mappings: Optional[list[PortMapping]] = None
    container_ip_v4: Optional[IPAddress] = None
    subnet_v4: Optional[IPNetwork] = None
    container_ip_v6: Optional[IPAddress] = None
    subnet_v6: Optional[IPNetwork] = None
    dns_port: int = 53
    dns_server_ips: list[IPAddress] = field(default_factory=list)

    def to_json(self) -> str:
        """Serialize to the compact JSON stored in the state directory."""
        return _dumps(
            {
                "container_id": self.container_id,
                "network_id": self.network_id,
                "port_mappings": None
                if self.port_mappings is None
                else [port._to_dict() for port in self.port_mappings],
                "network_name": self.network_name,
                "network_hash_name": self.network_hash_name,
                "container_ip_v4": _str_or_none(self.container_ip_v4),
                "subnet_v4": _str_or_none(self.subnet_v4),
                "container_ip_v6": _str_or_none(self.container_ip_v6),
                "subnet_v6": _str_or_none(self.subnet_v6),
                "dns_port": self.dns_port,
                "dns_server_ips": [str(ip) for ip in self.dns_server_ips],
            }
        )

    @classmethod
    def from_json(cls, text: str) -> PortForwardConfig:
        """Parse the JSON written by :meth:`to_json`."""
        data = _loads(text, "port config")
        try:
            ports = data["port_mappings"]
            if ports is not None and not isinstance(ports, list):
                raise TypeError("field 'port_mappings' must be a list")
            dns_ips = data["dns_server_ips"]
            if not isinstance(dns_ips, list):
                raise TypeError("field 'dns_server_ips' must be a list")
            return cls(
                container_id=_expect_str(data, "container_id"),
                network_id=_expect_str(data, "network_id"),
                network_name=_expect_str(data, "network_name"),
                network_hash_name=_expect_str(data, "network_hash_name"),
                port_mappings=None
                if ports is None
                else [PortMapping._from_dict(port) for port in ports],
                container_ip_v4=_optional_ip(data["container_ip_v4"]),
                subnet_v4=_optional_net(data["subnet_v4"]),
                container_ip_v6=_optional_ip(data["container_ip_v6"]),
                subnet_v6=_optional_net(data["subnet_v6"]),
                dns_port=_expect_int(data, "dns_port"),
                dns_server_ips=[ipaddress.ip_address(ip) for ip in dns_ips],
            )
        except (KeyError, TypeError, ValueError) as err:
            raise FirewallError(f"invalid port config: {err}") from err


@dataclass
class TearDownNetwork:
    """Request to remove the firewall rules of a network."""

    config: SetupNetwork
    complete_teardown: bool


@dataclass
class TeardownPortForward:
    """Request to remove the port forwarding rules of a container."""

    config: PortForwardConfig
    complete_teardown: bool