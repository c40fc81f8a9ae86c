"""nftables DNAT rules for port forwarding and DNS redirection."""

from __future__ import annotations

import ipaddress
from typing import Optional

from netfence.model import (
    FirewallError,
    IPAddress,
    IPNetwork,
    PortForwardConfig,
    PortMapping,
)
from netfence.nft_rules import (
    DNATCHAIN,
    MASKCHAIN,
    NfObject,
    Operator,
    Ruleset,
    Statement,
    _match,
    _payload,
    get_chain,
    get_dport_cond,
    get_ip_match,
    get_jump_action,
    get_subnet_chain_name,
    get_subnet_match,
    make_basic_chain,
    make_rule,
)


def _nat_family(ip: IPAddress) -> str:
    return "ip6" if ip.version == 6 else "ip"


def _dnat(ip: IPAddress, port: int) -> Statement:
    return {"dnat": {"addr": str(ip), "family": _nat_family(ip), "port": port}}


def make_dns_dnat_rule(dns_ip: IPAddress, dns_port: int) -> NfObject:
    """Redirect DNS on port 53 of dns_ip to the server's real port."""
    return make_rule(
        DNATCHAIN,
        [
            get_ip_match(dns_ip, "daddr", Operator.EQ),
            _match({"meta": {"key": "l4proto"}}, {"set": ["udp", "tcp"]}, Operator.EQ),
            _match(_payload("th", "dport"), 53, Operator.EQ),
            _dnat(dns_ip, dns_port),
        ],
    )


def get_subnet_dport_match(
    dnat_chain: str,
    subnet: Optional[IPNetwork],
    host_ip_match: Optional[Statement],
    dport_match: Statement,
) -> NfObject:
    """Make the rule sending traffic from the subnet to the mark chain."""
    statements: list[Statement] = []
    if subnet is not None:
        statements.append(get_subnet_match(subnet, "saddr", Operator.EQ))
    if host_ip_match is not None:
        statements.append(host_ip_match)
    statements.append(dport_match)
    statements.append(get_jump_action(MASKCHAIN))
    return make_rule(dnat_chain, statements)


def get_dnat_port_rules(
    dnat_chain: str,
    port: PortMapping,
    ip: IPAddress,
    host_ip_cond: Optional[Statement],
) -> list[NfObject]:
    """Make one DNAT rule per forwarded port; nft rules here cannot map ranges."""
    count = 1 if port.range == 0 else port.range
    rules: list[NfObject] = []
    for offset in range(count):
        statements: list[Statement] = []
        if host_ip_cond is not None:
            statements.append(host_ip_cond)
        statements.append(
            _match(
                _payload(port.protocol, "dport"),
                port.host_port + offset,
                Operator.EQ,
            )
        )
        statements.append(_dnat(ip, port.container_port + offset))
        rules.append(make_rule(dnat_chain, statements))
    return rules


def _host_address(port: PortMapping, ip: IPAddress) -> tuple[bool, Optional[IPAddress]]:
    """Return whether the mapping applies to ip's family, and the host address."""
    if not port.host_ip:
        return True, None
    if port.host_ip == "0.0.0.0":
        return ip.version == 4, None
    if port.host_ip == "::":
        return ip.version == 6, None
    try:
        host = ipaddress.ip_address(port.host_ip)
    except ValueError as err:
        raise FirewallError(
            f'invalid host ip "{port.host_ip}" provided for port {port.host_port}'
        ) from err
    return host.version == ip.version, host


def get_dnat_rules_for_addr_family(
    ip: IPAddress,
    subnet: IPNetwork,
    net_id: str,
    existing_rules: Ruleset,
    setup_portfw: PortForwardConfig,
) -> list[NfObject]:
    """Make the chain and rules forwarding the mapped ports to one container address."""
    rules: list[NfObject] = []
    if setup_portfw.port_mappings is None:
        return rules

    subnet_dnat_chain = get_subnet_chain_name(subnet, net_id, True)
    if get_chain(existing_rules, subnet_dnat_chain) is None:
        rules.append(make_basic_chain(subnet_dnat_chain))

    for port in setup_portfw.port_mappings:
        dport_cond = get_dport_cond(port)
        applies, daddr = _host_address(port, ip)
        if not applies:
            continue
        daddr_cond = (
            None if daddr is None else get_ip_match(daddr, "daddr", Operator.EQ)
        )

        rules.append(
            make_rule(DNATCHAIN, [dport_cond, get_jump_action(subnet_dnat_chain)])
        )
        rules.append(
            get_subnet_dport_match(subnet_dnat_chain, subnet, daddr_cond, dport_cond)
        )

        if ip.version == 4:
            localhost: list[Statement] = [
                get_ip_match(ipaddress.ip_address("127.0.0.1"), "saddr", Operator.EQ)
            ]
            if daddr_cond is not None:
                localhost.append(daddr_cond)
            localhost.append(dport_cond)
            localhost.append(get_jump_action(MASKCHAIN))
            rules.append(make_rule(subnet_dnat_chain, localhost))

        rules.extend(get_dnat_port_rules(subnet_dnat_chain, port, ip, daddr_cond))

    return rules