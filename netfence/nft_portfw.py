"""nftables batches that set up and tear down a container's port forwarding."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from netfence.model import IPAddress, PortForwardConfig, PortMapping, TeardownPortForward
from netfence.nft_dnat import get_dnat_rules_for_addr_family, make_dns_dnat_rule
from netfence.nft_rules import (
    DNATCHAIN,
    Batch,
    Rule,
    RuleMatcher,
    Ruleset,
    get_chain,
    get_matching_rules_in_chain,
    get_subnet_chain_name,
)


def _is_number(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _range_bounds(right: Any) -> Optional[list[Any]]:
    if isinstance(right, dict) and "range" in right:
        return list(right["range"])
    return None


def _last_port(port: PortMapping) -> int:
    return port.host_port + port.range - 1


def _range_matches(bounds: list[Any], port: PortMapping) -> Optional[bool]:
    """None for a malformed range, else whether it spans exactly the mapping."""
    if len(bounds) != 2:
        return None
    start, end = bounds
    return (
        _is_number(start)
        and start == port.host_port
        and _is_number(end)
        and end == _last_port(port)
    )


def port_jump_matcher(
    port: PortMapping, dnat_chain_v4: Optional[str], dnat_chain_v6: Optional[str]
) -> RuleMatcher:
    """Match rules checking the mapping's port(s) and jumping to a container DNAT chain."""
    targets = {chain for chain in (dnat_chain_v4, dnat_chain_v6) if chain is not None}

    def matcher(rule: Rule) -> bool:
        match_jump = False
        match_port = False
        for statement in rule.get("expr", ()):
            if "match" in statement:
                right = statement["match"].get("right")
                bounds = _range_bounds(right)
                if _is_number(right):
                    hit = port.range <= 1 and right == port.host_port
                elif bounds is not None and port.range > 1:
                    hit = _range_matches(bounds, port)
                    if hit is None:
                        return False
                else:
                    continue
                if hit:
                    if match_jump:
                        return True
                    match_port = True
            elif "jump" in statement:
                if statement["jump"].get("target") in targets:
                    if match_port:
                        return True
                    match_jump = True
        return match_jump and match_port

    return matcher


def port_range_matcher(port: PortMapping) -> RuleMatcher:
    """Match rules checking any single port inside the mapping, or its whole range."""

    def matcher(rule: Rule) -> bool:
        for statement in rule.get("expr", ()):
            if "match" not in statement:
                continue
            right = statement["match"].get("right")
            if _is_number(right):
                if port.range <= 1 and right == port.host_port:
                    return True
                if port.range > 1 and port.host_port <= right <= _last_port(port):
                    return True
                continue
            bounds = _range_bounds(right)
            if bounds is not None and port.range > 1:
                hit = _range_matches(bounds, port)
                if hit is None:
                    return False
                if hit:
                    return True
        return False

    return matcher


def dns_ip_matcher(ips: Iterable[IPAddress]) -> RuleMatcher:
    """Match rules comparing anything with one of the DNS server addresses."""
    wanted = {str(ip) for ip in ips}

    def matcher(rule: Rule) -> bool:
        for statement in rule.get("expr", ()):
            if "match" not in statement:
                continue
            right = statement["match"].get("right")
            if isinstance(right, str) and right in wanted:
                return True
        return False

    return matcher


def setup_port_forward_batch(
    setup_portfw: PortForwardConfig, existing_rules: Ruleset
) -> Batch:
    """Build the batch adding DNS redirection and port forwarding for a container."""
    batch = Batch()

    # DNS needs redirecting when the server is not on port 53; one rule per address.
    if setup_portfw.dns_port != 53:
        for ip in setup_portfw.dns_server_ips:
            if get_matching_rules_in_chain(existing_rules, DNATCHAIN, dns_ip_matcher([ip])):
                continue
            container_ip = (
                setup_portfw.container_ip_v6
                if ip.version == 6
                else setup_portfw.container_ip_v4
            )
            if container_ip is not None:
                batch.add(make_dns_dnat_rule(ip, setup_portfw.dns_port))

    families = (
        (setup_portfw.container_ip_v4, setup_portfw.subnet_v4),
        (setup_portfw.container_ip_v6, setup_portfw.subnet_v6),
    )
    for ip, subnet in families:
        if ip is None or subnet is None:
            continue
        for rule in get_dnat_rules_for_addr_family(
            ip, subnet, setup_portfw.network_id, existing_rules, setup_portfw
        ):
            batch.add(rule)

    return batch


def teardown_port_forward_batch(
    teardown_pf: TeardownPortForward, existing_rules: Ruleset
) -> Batch:
    """Build the batch removing a container's port forwarding rules."""
    batch = Batch()
    config = teardown_pf.config

    dnat_chain_v4 = (
        None
        if config.subnet_v4 is None
        else get_subnet_chain_name(config.subnet_v4, config.network_id, True)
    )
    dnat_chain_v6 = (
        None
        if config.subnet_v6 is None
        else get_subnet_chain_name(config.subnet_v6, config.network_id, True)
    )
    container_chains = [c for c in (dnat_chain_v4, dnat_chain_v6) if c is not None]

    for port in config.port_mappings or ():
        jump_matcher = port_jump_matcher(port, dnat_chain_v4, dnat_chain_v6)
        for rule in get_matching_rules_in_chain(existing_rules, DNATCHAIN, jump_matcher):
            batch.delete({"rule": rule})
        range_matcher = port_range_matcher(port)
        for chain in container_chains:
            for rule in get_matching_rules_in_chain(existing_rules, chain, range_matcher):
                batch.delete({"rule": rule})

    if teardown_pf.complete_teardown:
        dns_matcher = dns_ip_matcher(config.dns_server_ips)
        for rule in get_matching_rules_in_chain(existing_rules, DNATCHAIN, dns_matcher):
            batch.delete({"rule": rule})
        for chain in container_chains:
            found = get_chain(existing_rules, chain)
            if found is not None:
                batch.delete({"chain": found})

    return batch