"""nftables batches that set up and tear down a bridge network."""

from __future__ import annotations

import logging
from typing import Any

from netfence.model import IPNetwork, IsolateOption, SetupNetwork, TearDownNetwork
from netfence.nft_rules import (
    DNATCHAIN,
    DNATPRIO,
    FAMILY,
    FILTERPRIO,
    FORWARDCHAIN,
    INPUTCHAIN,
    ISOLATION1CHAIN,
    ISOLATION2CHAIN,
    ISOLATION3CHAIN,
    MASK,
    MASKCHAIN,
    OUTPUTCHAIN,
    POSTROUTINGCHAIN,
    PREROUTINGCHAIN,
    SRCNATPRIO,
    TABLENAME,
    Batch,
    ChainType,
    Hook,
    Operator,
    Rule,
    RuleMatcher,
    Ruleset,
    Statement,
    _match,
    _payload,
    get_chain,
    get_dest_bridge_match,
    get_jump_action,
    get_matching_rules_in_chain,
    get_subnet_chain_name,
    get_subnet_match,
    make_basic_chain,
    make_complex_chain,
    make_rule,
    rule_matcher_bridge,
    rule_matcher_jump_to,
)

log = logging.getLogger(__name__)

# Multicast destinations excluded from masquerading, as (address, prefix length).
_MULTICAST_V4 = ("224.0.0.0", 4)
_MULTICAST_V6 = ("ff::", 8)


def _is_number(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _statements(rule: Rule) -> list[Statement]:
    return list(rule.get("expr", ()))


def _matches_mask(rule: Rule) -> bool:
    for statement in _statements(rule):
        right = statement.get("match", {}).get("right") if "match" in statement else None
        if _is_number(right) and right == MASK:
            return True
    return False


def _has_statement(kind: str) -> RuleMatcher:
    def matcher(rule: Rule) -> bool:
        return any(kind in statement for statement in _statements(rule))

    return matcher


def _subnet_matcher(subnet: IPNetwork) -> RuleMatcher:
    addr = str(subnet.network_address)
    length = subnet.prefixlen

    def matcher(rule: Rule) -> bool:
        for statement in _statements(rule):
            if "match" not in statement:
                continue
            right = statement["match"].get("right")
            if not isinstance(right, dict) or "prefix" not in right:
                continue
            prefix = right["prefix"]
            if prefix.get("addr") == addr and prefix.get("len") == length:
                return True
        return False

    return matcher


def _meta(key: str) -> dict[str, Any]:
    return {"meta": {"key": key}}


def _ct_state() -> dict[str, Any]:
    return {"ct": {"key": "state"}}


def _multicast_exclusion(subnet: IPNetwork) -> Statement:
    addr, length = _MULTICAST_V6 if subnet.version == 6 else _MULTICAST_V4
    proto = "ip6" if subnet.version == 6 else "ip"
    return _match(
        _payload(proto, "daddr"),
        {"prefix": {"addr": addr, "len": length}},
        Operator.NEQ,
    )


def _add_subnet(batch: Batch, subnet: IPNetwork, chain: str) -> None:
    batch.add(make_basic_chain(chain))
    log.info("Creating container chain %s", chain)

    batch.add(
        make_rule(
            chain,
            [get_subnet_match(subnet, "daddr", Operator.EQ), {"accept": None}],
        )
    )
    batch.add(make_rule(chain, [_multicast_exclusion(subnet), {"masquerade": None}]))

    # Input: saddr <subnet> l4proto {udp, tcp} th dport 53 accept
    batch.add(
        make_rule(
            INPUTCHAIN,
            [
                get_subnet_match(subnet, "saddr", Operator.EQ),
                _match(_meta("l4proto"), {"set": ["udp", "tcp"]}, Operator.EQ),
                _match(_payload("th", "dport"), 53, Operator.EQ),
                {"accept": None},
            ],
        )
    )
    # Forward: daddr <subnet> ct state established,related accept
    batch.add(
        make_rule(
            FORWARDCHAIN,
            [
                get_subnet_match(subnet, "daddr", Operator.EQ),
                _match(_ct_state(), ["established", "related"], Operator.IN),
                {"accept": None},
            ],
        )
    )
    # Forward: saddr <subnet> accept
    batch.add(
        make_rule(
            FORWARDCHAIN,
            [get_subnet_match(subnet, "saddr", Operator.EQ), {"accept": None}],
        )
    )
    # Postrouting: saddr <subnet> jump <chain>
    batch.add(
        make_rule(
            POSTROUTINGCHAIN,
            [get_subnet_match(subnet, "saddr", Operator.EQ), get_jump_action(chain)],
        )
    )


def setup_network_batch(network_setup: SetupNetwork, existing_rules: Ruleset) -> Batch:
    """Build the batch creating the table, chains and rules of a network."""
    batch = Batch()
    batch.add({"table": {"family": FAMILY, "name": TABLENAME}})

    batch.add(make_complex_chain(INPUTCHAIN, ChainType.FILTER, Hook.INPUT, FILTERPRIO))
    batch.add(
        make_complex_chain(FORWARDCHAIN, ChainType.FILTER, Hook.FORWARD, FILTERPRIO)
    )
    batch.add(
        make_complex_chain(
            POSTROUTINGCHAIN, ChainType.NAT, Hook.POSTROUTING, SRCNATPRIO
        )
    )
    batch.add(
        make_complex_chain(PREROUTINGCHAIN, ChainType.NAT, Hook.PREROUTING, DNATPRIO)
    )
    batch.add(make_complex_chain(OUTPUTCHAIN, ChainType.NAT, Hook.OUTPUT, DNATPRIO))

    for name in (DNATCHAIN, MASKCHAIN, ISOLATION1CHAIN, ISOLATION2CHAIN, ISOLATION3CHAIN):
        batch.add(make_basic_chain(name))

    def missing(chain: str, matcher: RuleMatcher) -> bool:
        return not get_matching_rules_in_chain(existing_rules, chain, matcher)

    # Postrouting: meta mark & 0x2000 == 0x2000 masquerade (only one copy)
    if missing(POSTROUTINGCHAIN, _matches_mask):
        batch.add(
            make_rule(
                POSTROUTINGCHAIN,
                [
                    _match({"&": [_meta("mark"), MASK]}, MASK, Operator.EQ),
                    {"masquerade": None},
                ],
            )
        )

    # Mask chain: meta mark set mark | 0x2000 (only one copy)
    if missing(MASKCHAIN, _has_statement("mangle")):
        batch.add(
            make_rule(
                MASKCHAIN,
                [{"mangle": {"key": _meta("mark"), "value": {"|": [_meta("mark"), MASK]}}}],
            )
        )

    # Prerouting and output: fib daddr type local jump <dnat chain>
    jump_dnat = rule_matcher_jump_to(DNATCHAIN)
    base_conditions = [
        _match({"fib": {"result": "type", "flags": ["daddr"]}}, "local", Operator.EQ),
        get_jump_action(DNATCHAIN),
    ]
    if missing(PREROUTINGCHAIN, jump_dnat):
        batch.add(make_rule(PREROUTINGCHAIN, base_conditions))
    if missing(OUTPUTCHAIN, jump_dnat):
        batch.add(make_rule(OUTPUTCHAIN, base_conditions))

    # Forward: ct state invalid drop
    if missing(FORWARDCHAIN, _has_statement("drop")):
        batch.add(
            make_rule(
                FORWARDCHAIN,
                [_match(_ct_state(), "invalid", Operator.IN), {"drop": None}],
            )
        )

    # Forward: jump ISOLATION-1
    if missing(FORWARDCHAIN, rule_matcher_jump_to(ISOLATION1CHAIN)):
        batch.add(make_rule(FORWARDCHAIN, [get_jump_action(ISOLATION1CHAIN)]))

    bridge = network_setup.bridge_name
    our_bridge = rule_matcher_bridge(bridge)
    isolation = network_setup.isolation

    if isolation in (IsolateOption.NORMAL, IsolateOption.STRICT):
        target = (
            ISOLATION3CHAIN if isolation is IsolateOption.STRICT else ISOLATION2CHAIN
        )
        if missing(ISOLATION1CHAIN, our_bridge):
            batch.add(
                make_rule(
                    ISOLATION1CHAIN,
                    [
                        _match(_meta("iifname"), bridge, Operator.EQ),
                        _match(_meta("oifname"), bridge, Operator.NEQ),
                        get_jump_action(target),
                    ],
                )
            )
        if missing(ISOLATION2CHAIN, our_bridge):
            batch.add(
                make_rule(
                    ISOLATION2CHAIN, [get_dest_bridge_match(bridge), {"drop": None}]
                )
            )
    elif missing(ISOLATION3CHAIN, our_bridge):
        # Inserted at the head so the jump to ISOLATION-2 stays last.
        batch.insert(
            make_rule(ISOLATION3CHAIN, [get_dest_bridge_match(bridge), {"drop": None}])
        )

    # Always present, and the last rule of ISOLATION-3.
    if missing(ISOLATION3CHAIN, rule_matcher_jump_to(ISOLATION2CHAIN)):
        batch.add(make_rule(ISOLATION3CHAIN, [get_jump_action(ISOLATION2CHAIN)]))

    for subnet in network_setup.subnets or ():
        chain = get_subnet_chain_name(subnet, network_setup.network_id, False)
        if get_chain(existing_rules, chain) is not None:
            continue
        _add_subnet(batch, subnet, chain)

    return batch


def teardown_network_batch(tear: TearDownNetwork, existing_rules: Ruleset) -> Batch:
    """Build the batch removing a network's rules and chains."""
    batch = Batch()
    config = tear.config

    for subnet in config.subnets or ():
        matcher = _subnet_matcher(subnet)
        to_remove: list[Rule] = []
        for chain in (INPUTCHAIN, FORWARDCHAIN, POSTROUTINGCHAIN):
            to_remove.extend(get_matching_rules_in_chain(existing_rules, chain, matcher))
        log.debug("Removing %d rules", len(to_remove))
        for rule in to_remove:
            batch.delete({"rule": rule})

        # The chain goes last, after the rules jumping to it.
        chain_name = get_subnet_chain_name(subnet, config.network_id, False)
        found = get_chain(existing_rules, chain_name)
        if found is not None:
            batch.delete({"chain": found})

    our_bridge = rule_matcher_bridge(config.bridge_name)
    isolation_rules: list[Rule] = []
    for chain in (ISOLATION1CHAIN, ISOLATION2CHAIN, ISOLATION3CHAIN):
        isolation_rules.extend(
            get_matching_rules_in_chain(existing_rules, chain, our_bridge)
        )
    log.debug("Removing %d isolation rules for network", len(isolation_rules))
    for rule in isolation_rules:
        batch.delete({"rule": rule})

    return batch