import ipaddress
import json

import pytest

from netfence.model import PortMapping
from netfence.nft_rules import (
    DNATCHAIN,
    FORWARDCHAIN,
    ISOLATION1CHAIN,
    TABLENAME,
    Batch,
    ChainType,
    Hook,
    Operator,
    get_chain,
    get_dest_bridge_match,
    get_dport_cond,
    get_ip_match,
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


def _ruleset(*objects):
    return {"nftables": list(objects)}


def test_subnet_chain_name_v4_pinned():
    net = ipaddress.ip_network("10.0.0.0/24")
    assert get_subnet_chain_name(net, "abcdefghijkl", False) == "nv_abcdefgh_10_0_0_0_nm24"


@pytest.mark.parametrize("subnet", ["10.88.0.0/16", "fd00::/64", "2001:db8::/48"])
def test_subnet_chain_name_has_no_special_characters(subnet):
    name = get_subnet_chain_name(ipaddress.ip_network(subnet), "c2c8a0732528", True)
    assert name.startswith("nv_c2c8a073_")
    assert name.endswith("_dnat")
    assert not any(ch in name for ch in "./:")


def test_subnet_chain_name_short_id_kept_whole():
    net = ipaddress.ip_network("10.0.0.0/24")
    plain = get_subnet_chain_name(net, "abc", False)
    assert plain.startswith("nv_abc_")
    assert get_subnet_chain_name(net, "abc", True) == plain + "_dnat"


def test_make_rule_and_chains():
    rule = make_rule(FORWARDCHAIN, [get_jump_action(ISOLATION1CHAIN)])["rule"]
    assert rule["table"] == TABLENAME
    assert rule["family"] == "inet"
    assert rule["chain"] == FORWARDCHAIN
    assert rule["expr"] == [{"jump": {"target": ISOLATION1CHAIN}}]

    basic = make_basic_chain("mychain")["chain"]
    assert basic == {"family": "inet", "table": TABLENAME, "name": "mychain"}

    complex_chain = make_complex_chain("INPUT", ChainType.FILTER, Hook.INPUT, 0)["chain"]
    assert complex_chain["type"] == "filter"
    assert complex_chain["hook"] == "input"
    assert complex_chain["prio"] == 0
    assert complex_chain["policy"] == "accept"


def test_make_rule_copies_conditions():
    cond = get_jump_action("a")
    rule = make_rule("x", [cond])
    cond["jump"]["target"] = "b"
    assert rule["rule"]["expr"][0]["jump"]["target"] == "a"


def test_subnet_and_ip_match():
    net = ipaddress.ip_network("fd00:1::/64")
    stmt = get_subnet_match(net, "saddr", Operator.NEQ)["match"]
    assert stmt["op"] == "!="
    assert stmt["left"] == {"payload": {"protocol": "ip6", "field": "saddr"}}
    assert stmt["right"]["prefix"]["addr"] == str(net.network_address)
    assert stmt["right"]["prefix"]["len"] == net.prefixlen

    ip = ipaddress.ip_address("10.0.0.2")
    ip_stmt = get_ip_match(ip, "daddr", "==")["match"]
    assert ip_stmt["left"]["payload"]["protocol"] == "ip"
    assert ip_stmt["right"] == str(ip)


def test_dport_cond_single_and_range():
    single = PortMapping(container_port=80, host_port=8080, protocol="tcp")
    stmt = get_dport_cond(single)["match"]
    assert stmt["right"] == single.host_port
    assert stmt["left"]["payload"] == {"protocol": "tcp", "field": "dport"}

    ranged = PortMapping(container_port=80, host_port=8080, protocol="udp", range=5)
    low, high = get_dport_cond(ranged)["match"]["right"]["range"]
    assert low == ranged.host_port
    assert high - low == ranged.range - 1


def test_batch_order_and_json():
    batch = Batch()
    batch.add(make_basic_chain("a"))
    batch.insert(make_rule("a", [get_jump_action("b")]))
    batch.delete(make_basic_chain("c"))
    doc = batch.to_nftables()
    assert len(batch) == 3
    assert [next(iter(cmd)) for cmd in doc["nftables"]] == ["add", "insert", "delete"]
    assert json.loads(json.dumps(doc)) == doc


def test_matching_rules_by_chain_and_jump():
    ruleset = _ruleset(
        {"metainfo": {"version": "1.0"}},
        make_basic_chain(FORWARDCHAIN),
        make_rule(FORWARDCHAIN, [get_jump_action(ISOLATION1CHAIN)]),
        make_rule(FORWARDCHAIN, [get_jump_action(DNATCHAIN)]),
        make_rule("OTHER", [get_jump_action(ISOLATION1CHAIN)]),
        {"add": make_rule(FORWARDCHAIN, [get_jump_action(ISOLATION1CHAIN)])},
    )
    found = get_matching_rules_in_chain(
        ruleset, FORWARDCHAIN, rule_matcher_jump_to(ISOLATION1CHAIN)
    )
    assert len(found) == 1
    assert found[0]["chain"] == FORWARDCHAIN
    assert get_matching_rules_in_chain(ruleset, "MISSING", lambda r: True) == []


def test_jump_matcher_uses_first_jump_only():
    rule = make_rule("x", [get_jump_action("a"), get_jump_action("b")])["rule"]
    assert rule_matcher_jump_to("a")(rule) is True
    assert rule_matcher_jump_to("b")(rule) is False


def test_bridge_matcher():
    rule = make_rule("x", [get_dest_bridge_match("podman1"), {"drop": None}])["rule"]
    assert rule_matcher_bridge("podman1")(rule) is True
    assert rule_matcher_bridge("podman2")(rule) is False


def test_get_chain():
    ruleset = _ruleset(make_basic_chain("a"), make_rule("b", []))
    assert get_chain(ruleset, "a")["name"] == "a"
    assert get_chain(ruleset, "b") is None
    assert get_chain({"nftables": []}, "a") is None