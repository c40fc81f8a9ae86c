import ipaddress

from netfence.model import PortForwardConfig, PortMapping, TeardownPortForward
from netfence.nft_portfw import (
    dns_ip_matcher,
    port_jump_matcher,
    port_range_matcher,
    setup_port_forward_batch,
    teardown_port_forward_batch,
)
from netfence.nft_rules import (
    DNATCHAIN,
    get_dport_cond,
    get_jump_action,
    get_subnet_chain_name,
    make_rule,
)

NET_ID = "c2c8a073252874648259997d53b0a1bffa491e21f04bc1bf8609266359931395"
EMPTY = {"nftables": []}
SUBNET_V4 = ipaddress.ip_network("10.0.0.0/24")
V4_CHAIN = get_subnet_chain_name(SUBNET_V4, NET_ID, True)


def make_config(ports=None, dns_port=53, dns_ips=(), v6=False):
    return PortForwardConfig(
        container_id="123",
        network_id=NET_ID,
        network_name="name",
        network_hash_name="hash",
        port_mappings=ports,
        container_ip_v4=ipaddress.ip_address("10.0.0.2"),
        subnet_v4=SUBNET_V4,
        container_ip_v6=ipaddress.ip_address("fd00::2") if v6 else None,
        subnet_v6=ipaddress.ip_network("fd00::/64") if v6 else None,
        dns_port=dns_port,
        dns_server_ips=[ipaddress.ip_address(ip) for ip in dns_ips],
    )


def commands(batch):
    return batch.to_nftables()["nftables"]


def as_ruleset(batch):
    return {"nftables": [obj for cmd in commands(batch) for obj in cmd.values()]}


def rule_of(obj):
    return obj["rule"]


def test_port_jump_matcher_single_port():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp")
    rule = rule_of(make_rule(DNATCHAIN, [get_dport_cond(port), get_jump_action(V4_CHAIN)]))
    assert port_jump_matcher(port, V4_CHAIN, None)(rule) is True
    other = PortMapping(container_port=80, host_port=9090, protocol="tcp")
    assert port_jump_matcher(other, V4_CHAIN, None)(rule) is False
    assert port_jump_matcher(port, "nv_other_dnat", None)(rule) is False


def test_port_jump_matcher_range():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp", range=3)
    rule = rule_of(make_rule(DNATCHAIN, [get_dport_cond(port), get_jump_action(V4_CHAIN)]))
    assert port_jump_matcher(port, None, V4_CHAIN)(rule) is True
    shorter = PortMapping(container_port=80, host_port=8080, protocol="tcp", range=2)
    assert port_jump_matcher(shorter, None, V4_CHAIN)(rule) is False


def test_port_range_matcher_inside_and_outside():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp", range=3)
    matcher = port_range_matcher(port)
    inside = PortMapping(container_port=80, host_port=8081, protocol="tcp")
    outside = PortMapping(container_port=80, host_port=8083, protocol="tcp")
    assert matcher(rule_of(make_rule(V4_CHAIN, [get_dport_cond(inside)]))) is True
    assert matcher(rule_of(make_rule(V4_CHAIN, [get_dport_cond(outside)]))) is False
    assert matcher(rule_of(make_rule(V4_CHAIN, [get_dport_cond(port)]))) is True


def test_port_range_matcher_malformed_range():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp", range=3)
    statement = {"match": {"op": "==", "left": {}, "right": {"range": [8080]}}}
    assert port_range_matcher(port)(rule_of(make_rule(V4_CHAIN, [statement]))) is False


def test_dns_ip_matcher():
    statement = {"match": {"op": "==", "left": {}, "right": "10.0.0.1"}}
    rule = rule_of(make_rule(DNATCHAIN, [statement]))
    assert dns_ip_matcher([ipaddress.ip_address("10.0.0.1")])(rule) is True
    assert dns_ip_matcher([ipaddress.ip_address("10.0.0.9")])(rule) is False


def test_dns_redirect_only_for_matching_family():
    config = make_config(dns_port=5353, dns_ips=("10.0.0.1", "fd00::1"))
    cmds = commands(setup_port_forward_batch(config, EMPTY))
    assert len(cmds) == 1
    rule = cmds[0]["add"]["rule"]
    assert rule["chain"] == DNATCHAIN
    assert {"dnat": {"addr": "10.0.0.1", "family": "ip", "port": 5353}} in rule["expr"]


def test_dns_redirect_skipped_on_standard_port_or_existing():
    config = make_config(dns_port=53, dns_ips=("10.0.0.1",))
    assert commands(setup_port_forward_batch(config, EMPTY)) == []
    config = make_config(dns_port=5353, dns_ips=("10.0.0.1",))
    existing = as_ruleset(setup_port_forward_batch(config, EMPTY))
    assert commands(setup_port_forward_batch(config, existing)) == []


def test_setup_port_mapping_creates_chain_and_dnat():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp")
    cmds = commands(setup_port_forward_batch(make_config(ports=[port]), EMPTY))
    assert cmds[0] == {"add": {"chain": {"family": "inet", "table": "netavark", "name": V4_CHAIN}}}
    dnats = [
        s
        for cmd in cmds
        if "rule" in cmd["add"]
        for s in cmd["add"]["rule"]["expr"]
        if "dnat" in s
    ]
    assert dnats == [{"dnat": {"addr": "10.0.0.2", "family": "ip", "port": 80}}]


def test_complete_teardown_deletes_everything_setup_added():
    ports = [
        PortMapping(container_port=80, host_port=8080, protocol="tcp"),
        PortMapping(container_port=90, host_port=9000, protocol="udp", range=3),
    ]
    config = make_config(ports=ports, dns_port=5353, dns_ips=("10.0.0.1",))
    setup = setup_port_forward_batch(config, EMPTY)
    added_rules = [cmd["add"]["rule"] for cmd in commands(setup) if "rule" in cmd["add"]]
    batch = teardown_port_forward_batch(TeardownPortForward(config, True), as_ruleset(setup))
    cmds = commands(batch)
    deleted_rules = [cmd["delete"]["rule"] for cmd in cmds if "rule" in cmd["delete"]]
    deleted_chains = [cmd["delete"]["chain"]["name"] for cmd in cmds if "chain" in cmd["delete"]]
    assert all(rule in deleted_rules for rule in added_rules)
    assert all(rule in added_rules for rule in deleted_rules)
    assert deleted_chains == [V4_CHAIN]


def test_partial_teardown_keeps_chain_and_dns():
    port = PortMapping(container_port=80, host_port=8080, protocol="tcp")
    config = make_config(ports=[port], dns_port=5353, dns_ips=("10.0.0.1",))
    setup = setup_port_forward_batch(config, EMPTY)
    batch = teardown_port_forward_batch(TeardownPortForward(config, False), as_ruleset(setup))
    cmds = commands(batch)
    assert cmds
    assert not any("chain" in cmd["delete"] for cmd in cmds)
    assert not any(
        any("dnat" in s and s["dnat"]["addr"] == "10.0.0.1" for s in cmd["delete"]["rule"]["expr"])
        for cmd in cmds
    )


def test_teardown_leaves_other_ports():
    kept = PortMapping(container_port=22, host_port=2222, protocol="tcp")
    gone = PortMapping(container_port=80, host_port=8080, protocol="tcp")
    setup = setup_port_forward_batch(make_config(ports=[kept, gone]), EMPTY)
    batch = teardown_port_forward_batch(
        TeardownPortForward(make_config(ports=[gone]), False), as_ruleset(setup)
    )
    for cmd in commands(batch):
        assert "2222" not in repr(cmd)
        assert "8080" in repr(cmd)