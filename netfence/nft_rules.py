"""Building blocks for the nftables ruleset, expressed in nft's JSON schema.

Objects are plain dictionaries in the shape ``nft -j`` reads and prints:
a chain is ``{"chain": {...}}``, a rule ``{"rule": {...}}``, and a ruleset
is ``{"nftables": [object, ...]}``.
"""

from __future__ import annotations

import copy
import enum
import logging
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from netfence.model import IPAddress, IPNetwork, PortMapping

log = logging.getLogger(__name__)

TABLENAME = "netavark"
FAMILY = "inet"

INPUTCHAIN = "INPUT"
FORWARDCHAIN = "FORWARD"
POSTROUTINGCHAIN = "POSTROUTING"
PREROUTINGCHAIN = "PREROUTING"
OUTPUTCHAIN = "OUTPUT"
DNATCHAIN = "NETAVARK-HOSTPORT-DNAT"
MASKCHAIN = "NETAVARK-HOSTPORT-SETMARK"
ISOLATION1CHAIN = "NETAVARK-ISOLATION-1"
ISOLATION2CHAIN = "NETAVARK-ISOLATION-2"
ISOLATION3CHAIN = "NETAVARK-ISOLATION-3"

MASK = 0x2000

# Standard netfilter hook priorities.
DNATPRIO = -100
SRCNATPRIO = 100
FILTERPRIO = 0

Statement = dict[str, Any]
NfObject = dict[str, Any]
Rule = dict[str, Any]
Chain = dict[str, Any]
Ruleset = dict[str, Any]
RuleMatcher = Callable[[Rule], bool]


class Operator(enum.Enum):
    """Comparison operators of a match statement."""

    EQ = "=="
    NEQ = "!="
    IN = "in"


class ChainType(enum.Enum):
    """Types of base chains."""

    FILTER = "filter"
    NAT = "nat"
    ROUTE = "route"


class Hook(enum.Enum):
    """Netfilter hooks a base chain can attach to."""

    PREROUTING = "prerouting"
    INPUT = "input"
    FORWARD = "forward"
    OUTPUT = "output"
    POSTROUTING = "postrouting"


OperatorLike = Union[Operator, str]


class Batch:
    """An ordered list of nft commands applied as one transaction."""

    def __init__(self) -> None:
        self._commands: list[dict[str, NfObject]] = []

    def add(self, obj: NfObject) -> None:
        """Append an ``add`` command for the object."""
        self._commands.append({"add": copy.deepcopy(obj)})

    def insert(self, obj: NfObject) -> None:
        """Append an ``insert`` command, placing a rule at the head of its chain."""
        self._commands.append({"insert": copy.deepcopy(obj)})

    def delete(self, obj: NfObject) -> None:
        """Append a ``delete`` command for the object."""
        self._commands.append({"delete": copy.deepcopy(obj)})

    def __len__(self) -> int:
        return len(self._commands)

    def to_nftables(self) -> Ruleset:
        """Return the batch as an nft JSON document."""
        return {"nftables": copy.deepcopy(self._commands)}


def _match(left: Any, right: Any, op: OperatorLike) -> Statement:
    return {"match": {"op": Operator(op).value, "left": left, "right": right}}


def _payload(protocol: str, field: str) -> dict[str, Any]:
    return {"payload": {"protocol": protocol, "field": field}}


def _ip_proto(version: int) -> str:
    return "ip6" if version == 6 else "ip"


def get_subnet_chain_name(subnet: IPNetwork, net_id: str, dnat: bool) -> str:
    """Name the per-subnet chain, free of characters special to nft."""
    subnet_clean = (
        str(subnet).replace(".", "_").replace(":", "-").replace("/", "_nm")
    )
    net_id_clean = net_id[:8]
    name = f"nv_{net_id_clean}_{subnet_clean}"
    return f"{name}_dnat" if dnat else name


def make_rule(chain: str, conditions: Iterable[Statement]) -> NfObject:
    """Make a rule in our table's chain with the given statements."""
    return {
        "rule": {
            "family": FAMILY,
            "table": TABLENAME,
            "chain": chain,
            "expr": copy.deepcopy(list(conditions)),
        }
    }


def make_basic_chain(name: str) -> NfObject:
    """Make a regular chain, not attached to any hook."""
    return {"chain": {"family": FAMILY, "table": TABLENAME, "name": name}}


def make_complex_chain(
    name: str,
    chain_type: Union[ChainType, str],
    hook: Union[Hook, str],
    priority: int,
) -> NfObject:
    """Make a base chain on a hook; its policy is always accept."""
    return {
        "chain": {
            "family": FAMILY,
            "table": TABLENAME,
            "name": name,
            "type": ChainType(chain_type).value,
            "hook": Hook(hook).value,
            "prio": priority,
            "policy": "accept",
        }
    }


def get_jump_action(target: str) -> Statement:
    """Make a statement jumping to the target chain."""
    return {"jump": {"target": target}}


def get_subnet_match(net: IPNetwork, field: str, op: OperatorLike) -> Statement:
    """Match ``saddr`` or ``daddr`` against a subnet."""
    return _match(
        _payload(_ip_proto(net.version), field),
        {"prefix": {"addr": str(net.network_address), "len": net.prefixlen}},
        op,
    )


def get_ip_match(ip: IPAddress, field: str, op: OperatorLike) -> Statement:
    """Match ``saddr`` or ``daddr`` against a single address."""
    return _match(_payload(_ip_proto(ip.version), field), str(ip), op)


def get_dest_bridge_match(bridge: str) -> Statement:
    """Match packets leaving through the given bridge."""
    return _match({"meta": {"key": "oifname"}}, bridge, Operator.EQ)


def get_dport_cond(port: PortMapping) -> Statement:
    """Match the host port, or the range of host ports, of a mapping."""
    if port.range > 1:
        right: Any = {"range": [port.host_port, port.host_port + port.range - 1]}
    else:
        right = port.host_port
    return _match(_payload(port.protocol, "dport"), right, Operator.EQ)


def _objects(ruleset: Optional[Ruleset]) -> Iterator[NfObject]:
    if not ruleset:
        return iter(())
    return iter(ruleset.get("nftables", ()))


def get_matching_rules_in_chain(
    ruleset: Ruleset, chain: str, rule_match: RuleMatcher
) -> list[Rule]:
    """Return copies of the rules in the chain for which rule_match is true."""
    matched: list[Rule] = []
    for obj in _objects(ruleset):
        rule = obj.get("rule") if isinstance(obj, dict) else None
        if rule is None or rule.get("chain") != chain:
            continue
        if rule_match(rule):
            log.debug("Matched %r", rule)
            matched.append(copy.deepcopy(rule))
    return matched


def get_chain(ruleset: Ruleset, chain: str) -> Optional[Chain]:
    """Return a copy of the chain with the given name, if the ruleset has it."""
    for obj in _objects(ruleset):
        found = obj.get("chain") if isinstance(obj, dict) else None
        if found is not None and found.get("name") == chain:
            log.debug("Found chain %s", chain)
            return copy.deepcopy(found)
    return None


def rule_matcher_jump_to(target: str) -> RuleMatcher:
    """Match rules whose first jump goes to the target chain."""

    def matcher(rule: Rule) -> bool:
        for statement in rule.get("expr", ()):
            if "jump" in statement:
                return statement["jump"].get("target") == target
        return False

    return matcher


def rule_matcher_bridge(bridge: str) -> RuleMatcher:
    """Match rules that compare anything with the bridge name."""

    def matcher(rule: Rule) -> bool:
        return any(
            "match" in statement and statement["match"].get("right") == bridge
            for statement in rule.get("expr", ())
        )

    return matcher