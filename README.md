# netfence

netfence builds the nftables rules that give container bridge networks NAT,
isolation, DNS redirection and host port forwarding, and keeps the applied
configuration on disk so the rules can be rebuilt later.

Rules are produced in the JSON form that `nft -j` reads and prints: a batch of
`add`, `insert` and `delete` commands wrapped in `{"nftables": [...]}`. All
rules live in the `inet` table `netavark`.

## Installation

```
pip install netfence
```

There are no runtime dependencies beyond the standard library. The state
store uses `fcntl` file locks, so it needs a POSIX system.

## Modules

- `netfence.model` describes the work to be done: `SetupNetwork`,
  `TearDownNetwork`, `PortForwardConfig`, `TeardownPortForward`,
  `PortMapping` and `IsolateOption` (`NORMAL`, `STRICT`, `NEVER`).
  `SetupNetwork` and `PortForwardConfig` have `to_json()` and
  `from_json()`. Failures raise `FirewallError`.
- `netfence.nft_rules` holds the building blocks: `Batch` (with `add`,
  `insert`, `delete` and `to_nftables`), `make_rule`, `make_basic_chain`,
  `make_complex_chain`, the match helpers (`get_subnet_match`,
  `get_ip_match`, `get_dest_bridge_match`, `get_dport_cond`,
  `get_jump_action`), `get_subnet_chain_name`, and the lookups
  `get_matching_rules_in_chain`, `get_chain`, `rule_matcher_jump_to` and
  `rule_matcher_bridge`, which search an existing ruleset.
- `netfence.nft_dnat` makes DNAT rules: `make_dns_dnat_rule`,
  `get_subnet_dport_match`, `get_dnat_port_rules` and
  `get_dnat_rules_for_addr_family`.
- `netfence.nft_network` has `setup_network_batch` and
  `teardown_network_batch`.
- `netfence.nft_portfw` has `setup_port_forward_batch` and
  `teardown_port_forward_batch`, and the rule matchers they use:
  `port_jump_matcher`, `port_range_matcher` and `dns_ip_matcher`.
- `netfence.state` stores configurations with `write_fw_config`,
  `read_fw_config` and `remove_fw_config`.

Each batch function takes the current contents of the `netavark` table as a
ruleset (`{"nftables": [...]}`; an empty dict or list works for a table that
does not exist yet) and leaves out rules and chains that are already there.

## Setting up a network

```python
import json
from ipaddress import ip_network

from netfence.model import IsolateOption, SetupNetwork
from netfence.nft_network import setup_network_batch

network = SetupNetwork(
    bridge_name="podman1",
    network_id="c2c8a073252874648259997d53b0a1bffa491e21f04bc1bf8609266359931395",
    network_hash_name="hash",
    isolation=IsolateOption.NEVER,
    dns_port=53,
    subnets=[ip_network("10.89.0.0/24")],
)

batch = setup_network_batch(network, {"nftables": []})
print(json.dumps(batch.to_nftables(), indent=2))
```

The batch creates the table, the five hooked base chains, the DNAT, mark and
three isolation chains, and a chain per subnet named by
`get_subnet_chain_name` (here `nv_c2c8a073_10_89_0_0_nm24`). With
`NORMAL` or `STRICT` isolation, traffic from the bridge to other bridges is
sent to the drop rules; with `NEVER`, a drop rule for the bridge is inserted
at the head of `NETAVARK-ISOLATION-3`.

## Forwarding ports

```python
from ipaddress import ip_address, ip_network

from netfence.model import PortForwardConfig, PortMapping
from netfence.nft_portfw import setup_port_forward_batch

config = PortForwardConfig(
    container_id="123",
    network_id="c2c8a073252874648259997d53b0a1bffa491e21f04bc1bf8609266359931395",
    network_name="podman1",
    network_hash_name="hash",
    port_mappings=[PortMapping(container_port=80, host_port=8080, protocol="tcp")],
    container_ip_v4=ip_address("10.89.0.2"),
    subnet_v4=ip_network("10.89.0.0/24"),
    dns_port=1053,
    dns_server_ips=[ip_address("10.89.0.1")],
)

batch = setup_port_forward_batch(config, {"nftables": []})
```

A mapping with `range` greater than 1 forwards that many consecutive ports,
one DNAT rule per port. `host_ip` limits a mapping to one host address;
`"0.0.0.0"` and `"::"` limit it to one address family. When `dns_port` is
not 53, DNS traffic to each server address is redirected to that port.
`teardown_port_forward_batch` removes the container's rules, and on a
complete teardown also the DNS redirection and the per-subnet DNAT chains.

## Saved state

```python
from pathlib import Path

from netfence.state import read_fw_config

config = read_fw_config(Path("/run/containers/networks"))
if config is not None:
    with config:
        print(config.driver, len(config.net_confs), len(config.port_confs))
```

Files are kept below `<config_dir>/firewall/`: `firewall-driver`,
`networks/<network id>` and `ports/<network id>_<container id>`.
`write_fw_config` writes the network file only if it does not exist yet;
`remove_fw_config` removes the port file, and the network file too on a
complete teardown, ignoring files that are already gone. `read_fw_config`
returns `None` when nothing has been written yet. Every call takes an
exclusive lock on `firewall-reload.lock`; the `FirewallConfig` it returns
holds that lock until `close()` is called or its `with` block ends.

## What it does not do

netfence only builds rulesets and stores configuration. It does not list
the live nftables table and does not apply batches: reading the current
ruleset and handing the JSON from `to_nftables()` to nftables is left to the
caller. It has no iptables rules, no driver objects that choose and run a
backend, and no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```