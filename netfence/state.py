"""On-disk store of firewall configurations for later rule reloading.

Layout below the config directory::

    firewall/firewall-driver        name of the firewall driver
    firewall/networks/<netID>       network setup config
    firewall/ports/<netID>_<conID>  port forwarding config
"""

from __future__ import annotations

import fcntl
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterator, Optional, Union

from netfence.model import FirewallError, PortForwardConfig, SetupNetwork

FIREWALL_DIR = "firewall"
FIREWALL_DRIVER_FILE = "firewall-driver"
FIREWALL_LOCK_FILE = "firewall-reload.lock"
NETWORK_CONF_DIR = "networks"
PORT_CONF_DIR = "ports"

PathLike = Union[str, "os.PathLike[str]"]


def _path_error(msg: str, path: Path, err: OSError) -> FirewallError:
    return FirewallError(f'{msg} "{path}": {err}')


@dataclass
class _FilePaths:
    fw_driver_file: Path
    net_conf_file: Path
    port_conf_file: Path
    # Held exclusively locked so removal cannot race the reload service.
    lock_file: IO[str]


def _mkdirs(path: Path, msg: str) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise _path_error(msg, path, err) from err


def _get_file_paths(
    config_dir: PathLike, network_id: str, container_id: str, create_dirs: bool
) -> _FilePaths:
    base = Path(config_dir) / FIREWALL_DIR
    fw_driver_file = base / FIREWALL_DRIVER_FILE
    net_conf_file = base / NETWORK_CONF_DIR
    port_conf_file = base / PORT_CONF_DIR

    _mkdirs(base, "create firewall config dir")
    if create_dirs:
        _mkdirs(net_conf_file, "create network config dir")
        _mkdirs(port_conf_file, "create port config dir")

    if network_id and container_id:
        net_conf_file = net_conf_file / network_id
        port_conf_file = port_conf_file / f"{network_id}_{container_id}"

    lock_path = base / FIREWALL_LOCK_FILE
    try:
        lock_file = open(lock_path, "w", encoding="utf-8")
    except OSError as err:
        raise _path_error("create firewall lock file", lock_path, err) from err
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
    except OSError as err:
        lock_file.close()
        raise FirewallError(f"lock firewall lock file: {err}") from err

    return _FilePaths(fw_driver_file, net_conf_file, port_conf_file, lock_file)


def write_fw_config(
    config_dir: PathLike,
    network_id: str,
    container_id: str,
    fw_driver: str,
    net_conf: SetupNetwork,
    port_conf: PortForwardConfig,
) -> None:
    """Store the firewall configs so the reload service can re-add the rules."""
    paths = _get_file_paths(config_dir, network_id, container_id, True)
    with paths.lock_file:
        try:
            driver_handle = open(paths.fw_driver_file, "w", encoding="utf-8")
        except OSError as err:
            raise _path_error(
                "create firewall-driver file", paths.fw_driver_file, err
            ) from err
        with driver_handle:
            try:
                driver_handle.write(fw_driver)
            except OSError as err:
                raise FirewallError(
                    f"failed to write firewall-driver file: {err}"
                ) from err

        try:
            with open(paths.net_conf_file, "x", encoding="utf-8") as handle:
                handle.write(net_conf.to_json())
        except FileExistsError:
            # The network config is identical for every container.
            pass
        except OSError as err:
            raise _path_error("create network config", paths.net_conf_file, err) from err

        try:
            with open(paths.port_conf_file, "w", encoding="utf-8") as handle:
                handle.write(port_conf.to_json())
        except OSError as err:
            raise _path_error("create port config", paths.port_conf_file, err) from err


def _remove_ignore_missing(path: Path, msg: str) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as err:
        raise _path_error(msg, path, err) from err


def remove_fw_config(
    config_dir: PathLike, network_id: str, container_id: str, complete_teardown: bool
) -> None:
    """Remove the stored configs of a container, and of its network on complete teardown."""
    paths = _get_file_paths(config_dir, network_id, container_id, False)
    with paths.lock_file:
        _remove_ignore_missing(paths.port_conf_file, "remove port config")
        if complete_teardown:
            _remove_ignore_missing(paths.net_conf_file, "remove network config")


@dataclass
class FirewallConfig:
    """All stored firewall configs; holds the reload lock until closed."""

    driver: str
    net_confs: list[SetupNetwork]
    port_confs: list[PortForwardConfig]
    lock_file: Optional[IO[str]] = field(default=None, repr=False, compare=False)

    def close(self) -> None:
        """Release the firewall lock."""
        if self.lock_file is not None and not self.lock_file.closed:
            self.lock_file.close()

    def __enter__(self) -> FirewallConfig:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _read_dir_conf(directory: Path) -> Iterator[str]:
    try:
        entries = sorted(directory.iterdir())
    except OSError as err:
        raise _path_error("read dir", directory, err) from err
    for entry in entries:
        try:
            yield entry.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        except OSError as err:
            raise FirewallError(f'read config "{entry}": {err}') from err


def read_fw_config(config_dir: PathLike) -> Optional[FirewallConfig]:
    """Read every stored config, or return None when nothing was stored yet."""
    paths = _get_file_paths(config_dir, "", "", False)
    try:
        try:
            driver = paths.fw_driver_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            paths.lock_file.close()
            return None
        except OSError as err:
            raise FirewallError(
                f'read firewall-driver "{paths.fw_driver_file}": {err}'
            ) from err
        net_confs = [
            SetupNetwork.from_json(text) for text in _read_dir_conf(paths.net_conf_file)
        ]
        port_confs = [
            PortForwardConfig.from_json(text)
            for text in _read_dir_conf(paths.port_conf_file)
        ]
    except BaseException:
        paths.lock_file.close()
        raise
    return FirewallConfig(driver, net_confs, port_confs, paths.lock_file)