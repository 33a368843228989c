"""Builds the shim's CNI configuration from the daemon's own settings."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import semver

log = logging.getLogger(__name__)

CONFIG_LIST_CAPABILITY_KEY = "plugins"
SINGLE_CONFIG_CAPABILITY_KEY = "capabilities"
MULTUS_PLUGIN_NAME = "multus-shim"
MULTUS_DEFAULT_NETWORK_NAME = "multus-cni-network"
DEFAULT_CNI_CONFIG_DIR = "/etc/cni/net.d"

_V040 = semver.Version(0, 4, 0)

# (attribute, JSON key, expected type, omitted when empty)
_FIELDS: tuple[tuple[str, str, type, bool], ...] = (
    ("bin_dir", "binDir", str, True),
    ("capabilities", "capabilities", dict, True),
    ("cni_version", "cniVersion", str, False),
    ("log_file", "logFile", str, True),
    ("log_level", "logLevel", str, True),
    ("log_to_stderr", "logToStderr", bool, True),
    ("log_options", "logOptions", dict, True),
    ("name", "name", str, False),
    ("cluster_network", "clusterNetwork", str, True),
    ("namespace_isolation", "namespaceIsolation", bool, True),
    ("raw_non_isolated_namespaces", "globalNamespaces", str, True),
    ("readiness_indicator_file", "readinessindicatorfile", str, True),
    ("type", "type", str, False),
    ("cni_dir", "cniDir", str, True),
    ("cni_config_dir", "cniConfigDir", str, True),
    ("daemon_socket_dir", "daemonSocketDir", str, True),
    ("multus_config_file", "multusConfigFile", str, True),
    ("multus_master_cni", "multusMasterCNI", str, True),
    ("multus_autoconfig_dir", "multusAutoconfigDir", str, True),
    ("force_cni_version", "forceCNIVersion", bool, True),
    ("override_network_name", "overrideNetworkName", bool, True),
)


def _lookup(data: dict[str, Any], key: str) -> tuple[bool, Any]:
    if key in data:
        return True, data[key]
    lowered = key.lower()
    for candidate, value in data.items():
        if candidate.lower() == lowered:
            return True, value
    return False, None


def _is_empty(attr: str, value: Any) -> bool:
    if attr == "log_options":
        return value is None
    return not value


@dataclass
class MultusConf:
    """The multus configuration as read by the daemon and written for the shim."""

    bin_dir: str = ""
    capabilities: dict[str, bool] = field(default_factory=dict)
    cni_version: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    log_options: dict[str, Any] | None = None
    name: str = ""
    cluster_network: str = ""
    namespace_isolation: bool = False
    raw_non_isolated_namespaces: str = ""
    readiness_indicator_file: str = ""
    type: str = ""
    cni_dir: str = ""
    cni_config_dir: str = ""
    daemon_socket_dir: str = ""
    multus_config_file: str = ""
    multus_master_cni: str = ""
    multus_autoconfig_dir: str = ""
    force_cni_version: bool = False
    override_network_name: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for attr, key, _kind, omit_empty in _FIELDS:
            value = getattr(self, attr)
            if omit_empty and _is_empty(attr, value):
                continue
            if attr == "capabilities":
                value = dict(sorted((value or {}).items()))
            elif attr == "log_options" and value is not None:
                value = dict(value)
            out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MultusConf":
        conf = cls()
        conf._apply(data)
        return conf

    def _apply(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        for attr, key, kind, _omit in _FIELDS:
            found, value = _lookup(data, key)
            if not found or value is None:
                continue
            if not isinstance(value, kind):
                raise ValueError(f"field {key!r} must be of type {kind.__name__}")
            if attr == "capabilities":
                if not all(isinstance(flag, bool) for flag in value.values()):
                    raise ValueError(f"field {key!r} must map names to booleans")
                if self.capabilities is None:
                    self.capabilities = {}
                self.capabilities.update(value)
            else:
                setattr(self, attr, value)

    def generate(self) -> str:
        """Clear the daemon-only fields and return the shim configuration as JSON."""
        self.cni_config_dir = ""
        self.multus_config_file = ""
        self.multus_autoconfig_dir = ""
        self.multus_master_cni = ""
        self.force_cni_version = False
        # The readiness indicator is watched by the manager, not by the shim.
        self.readiness_indicator_file = ""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def set_capabilities(self, cni_data: Any) -> None:
        """Enable every capability that the delegate configuration enables."""
        if not isinstance(cni_data, dict):
            raise ValueError("couldn't get cni config from delegate")
        plugins = cni_data.get(CONFIG_LIST_CAPABILITY_KEY, [])
        if not isinstance(plugins, list):
            raise ValueError(f"delegate {CONFIG_LIST_CAPABILITY_KEY!r} must be a list")

        if plugins:
            enabled = [cap for plugin in plugins for cap in extract_capabilities(plugin)]
        else:
            enabled = extract_capabilities(cni_data)

        if self.capabilities is None:
            self.capabilities = {}
        for capability in enabled:
            self.capabilities[capability] = True


def extract_capabilities(data: Any) -> list[str]:
    """Return the names of the capabilities enabled in one plugin configuration."""
    if not isinstance(data, dict):
        return []
    capabilities = data.get(SINGLE_CONFIG_CAPABILITY_KEY)
    if not isinstance(capabilities, dict):
        return []
    enabled = []
    for name, flag in capabilities.items():
        if not isinstance(flag, bool):
            raise ValueError(f"capability {name!r} must be a boolean")
        if flag:
            enabled.append(name)
    return enabled


def parse_multus_config(config_path: str) -> MultusConf:
    """Read the daemon configuration file into a MultusConf."""
    try:
        with open(config_path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OSError(
            f"ParseMultusConfig failed to read the config file's contents: {exc}"
        ) from exc

    conf = MultusConf(
        multus_config_file="auto",
        type=MULTUS_PLUGIN_NAME,
        capabilities={},
        cni_config_dir=DEFAULT_CNI_CONFIG_DIR,
    )
    try:
        conf._apply(json.loads(raw))
    except ValueError as exc:
        raise ValueError(f"failed to unmarshall the daemon configuration: {exc}") from exc
    conf.name = MULTUS_DEFAULT_NETWORK_NAME
    return conf


def _parse_version(text: Any) -> semver.Version:
    if not isinstance(text, str):
        raise ValueError(f"invalid version {text!r}")
    return semver.Version.parse(text)


def check_version_compatibility(mc: MultusConf, delegate: Any) -> None:
    """Refuse a delegate older than 0.4.0 under a top level of 0.4.0 or newer."""
    try:
        top_level = _parse_version(mc.cni_version)
    except ValueError as exc:
        raise ValueError("couldn't get top level cni version") from exc

    if top_level < _V040:
        return
    if not isinstance(delegate, dict):
        raise ValueError("couldn't get cni version of delegate")
    delegate_version = delegate.get("cniVersion")
    if not isinstance(delegate_version, str):
        raise ValueError("couldn't get cni version of delegate")
    if _parse_version(delegate_version) < _V040:
        raise ValueError(
            f"delegate cni version is {delegate_version} "
            f"while top level cni version is {mc.cni_version}"
        )


def _extension(name: str) -> str:
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def find_master_plugin(cni_config_dir_path: str, remaining_tries: int) -> str:
    """Return the first CNI configuration file name in the directory, retrying each second."""
    while remaining_tries > 0:
        try:
            names = os.listdir(cni_config_dir_path)
        except OSError as exc:
            raise OSError(f"error when listing the CNI plugin configurations: {exc}") from exc

        candidates = sorted(
            name
            for name in names
            if not name.startswith("00-multus")
            and _extension(name) in (".conf", ".conflist")
        )
        if candidates:
            return candidates[0]
        time.sleep(1)
        remaining_tries -= 1
    raise FileNotFoundError(f"could not find a plugin configuration in {cni_config_dir_path}")