"""Daemon configuration and the parsing of CNI requests received by the daemon."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from thickcni.api import CmdArgs, Request

log = logging.getLogger(__name__)

DEFAULT_MULTUS_DAEMON_CONFIG_FILE = "/etc/cni/net.d/multus.d/daemon-config.json"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"
DEFAULT_CERT_DURATION = 10 * 60.0
THICK_PLUGIN_SOCKET_RUN_DIR_PERMISSIONS = 0o700
READINESS_INDICATOR_KEY = "readinessindicatorfile"
DEFAULT_IF_NAME = "eth0"

_ROOT_LOGGER = logging.getLogger("thickcni")
_HANDLERS: dict[str, logging.Handler] = {}
_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    lowered = key.lower()
    for candidate, value in data.items():
        if candidate.lower() == lowered:
            return value
    return None


def _typed(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = _lookup(data, key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"field {key!r} must be of type {kind.__name__}")
    return value


@dataclass
class PerNodeCertificate:
    """Settings for per-node certificate generation."""

    enabled: bool = False
    bootstrap_kubeconfig: str = ""
    cert_dir: str = ""
    cert_duration: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PerNodeCertificate":
        if not isinstance(data, Mapping):
            raise ValueError("perNodeCertificate must be a JSON object")
        return cls(
            enabled=_typed(data, "enabled", bool, False),
            bootstrap_kubeconfig=_typed(data, "bootstrapKubeconfig", str, ""),
            cert_dir=_typed(data, "certDir", str, ""),
            cert_duration=_typed(data, "certDuration", str, ""),
        )


@dataclass
class ControllerNetConf:
    """The daemon's own configuration."""

    chroot_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    per_node_certificate: PerNodeCertificate | None = None
    metrics_port: int | None = None
    socket_dir: str = DEFAULT_MULTUS_RUN_DIR
    config_file_contents: bytes = b""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ControllerNetConf":
        if not isinstance(data, Mapping):
            raise ValueError("daemon configuration must be a JSON object")
        cert = _lookup(data, "perNodeCertificate")
        return cls(
            chroot_dir=_typed(data, "chrootDir", str, ""),
            log_file=_typed(data, "logFile", str, ""),
            log_level=_typed(data, "logLevel", str, ""),
            log_to_stderr=_typed(data, "logToStderr", bool, False),
            per_node_certificate=(
                PerNodeCertificate.from_dict(cert) if cert is not None else None
            ),
            metrics_port=_typed(data, "metricsPort", int, None),
            socket_dir=_typed(data, "socketDir", str, DEFAULT_MULTUS_RUN_DIR),
        )


@dataclass
class K8sArgs:
    """Kubernetes identity of the pod a CNI request is about."""

    pod_name: str = ""
    pod_namespace: str = ""
    pod_infra_container_id: str = ""
    pod_uid: str = ""


def _set_handler(name: str, handler: logging.Handler | None) -> None:
    old = _HANDLERS.pop(name, None)
    if old is not None:
        _ROOT_LOGGER.removeHandler(old)
        old.close()
    if handler is not None:
        _HANDLERS[name] = handler
        _ROOT_LOGGER.addHandler(handler)


def _configure_logging(conf: ControllerNetConf) -> None:
    _set_handler("stderr", logging.StreamHandler(sys.stderr) if conf.log_to_stderr else None)
    if conf.log_file and conf.log_file != DEFAULT_MULTUS_DAEMON_CONFIG_FILE:
        _set_handler("file", logging.FileHandler(conf.log_file))
    if conf.log_level:
        level = _LEVELS.get(conf.log_level.lower())
        if level is not None:
            _ROOT_LOGGER.setLevel(level)


def load_daemon_net_conf(config: bytes | str) -> ControllerNetConf:
    """Parse the daemon configuration and apply its logging options."""
    raw = config.encode() if isinstance(config, str) else bytes(config)
    try:
        conf = ControllerNetConf.from_dict(json.loads(raw))
    except ValueError as exc:
        raise ValueError(f"failed to unmarshall the daemon configuration: {exc}") from exc
    _configure_logging(conf)
    conf.config_file_contents = raw
    return conf


def is_per_node_cert_enabled(config: PerNodeCertificate | None) -> bool:
    """Tell whether per-node certificates are on; raise if on but incomplete."""
    if config is None or not config.enabled:
        return False
    if config.bootstrap_kubeconfig and config.cert_dir:
        return True
    message = (
        f"failed to configure PerNodeCertificate: enabled: {str(config.enabled).lower()}, "
        f"BootstrapKubeconfig: {json.dumps(config.bootstrap_kubeconfig)}, "
        f"CertDir: {json.dumps(config.cert_dir)}"
    )
    log.error(message)
    raise ValueError(message)


def filesystem_pre_requirements(rundir: str) -> None:
    """Recreate ``rundir`` empty, readable only by its owner."""
    try:
        shutil.rmtree(rundir)
    except FileNotFoundError:
        pass
    except NotADirectoryError:
        try:
            os.remove(rundir)
        except OSError as exc:
            raise OSError(
                f"failed to remove old pod info socket directory {rundir}: {exc}"
            ) from exc
    except OSError as exc:
        raise OSError(
            f"failed to remove old pod info socket directory {rundir}: {exc}"
        ) from exc
    try:
        os.makedirs(rundir, THICK_PLUGIN_SOCKET_RUN_DIR_PERMISSIONS, exist_ok=True)
    except OSError as exc:
        raise OSError(f"failed to create pod info socket directory {rundir}: {exc}") from exc


def _json_object(raw: bytes | str, what: str) -> dict[str, Any]:
    try:
        obj = json.loads(raw)
        if not isinstance(obj, dict):
            raise ValueError("not a JSON object")
    except ValueError as exc:
        raise ValueError(f"failed to unmarshall {what}: {exc}") from exc
    return obj


def override_cni_config_with_server_config(
    cni_conf: bytes | str, override_conf: bytes | str | None, ignore_readiness_indicator: bool
) -> bytes:
    """Copy every key of ``override_conf`` into ``cni_conf`` and return the result."""
    cni_bytes = cni_conf.encode() if isinstance(cni_conf, str) else bytes(cni_conf)
    if not override_conf:
        return cni_bytes

    cni = _json_object(cni_bytes, "CNI config")
    override = _json_object(override_conf, "CNI override config")

    ignored = {READINESS_INDICATOR_KEY} if ignore_readiness_indicator else set()
    cni.update((key, value) for key, value in override.items() if key not in ignored)

    return json.dumps(cni, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def extract_cni_data(
    cni_request: Request, override_conf: bytes | str | None, ignore_readiness_indicator: bool
) -> tuple[str, CmdArgs]:
    """Return the CNI command and its arguments carried by a request."""
    env = cni_request.env
    if "CNI_COMMAND" not in env:
        raise ValueError("unexpected or missing CNI_COMMAND")
    if "CNI_CONTAINERID" not in env:
        raise ValueError("missing CNI_CONTAINERID")
    if "CNI_NETNS" not in env:
        raise ValueError("missing CNI_NETNS")
    if "CNI_ARGS" not in env:
        raise ValueError("missing CNI_ARGS")

    args = CmdArgs(
        container_id=env["CNI_CONTAINERID"],
        netns=env["CNI_NETNS"],
        if_name=env.get("CNI_IFNAME", DEFAULT_IF_NAME),
        args=env["CNI_ARGS"],
        stdin_data=override_cni_config_with_server_config(
            cni_request.config, override_conf, ignore_readiness_indicator
        ),
    )
    return env["CNI_COMMAND"], args


def _format_map(env: Mapping[str, str]) -> str:
    return "map[" + " ".join(f"{k}:{v}" for k, v in sorted(env.items())) + "]"


def gather_cni_args(env: Mapping[str, str]) -> dict[str, str]:
    """Split CNI_ARGS (``K=V;K=V``) into a dictionary."""
    if "CNI_ARGS" not in env:
        raise ValueError(f"missing CNI_ARGS: '{_format_map(env)}'")
    result: dict[str, str] = {}
    for arg in env["CNI_ARGS"].split(";"):
        parts = arg.split("=")
        if len(parts) != 2:
            raise ValueError(f"invalid CNI_ARG '{arg}'")
        result[parts[0].strip()] = parts[1].strip()
    return result


def kubernetes_runtime_args(
    env: Mapping[str, str], uid_lookup: Callable[[str, str], str] | None
) -> K8sArgs:
    """Read the pod identity from the request environment.

    ``uid_lookup(namespace, name)`` recovers the pod UID when the runtime
    did not pass it.
    """
    cni_env = gather_cni_args(env)
    if "K8S_POD_NAMESPACE" not in cni_env:
        raise ValueError("missing K8S_POD_NAMESPACE")
    if "K8S_POD_NAME" not in cni_env:
        raise ValueError("missing K8S_POD_NAME")
    namespace = cni_env["K8S_POD_NAMESPACE"]
    name = cni_env["K8S_POD_NAME"]

    uid = cni_env.get("K8S_POD_UID")
    if uid is None:
        prefix = "missing pod UID; attempted to recover it from the K8s API, but failed"
        if uid_lookup is None:
            raise ValueError(f"{prefix}: no pod lookup available")
        try:
            uid = uid_lookup(namespace, name)
        except Exception as exc:
            raise ValueError(f"{prefix}: {exc}") from exc

    return K8sArgs(
        pod_name=name,
        pod_namespace=namespace,
        pod_infra_container_id=env.get("K8S_POD_INFRA_CONTAINER_ID", ""),
        pod_uid=uid,
    )


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def format_cmd_args(args: CmdArgs) -> str:
    """Render CNI arguments on one line for logs and error messages."""
    return (
        f"ContainerID:{_quote(args.container_id)} Netns:{_quote(args.netns)} "
        f"IfName:{_quote(args.if_name)} Args:{_quote(args.args)} Path:{_quote(args.path)}"
    )