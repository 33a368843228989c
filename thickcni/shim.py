"""The CNI shim: forwards CNI commands to the daemon over its socket."""

from __future__ import annotations

import copy
import ipaddress
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable

from thickcni.api import (
    DEFAULT_MULTUS_RUN_DIR,
    CmdArgs,
    CNIRequestError,
    Request,
    Response,
    check_api_ready_now,
    do_cni,
    socket_path,
    wait_until_api_ready,
)

log = logging.getLogger(__name__)

_ROOT_LOGGER = logging.getLogger("thickcni")
_HANDLERS: dict[str, logging.Handler] = {}
_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}

_LEGACY_VERSIONS = {"0.1.0", "0.2.0"}
_IP_VERSIONED = {"0.3.0", "0.3.1", "0.4.0"}
_CURRENT_VERSIONS = {"1.0.0", "1.1.0"}


@dataclass
class ShimNetConf:
    """The fields of a CNI config that the shim itself reads."""

    cni_version: str = ""
    multus_socket_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False


def _set_handler(name: str, handler: logging.Handler | None) -> None:
    old = _HANDLERS.pop(name, None)
    if old is not None:
        _ROOT_LOGGER.removeHandler(old)
        old.close()
    if handler is not None:
        _HANDLERS[name] = handler
        _ROOT_LOGGER.addHandler(handler)


def _configure_logging(conf: ShimNetConf) -> None:
    _set_handler("stderr", logging.StreamHandler(sys.stderr) if conf.log_to_stderr else None)
    if conf.log_file:
        _set_handler("file", logging.FileHandler(conf.log_file))
    if conf.log_level:
        level = _LEVELS.get(conf.log_level.lower())
        if level is not None:
            _ROOT_LOGGER.setLevel(level)


def _typed(obj: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} has the wrong type")
    return value


def parse_shim_config(cni_config: bytes | str) -> ShimNetConf:
    """Read the shim settings out of a CNI config and apply its logging options."""
    try:
        obj = json.loads(cni_config)
        if not isinstance(obj, dict):
            raise ValueError("configuration is not a JSON object")
        conf = ShimNetConf(
            cni_version=_typed(obj, "cniVersion", str, ""),
            multus_socket_dir=_typed(obj, "daemonSocketDir", str, ""),
            log_file=_typed(obj, "logFile", str, ""),
            log_level=_typed(obj, "logLevel", str, ""),
            log_to_stderr=_typed(obj, "logToStderr", bool, False),
        )
    except ValueError as exc:
        raise CNIRequestError(f"failed to gather the multus configuration: {exc}") from exc
    if not conf.multus_socket_dir:
        conf.multus_socket_dir = DEFAULT_MULTUS_RUN_DIR
    _configure_logging(conf)
    return conf


def new_cni_request(args: CmdArgs) -> Request:
    """Build a request from this process's environment and the CNI config."""
    env = {key.strip(): value for key, value in os.environ.items() if key}
    return Request(env=env, config=args.stdin_data)


def post_request(
    args: CmdArgs, readiness_check: Callable[[str], None]
) -> tuple[Response, str]:
    """Send the CNI request to the daemon; return its response and the CNI version."""
    try:
        conf = parse_shim_config(args.stdin_data)
    except CNIRequestError as exc:
        raise CNIRequestError(
            f"invalid CNI configuration passed to multus-shim: {exc}"
        ) from exc

    readiness_check(conf.multus_socket_dir)

    request = new_cni_request(args)
    try:
        body = do_cni("http://dummy/cni", request, socket_path(conf.multus_socket_dir))
    except CNIRequestError as exc:
        stdin = args.stdin_data.decode(errors="replace")
        raise CNIRequestError(f"{exc}: StdinData: {stdin}") from exc

    if not body:
        return Response(), conf.cni_version
    try:
        response = Response.from_json(body)
    except ValueError as exc:
        text = body.decode(errors="replace")
        raise CNIRequestError(f"failed to unmarshal response '{text}': {exc}") from exc
    return response, conf.cni_version


def _ip_version(address: str) -> int:
    return ipaddress.ip_interface(address).version


def _to_legacy(result: dict[str, Any], version: str) -> dict[str, Any]:
    ip4: dict[str, Any] | None = None
    ip6: dict[str, Any] | None = None
    for ip in result.get("ips") or []:
        entry: dict[str, Any] = {"ip": ip["address"]}
        if ip.get("gateway"):
            entry["gateway"] = ip["gateway"]
        if _ip_version(ip["address"]) == 4:
            ip4 = ip4 or entry
        else:
            ip6 = ip6 or entry
    for route in result.get("routes") or []:
        family = ipaddress.ip_network(route["dst"], strict=False).version
        target = ip4 if family == 4 else ip6
        if target is not None:
            target.setdefault("routes", []).append(dict(route))
    out: dict[str, Any] = {"cniVersion": version}
    if ip4 is not None:
        out["ip4"] = ip4
    if ip6 is not None:
        out["ip6"] = ip6
    if result.get("dns"):
        out["dns"] = result["dns"]
    return out


def _result_as_version(result: dict[str, Any], version: str) -> dict[str, Any]:
    if version in _LEGACY_VERSIONS:
        try:
            return _to_legacy(result, version)
        except (KeyError, ValueError) as exc:
            raise CNIRequestError(f"failed to convert result to version {version}: {exc}") from exc
    if version not in _IP_VERSIONED and version not in _CURRENT_VERSIONS:
        raise CNIRequestError(f"unsupported CNI result version {version!r}")
    converted = copy.deepcopy(result)
    converted["cniVersion"] = version
    for ip in converted.get("ips") or []:
        if version in _IP_VERSIONED:
            try:
                ip["version"] = str(_ip_version(ip["address"]))
            except (KeyError, ValueError) as exc:
                raise CNIRequestError(
                    f"failed to convert result to version {version}: {exc}"
                ) from exc
        else:
            ip.pop("version", None)
    return converted


def cmd_add(args: CmdArgs) -> dict[str, Any]:
    """Handle CNI ADD: forward it and print the result in the caller's version."""
    try:
        response, cni_version = post_request(args, wait_until_api_ready)
        if response.result is None:
            raise CNIRequestError("the daemon returned no result")
    except CNIRequestError as exc:
        log.error("CmdAdd (shim): %s", exc)
        raise CNIRequestError(f"CmdAdd (shim): {exc}") from exc
    log.info("CmdAdd (shim): %s", response.result)
    converted = _result_as_version(response.result, cni_version)
    sys.stdout.write(json.dumps(converted, indent=4))
    sys.stdout.flush()
    return converted


def _forward(name: str, args: CmdArgs, readiness_check: Callable[[str], None]) -> None:
    try:
        post_request(args, readiness_check)
    except CNIRequestError as exc:
        log.error("%s (shim): %s", name, exc)
        raise CNIRequestError(f"{name} (shim): {exc}") from exc


def cmd_check(args: CmdArgs) -> None:
    """Handle CNI CHECK."""
    _forward("CmdCheck", args, wait_until_api_ready)


def cmd_del(args: CmdArgs) -> None:
    """Handle CNI DEL; failures are logged, never raised."""
    try:
        post_request(args, check_api_ready_now)
    except CNIRequestError as exc:
        log.error("CmdDel (shim): %s", exc)


def cmd_gc(args: CmdArgs) -> None:
    """Handle CNI GC."""
    _forward("CmdGC", args, wait_until_api_ready)


def cmd_status(args: CmdArgs) -> None:
    """Handle CNI STATUS."""
    _forward("CmdStatus", args, wait_until_api_ready)