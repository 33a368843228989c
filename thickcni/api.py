"""Client side of the daemon API: wire types and HTTP over a unix socket."""

from __future__ import annotations

import base64
import binascii
import http.client
import json
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

API_READY_POLL_DURATION = 0.1
API_READY_POLL_TIMEOUT = 60.0

MULTUS_CNI_API_ENDPOINT = "/cni"
MULTUS_DELEGATE_API_ENDPOINT = "/delegate"
MULTUS_HEALTH_API_ENDPOINT = "/healthz"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"

SERVER_SOCKET_NAME = "multus.sock"


class CNIRequestError(Exception):
    """A request to the daemon could not be made or was refused."""


@dataclass
class CmdArgs:
    """Arguments a CNI plugin receives from its runtime."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes = b""


@dataclass
class DelegateInterfaceAttributes:
    """Extra attributes attached to a delegate request."""

    ip_request: list[str] | None = None
    mac_request: str = ""
    cni_args: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.ip_request:
            data["ips"] = list(self.ip_request)
        if self.mac_request:
            data["mac"] = self.mac_request
        data["cni-args"] = self.cni_args
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DelegateInterfaceAttributes":
        if not isinstance(data, dict):
            raise ValueError("interface attributes must be a JSON object")
        ips = data.get("ips")
        if ips is not None and not (
            isinstance(ips, list) and all(isinstance(ip, str) for ip in ips)
        ):
            raise ValueError("interface attribute 'ips' must be a list of strings")
        mac = data.get("mac") or ""
        if not isinstance(mac, str):
            raise ValueError("interface attribute 'mac' must be a string")
        cni_args = data.get("cni-args")
        if cni_args is not None and not isinstance(cni_args, dict):
            raise ValueError("interface attribute 'cni-args' must be an object")
        return cls(ip_request=ips, mac_request=mac, cni_args=cni_args)


@dataclass
class Request:
    """A request sent to the daemon by the shim."""

    env: dict[str, str] = field(default_factory=dict)
    config: bytes = b""
    interface_attributes: DelegateInterfaceAttributes | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.config:
            data["config"] = base64.b64encode(self.config).decode("ascii")
        if self.interface_attributes is not None:
            data["interfaceAttributes"] = self.interface_attributes.to_dict()
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "Request":
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("request must be a JSON object")
        env = obj.get("env") or {}
        if not isinstance(env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            raise ValueError("request 'env' must map strings to strings")
        raw_config = obj.get("config")
        if raw_config is None:
            config = b""
        elif isinstance(raw_config, str):
            try:
                config = base64.b64decode(raw_config, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"request 'config' is not valid base64: {exc}") from exc
        else:
            raise ValueError("request 'config' must be a base64 string")
        attrs = obj.get("interfaceAttributes")
        return cls(
            env=dict(env),
            config=config,
            interface_attributes=(
                DelegateInterfaceAttributes.from_dict(attrs) if attrs is not None else None
            ),
        )


@dataclass
class Response:
    """The daemon's answer to a request; ``result`` is a CNI 1.0.0 result."""

    result: dict[str, Any] | None = None

    def to_json(self) -> bytes:
        return json.dumps({"Result": self.result}).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "Response":
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("response must be a JSON object")
        if "Result" in obj:
            result = obj["Result"]
        else:
            result = next((v for k, v in obj.items() if k.lower() == "result"), None)
        if result is not None and not isinstance(result, dict):
            raise ValueError("response 'Result' must be an object")
        return cls(result=result)


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, host: str, unix_path: str, timeout: float | None = None) -> None:
        super().__init__(host, timeout=timeout)
        self._unix_path = unix_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        if self.timeout is not None:
            sock.settimeout(self.timeout)
        try:
            sock.connect(self._unix_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


def socket_path(rundir: str) -> str:
    """Return the path of the daemon socket inside ``rundir``."""
    return os.path.normpath(os.path.join(rundir, SERVER_SOCKET_NAME))


def get_api_endpoint(endpoint: str) -> str:
    """Return the URL used to reach ``endpoint`` on the daemon."""
    return f"http://dummy{endpoint}"


def _encode(req: Any) -> bytes:
    if isinstance(req, Request):
        return req.to_json()
    if isinstance(req, Response):
        return req.to_json()
    return json.dumps(req).encode()


def do_cni(url: str, req: Any, socket_path: str) -> bytes:
    """POST ``req`` as JSON to ``url`` over the unix socket and return the body."""
    try:
        data = _encode(req)
    except (TypeError, ValueError) as exc:
        raise CNIRequestError(f"failed to marshal CNI request {req!r}: {exc}") from exc

    parts = urlsplit(url)
    target = parts.path or "/"
    if parts.query:
        target = f"{target}?{parts.query}"

    conn = _UnixHTTPConnection(parts.hostname or "dummy", socket_path)
    try:
        try:
            conn.request(
                "POST", target, body=data, headers={"Content-Type": "application/json"}
            )
            resp = conn.getresponse()
        except (OSError, http.client.HTTPException) as exc:
            raise CNIRequestError(f"failed to send CNI request: {exc}") from exc
        try:
            body = resp.read()
        except (OSError, http.client.HTTPException) as exc:
            raise CNIRequestError(f"failed to read CNI result: {exc}") from exc
    finally:
        conn.close()

    if resp.status != http.HTTPStatus.OK:
        text = body.decode(errors="replace")
        raise CNIRequestError(f"CNI request failed with status {resp.status}: '{text}'")
    return body


def create_delegate_request(
    cni_command: str,
    cni_container_id: str,
    cni_net_ns: str,
    cni_if_name: str,
    pod_namespace: str,
    pod_name: str,
    pod_uid: str,
    cni_config: bytes,
    interface_attributes: DelegateInterfaceAttributes | None,
) -> Request:
    """Build a request for the delegate endpoint."""
    return Request(
        env={
            "CNI_COMMAND": cni_command.upper(),
            "CNI_CONTAINERID": cni_container_id,
            "CNI_NETNS": cni_net_ns,
            "CNI_IFNAME": cni_if_name,
            "CNI_ARGS": (
                f"K8S_POD_NAMESPACE={pod_namespace};"
                f"K8S_POD_NAME={pod_name};K8S_POD_UID={pod_uid}"
            ),
        },
        config=cni_config,
        interface_attributes=interface_attributes,
    )


def _health_check(rundir: str) -> None:
    do_cni(get_api_endpoint(MULTUS_HEALTH_API_ENDPOINT), None, socket_path(rundir))


def wait_until_api_ready(socket_path: str) -> None:
    """Poll the daemon's health endpoint under ``socket_path`` until it answers."""
    deadline = time.monotonic() + API_READY_POLL_TIMEOUT
    while True:
        try:
            _health_check(socket_path)
            return
        except CNIRequestError:
            pass
        if time.monotonic() >= deadline:
            raise CNIRequestError("timed out waiting for the condition")
        time.sleep(API_READY_POLL_DURATION)


def check_api_ready_now(socket_path: str) -> None:
    """Check once that the daemon under ``socket_path`` answers."""
    try:
        _health_check(socket_path)
    except CNIRequestError as exc:
        raise CNIRequestError(
            f"CheckAPIReadyNow: Daemon not reachable over socketfile: {exc}"
        ) from exc