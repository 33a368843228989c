"""The daemon's HTTP server: receives CNI requests from the shim over a unix socket."""

from __future__ import annotations

import copy
import json
import logging
import os
import socket
import socketserver
import threading
from collections import Counter
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any, Callable, Protocol
from urllib.parse import urlsplit

from thickcni.api import (
    MULTUS_CNI_API_ENDPOINT,
    MULTUS_DELEGATE_API_ENDPOINT,
    MULTUS_HEALTH_API_ENDPOINT,
    CmdArgs,
    CNIRequestError,
    DelegateInterfaceAttributes,
    Request,
    Response,
)
from thickcni.daemonconf import (
    K8sArgs,
    extract_cni_data,
    format_cmd_args,
    kubernetes_runtime_args,
)

log = logging.getLogger(__name__)

USER_RW_PERMISSION = 0o600
NOT_FOUND_HANDLER = "NotFound"
CURRENT_CNI_VERSION = "1.0.0"
_LEGACY_VERSIONS = {"0.1.0", "0.2.0"}


class _Backend(Protocol):
    def add(self, cmd_args: CmdArgs, k8s_args: K8sArgs) -> dict[str, Any]: ...
    def delete(self, cmd_args: CmdArgs, k8s_args: K8sArgs) -> None: ...
    def check(self, cmd_args: CmdArgs, k8s_args: K8sArgs) -> None: ...
    def gc(self, cmd_args: CmdArgs, k8s_args: K8sArgs) -> None: ...
    def status(self, cmd_args: CmdArgs, k8s_args: K8sArgs) -> None: ...
    def delegate_add(
        self,
        cmd_args: CmdArgs,
        k8s_args: K8sArgs,
        multus_config: dict[str, Any],
        interface_attributes: DelegateInterfaceAttributes | None,
    ) -> dict[str, Any]: ...
    def delegate_del(
        self, cmd_args: CmdArgs, k8s_args: K8sArgs, multus_config: dict[str, Any]
    ) -> None: ...
    def delegate_check(
        self, cmd_args: CmdArgs, k8s_args: K8sArgs, multus_config: dict[str, Any]
    ) -> None: ...


class RequestCounter:
    """Counts HTTP requests by handler, status code and method."""

    def __init__(self) -> None:
        self._counts: Counter[tuple[str, str, str]] = Counter()
        self._lock = threading.Lock()

    @staticmethod
    def _key(handler: str, code: int | str, method: str) -> tuple[str, str, str]:
        return handler, str(int(code)), method.lower()

    def inc(self, handler: str, code: int | str, method: str) -> None:
        with self._lock:
            self._counts[self._key(handler, code, method)] += 1

    def value(self, handler: str, code: int | str, method: str) -> int:
        with self._lock:
            return self._counts[self._key(handler, code, method)]


def get_listener(socket_path: str) -> socket.socket:
    """Listen on a unix socket at ``socket_path``, readable and writable by its owner only."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(socket_path)
        sock.listen()
    except OSError as exc:
        sock.close()
        log.error("failed to listen on pod info socket: %s", exc)
        raise OSError(f"failed to listen on pod info socket: {exc}") from exc
    try:
        os.chmod(socket_path, USER_RW_PERMISSION)
    except OSError as exc:
        sock.close()
        log.error("failed to listen on pod info socket: %s", exc)
        raise OSError(f"failed to listen on pod info socket: {exc}") from exc
    return sock


def _legacy_to_current(result: dict[str, Any]) -> dict[str, Any]:
    ips: list[dict[str, Any]] = []
    routes: list[dict[str, Any]] = []
    for key in ("ip4", "ip6"):
        entry = result.get(key)
        if not entry:
            continue
        ip: dict[str, Any] = {"address": entry["ip"]}
        if entry.get("gateway"):
            ip["gateway"] = entry["gateway"]
        ips.append(ip)
        routes.extend(dict(route) for route in entry.get("routes") or [])
    out: dict[str, Any] = {"cniVersion": CURRENT_CNI_VERSION}
    if ips:
        out["ips"] = ips
    if routes:
        out["routes"] = routes
    if result.get("dns"):
        out["dns"] = copy.deepcopy(result["dns"])
    return out


def _to_current_result(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise CNIRequestError("failed to generate the CNI result: no result to convert")
    if result.get("cniVersion") in _LEGACY_VERSIONS or "ip4" in result or "ip6" in result:
        try:
            return _legacy_to_current(result)
        except (KeyError, TypeError) as exc:
            raise CNIRequestError(f"failed to generate the CNI result: {exc}") from exc
    converted = copy.deepcopy(result)
    converted["cniVersion"] = CURRENT_CNI_VERSION
    for ip in converted.get("ips") or []:
        ip.pop("version", None)
    return converted


def _serialize_result(result: Any) -> bytes:
    current = _to_current_result(result)
    try:
        return Response(result=current).to_json()
    except (TypeError, ValueError) as exc:
        raise CNIRequestError(f"failed to marshal pod request response: {exc}") from exc


def _require_pod(k8s_args: K8sArgs) -> tuple[str, str]:
    namespace, name = k8s_args.pod_namespace, k8s_args.pod_name
    if not namespace or not name:
        raise CNIRequestError(
            f"required CNI variable missing. pod name: {name}; pod namespace: {namespace}"
        )
    return namespace, name


class _SocketHTTPServer(socketserver.ThreadingMixIn, socketserver.BaseServer):
    daemon_threads = True

    def __init__(self, listener: socket.socket, handler: Any) -> None:
        super().__init__(listener.getsockname(), handler)
        self.socket = listener

    def fileno(self) -> int:
        return self.socket.fileno()

    def get_request(self) -> tuple[socket.socket, Any]:
        return self.socket.accept()

    def shutdown_request(self, request: Any) -> None:
        try:
            request.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        self.close_request(request)

    def close_request(self, request: Any) -> None:
        request.close()

    def server_close(self) -> None:
        self.socket.close()


def _make_handler(server: "Server") -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        def _serve(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length > 0 else b""
            status, content_type, payload = server.dispatch(self.command, self.path, body)
            self.send_response(status)
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(payload)))
            self.send_header("Connection", "close")
            self.end_headers()
            if payload and self.command != "HEAD":
                self.wfile.write(payload)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _serve

        def log_message(self, format: str, *args: Any) -> None:
            log.debug("http: " + format, *args)

    return _Handler


class Server:
    """Handles CNI and delegate requests from the shim.

    ``backend`` performs the network operations; ``uid_lookup(namespace, name)``
    recovers a pod UID the runtime did not pass.
    """

    def __init__(
        self,
        rundir: str,
        backend: _Backend,
        server_config: bytes = b"",
        ignore_readiness_indicator: bool = False,
        uid_lookup: Callable[[str, str], str] | None = None,
    ) -> None:
        self.rundir = rundir
        self.backend = backend
        self.server_config = server_config
        self.ignore_readiness_indicator = ignore_readiness_indicator
        self.uid_lookup = uid_lookup
        self.request_counter = RequestCounter()
        self._httpd: _SocketHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def handle_cni_request(self, cmd: str, k8s_args: K8sArgs, cmd_args: CmdArgs) -> bytes:
        """Run one CNI command and return the serialized response (empty if none)."""
        described = format_cmd_args(cmd_args)
        log.info("%s starting CNI request %s", cmd, described)
        operations = {
            "DEL": self.backend.delete,
            "CHECK": self.backend.check,
            "GC": self.backend.gc,
            "STATUS": self.backend.status,
        }
        if cmd != "ADD" and cmd not in operations:
            raise ValueError(f"unknown cmd type: {cmd}")
        namespace, name = _require_pod(k8s_args)
        log.debug("Cmd%s for [%s/%s]. CNI conf: %s", cmd, namespace, name, cmd_args)
        result = b""
        if cmd == "ADD":
            try:
                added = self.backend.add(cmd_args, k8s_args)
            except Exception as exc:
                raise CNIRequestError(
                    f"error configuring pod [{namespace}/{name}] networking: {exc}"
                ) from exc
            result = _serialize_result(added)
        else:
            operations[cmd](cmd_args, k8s_args)
        log.info("%s finished CNI request %s, result: %r", cmd, described, result)
        return result

    def handle_delegate_request(
        self,
        cmd: str,
        k8s_args: K8sArgs,
        cmd_args: CmdArgs,
        interface_attributes: DelegateInterfaceAttributes | None,
    ) -> bytes:
        """Run one delegate command and return the serialized response (empty if none)."""
        try:
            multus_config = json.loads(self.server_config)
            if not isinstance(multus_config, dict):
                raise ValueError("server configuration is not a JSON object")
        except ValueError as exc:
            raise ValueError(f"invalid server configuration: {exc}") from exc

        described = format_cmd_args(cmd_args)
        log.info("%s starting delegate request %s", cmd, described)
        result = b""
        if cmd == "ADD":
            namespace, name = _require_pod(k8s_args)
            log.debug("CmdDelegateAdd for [%s/%s]. CNI conf: %s", namespace, name, cmd_args)
            try:
                added = self.backend.delegate_add(
                    cmd_args, k8s_args, multus_config, interface_attributes
                )
            except Exception as exc:
                raise CNIRequestError(
                    f"error configuring pod [{namespace}/{name}] networking: {exc}"
                ) from exc
            result = _serialize_result(added)
        elif cmd == "DEL":
            _require_pod(k8s_args)
            self.backend.delegate_del(cmd_args, k8s_args, multus_config)
        elif cmd == "CHECK":
            self.backend.delegate_check(cmd_args, k8s_args, multus_config)
        else:
            raise ValueError(f"unknown cmd type: {cmd}")
        log.info("%s finished Delegate request %s, result: %r", cmd, described, result)
        return result

    def _parse_request(self, body: bytes) -> tuple[Request, str, CmdArgs, K8sArgs]:
        request = Request.from_json(body)
        try:
            cmd, cmd_args = extract_cni_data(
                request, self.server_config, self.ignore_readiness_indicator
            )
        except ValueError as exc:
            raise ValueError(f"could not extract the CNI command args: {exc}") from exc
        try:
            k8s_args = kubernetes_runtime_args(request.env, self.uid_lookup)
        except ValueError as exc:
            raise ValueError(f"could not extract the kubernetes runtime args: {exc}") from exc
        return request, cmd, cmd_args, k8s_args

    def _serve_cni(self, body: bytes) -> bytes:
        _request, cmd, cmd_args, k8s_args = self._parse_request(body)
        try:
            return self.handle_cni_request(cmd, k8s_args, cmd_args)
        except Exception as exc:
            raise CNIRequestError(f"{format_cmd_args(cmd_args)} ERRORED: {exc}") from exc

    def _serve_delegate(self, body: bytes) -> bytes:
        request, cmd, cmd_args, k8s_args = self._parse_request(body)
        try:
            return self.handle_delegate_request(
                cmd, k8s_args, cmd_args, request.interface_attributes
            )
        except Exception as exc:
            raise CNIRequestError(f"{format_cmd_args(cmd_args)} ERRORED: {exc}") from exc

    def dispatch(self, method: str, path: str, body: bytes) -> tuple[int, str, bytes]:
        """Route one HTTP request; return (status, content type, body)."""
        route = urlsplit(path).path
        endpoints = {
            MULTUS_CNI_API_ENDPOINT: self._serve_cni,
            MULTUS_DELEGATE_API_ENDPOINT: self._serve_delegate,
        }
        if route in endpoints:
            handler = route
            if method != "POST":
                reply = (HTTPStatus.METHOD_NOT_ALLOWED, "text/plain; charset=utf-8",
                         b"Method not allowed\n")
            else:
                try:
                    reply = (HTTPStatus.OK, "application/json", endpoints[route](body))
                except Exception as exc:
                    reply = (HTTPStatus.BAD_REQUEST, "text/plain; charset=utf-8",
                             f"{exc}\n".encode())
        elif route == MULTUS_HEALTH_API_ENDPOINT:
            handler = route
            if method in ("GET", "POST"):
                reply = (HTTPStatus.OK, "application/json", b"")
            else:
                reply = (HTTPStatus.METHOD_NOT_ALLOWED, "text/plain; charset=utf-8",
                         b"Method not allowed\n")
        else:
            handler = NOT_FOUND_HANDLER
            log.error("http not found: %s %s", method, path)
            reply = (HTTPStatus.NOT_FOUND, "", b"")
        status, content_type, payload = reply
        self.request_counter.inc(handler, int(status), method)
        return int(status), content_type, payload

    def start(self, listener: socket.socket) -> threading.Thread:
        """Serve requests arriving on ``listener`` in a background thread."""
        if self._httpd is not None:
            raise RuntimeError("server already started")
        self._httpd = _SocketHTTPServer(listener, _make_handler(self))
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="cni-server", daemon=True
        )
        log.debug("open for business")
        self._thread.start()
        return self._thread

    def close(self) -> None:
        """Stop serving and close the listener."""
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join()
        self._httpd = None
        self._thread = None