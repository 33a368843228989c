import json
import logging
import shutil
import socketserver
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from thickcni import api, shim
from thickcni.api import CmdArgs, CNIRequestError, Request


class _Handler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.received.append((self.path, body))
        if self.path == "/cni":
            status, payload = self.server.cni_reply
        elif self.path == "/healthz":
            status, payload = 200, b""
        else:
            status, payload = 404, b""
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


class _Server(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


RESULT = {"cniVersion": "1.0.0", "ips": [{"address": "1.1.1.2/24", "gateway": "1.1.1.1"}]}


@pytest.fixture
def daemon():
    rundir = tempfile.mkdtemp(prefix="tc")
    server = _Server(api.socket_path(rundir), _Handler)
    server.received = []
    server.cni_reply = (200, json.dumps({"Result": RESULT}).encode())
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield rundir, server
    server.shutdown()
    server.server_close()
    shutil.rmtree(rundir, ignore_errors=True)


def _args(rundir, version="0.4.0"):
    config = json.dumps({"cniVersion": version, "daemonSocketDir": rundir, "name": "n"})
    return CmdArgs(container_id="123456789", netns="/tmp/ns", if_name="eth0",
                   stdin_data=config.encode())


def test_parse_shim_config_defaults():
    conf = shim.parse_shim_config(b'{"cniVersion": "0.4.0"}')
    assert conf.cni_version == "0.4.0"
    assert conf.multus_socket_dir == api.DEFAULT_MULTUS_RUN_DIR
    assert conf.log_to_stderr is False


def test_parse_shim_config_reads_fields(tmp_path):
    log_file = str(tmp_path / "shim.log")
    conf = shim.parse_shim_config(json.dumps(
        {"daemonSocketDir": "/x", "logFile": log_file, "logLevel": "debug"}
    ))
    assert conf.multus_socket_dir == "/x"
    assert conf.log_file == log_file
    assert conf.log_level == "debug"


def test_parse_shim_config_invalid():
    with pytest.raises(CNIRequestError, match="failed to gather the multus configuration"):
        shim.parse_shim_config(b"{not json")


def test_new_cni_request_uses_environment(monkeypatch):
    monkeypatch.setenv("CNI_COMMAND", "ADD")
    args = CmdArgs(stdin_data=b'{"a": 1}')
    req = shim.new_cni_request(args)
    assert req.env["CNI_COMMAND"] == "ADD"
    assert req.config == b'{"a": 1}'


def test_post_request_invalid_config_skips_readiness():
    calls = []
    with pytest.raises(CNIRequestError, match="^invalid CNI configuration passed to multus-shim"):
        shim.post_request(CmdArgs(stdin_data=b"[]"), calls.append)
    assert calls == []


def test_post_request_readiness_failure_propagates(daemon):
    rundir, server = daemon

    def not_ready(path):
        raise CNIRequestError(f"not ready {path}")

    with pytest.raises(CNIRequestError, match="not ready"):
        shim.post_request(_args(rundir), not_ready)
    assert server.received == []


def test_post_request_sends_env_and_config(daemon, monkeypatch):
    rundir, server = daemon
    monkeypatch.setenv("CNI_COMMAND", "ADD")
    calls = []
    args = _args(rundir)
    response, version = shim.post_request(args, calls.append)
    assert calls == [rundir]
    assert version == "0.4.0"
    assert response.result == RESULT
    path, body = server.received[-1]
    assert path == "/cni"
    sent = Request.from_json(body)
    assert sent.config == args.stdin_data
    assert sent.env["CNI_COMMAND"] == "ADD"


def test_post_request_empty_body(daemon):
    rundir, server = daemon
    server.cni_reply = (200, b"")
    response, _ = shim.post_request(_args(rundir), lambda _: None)
    assert response.result is None


def test_post_request_error_includes_stdin(daemon):
    rundir, server = daemon
    server.cni_reply = (400, b"bad")
    args = _args(rundir)
    with pytest.raises(CNIRequestError) as info:
        shim.post_request(args, lambda _: None)
    assert str(info.value).endswith("StdinData: " + args.stdin_data.decode())


def test_cmd_add_prints_converted_result(daemon, capsys):
    rundir, _ = daemon
    result = shim.cmd_add(_args(rundir, "0.4.0"))
    printed = json.loads(capsys.readouterr().out)
    assert printed == result
    assert printed["cniVersion"] == "0.4.0"
    assert printed["ips"][0]["version"] == "4"
    assert printed["ips"][0]["address"] == "1.1.1.2/24"


def test_cmd_add_legacy_version(daemon, capsys):
    rundir, _ = daemon
    result = shim.cmd_add(_args(rundir, "0.2.0"))
    assert result["ip4"]["ip"] == "1.1.1.2/24"
    assert result["ip4"]["gateway"] == "1.1.1.1"
    assert "ips" not in result


def test_cmd_add_failure(daemon):
    rundir, server = daemon
    server.cni_reply = (400, b"bad")
    with pytest.raises(CNIRequestError, match=r"^CmdAdd \(shim\)"):
        shim.cmd_add(_args(rundir))


def test_cmd_check_and_status_succeed(daemon):
    rundir, server = daemon
    shim.cmd_check(_args(rundir))
    shim.cmd_status(_args(rundir))
    assert [p for p, _ in server.received].count("/cni") == 2


def test_cmd_gc_unreachable(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "API_READY_POLL_TIMEOUT", 0.2)
    with pytest.raises(CNIRequestError, match=r"^CmdGC \(shim\)"):
        shim.cmd_gc(_args(str(tmp_path)))


def test_cmd_check_unreachable(tmp_path, monkeypatch):
    monkeypatch.setattr(api, "API_READY_POLL_TIMEOUT", 0.2)
    with pytest.raises(CNIRequestError, match=r"^CmdCheck \(shim\)"):
        shim.cmd_check(_args(str(tmp_path)))


def test_cmd_del_logs_instead_of_raising(tmp_path, caplog):
    with caplog.at_level(logging.ERROR, logger="thickcni.shim"):
        outcome = shim.cmd_del(_args(str(tmp_path)))
    assert outcome is None
    assert any("CmdDel (shim)" in record.getMessage() for record in caplog.records)


def test_cmd_del_reaches_daemon(daemon):
    rundir, server = daemon
    shim.cmd_del(_args(rundir))
    assert [p for p, _ in server.received] == ["/healthz", "/cni"]