import json
import os
import stat

import pytest

from thickcni.api import CmdArgs, Request
from thickcni.daemonconf import (
    ControllerNetConf,
    K8sArgs,
    PerNodeCertificate,
    extract_cni_data,
    filesystem_pre_requirements,
    format_cmd_args,
    gather_cni_args,
    is_per_node_cert_enabled,
    kubernetes_runtime_args,
    load_daemon_net_conf,
    override_cni_config_with_server_config,
)

CNI_CONF = b"""{
	"binDir": "/var/lib/cni/bin",
	"clusterNetwork": "/host/run/multus/cni/net.d/10-ovn-kubernetes.conf",
	"cniVersion": "0.3.1",
	"daemonSocketDir": "/run/multus/socket",
	"globalNamespaces": "default,openshift-multus,openshift-sriov-network-operator",
	"logLevel": "verbose",
	"logToStderr": true,
	"name": "multus-cni-network",
	"namespaceIsolation": true,
	"type": "multus-shim"
}"""

SERVER_CONF = b"""{
	"cniVersion": "0.4.0",
	"chrootDir": "/hostroot",
	"logToStderr": false,
	"logLevel": "debug",
	"binDir": "/foo/bar",
	"cniConfigDir": "/host/etc/cni/net.d",
	"multusConfigFile": "auto",
	"multusAutoconfigDir": "/host/run/multus/cni/net.d",
	"namespaceIsolation": false,
	"globalNamespaces": "other,namespace",
	"readinessindicatorfile": "/host/run/multus/cni/net.d/10-ovn-kubernetes.conf",
	"daemonSocketDir": "/somewhere/socket",
	"socketDir": "/host/run/multus/socket"
}"""

EXPECTED_BASE = {
    "clusterNetwork": "/host/run/multus/cni/net.d/10-ovn-kubernetes.conf",
    "name": "multus-cni-network",
    "type": "multus-shim",
    "cniVersion": "0.4.0",
    "chrootDir": "/hostroot",
    "logToStderr": False,
    "logLevel": "debug",
    "binDir": "/foo/bar",
    "cniConfigDir": "/host/etc/cni/net.d",
    "multusConfigFile": "auto",
    "multusAutoconfigDir": "/host/run/multus/cni/net.d",
    "namespaceIsolation": False,
    "globalNamespaces": "other,namespace",
    "daemonSocketDir": "/somewhere/socket",
    "socketDir": "/host/run/multus/socket",
}


def test_override_with_server_config():
    new_conf = override_cni_config_with_server_config(CNI_CONF, SERVER_CONF, False)
    expected = dict(EXPECTED_BASE)
    expected["readinessindicatorfile"] = "/host/run/multus/cni/net.d/10-ovn-kubernetes.conf"
    assert json.loads(new_conf) == expected


def test_override_with_server_config_ignores_readiness_indicator():
    new_conf = override_cni_config_with_server_config(CNI_CONF, SERVER_CONF, True)
    assert json.loads(new_conf) == EXPECTED_BASE


def test_override_empty_returns_input_unchanged():
    assert override_cni_config_with_server_config(CNI_CONF, b"", False) == CNI_CONF


def test_override_bad_cni_config():
    with pytest.raises(ValueError, match="failed to unmarshall CNI config"):
        override_cni_config_with_server_config(b"{", SERVER_CONF, False)


def test_override_bad_override_config():
    with pytest.raises(ValueError, match="failed to unmarshall CNI override config"):
        override_cni_config_with_server_config(CNI_CONF, b"[1]", False)


def _env(**extra):
    env = {
        "CNI_COMMAND": "ADD",
        "CNI_CONTAINERID": "123456789",
        "CNI_NETNS": "/var/run/netns/test",
        "CNI_ARGS": "K8S_POD_NAMESPACE=test;K8S_POD_NAME=my-little-pod;K8S_POD_UID=testUID",
    }
    env.update(extra)
    return env


def test_extract_cni_data_defaults_ifname():
    cmd, args = extract_cni_data(Request(env=_env(), config=b'{"a":1}'), b"", False)
    assert cmd == "ADD"
    assert args.container_id == "123456789"
    assert args.netns == "/var/run/netns/test"
    assert args.if_name == "eth0"
    assert args.stdin_data == b'{"a":1}'


def test_extract_cni_data_applies_override():
    request = Request(env=_env(CNI_IFNAME="net1"), config=b'{"a":1,"b":2}')
    _, args = extract_cni_data(request, b'{"b":3}', False)
    assert args.if_name == "net1"
    assert json.loads(args.stdin_data) == {"a": 1, "b": 3}


@pytest.mark.parametrize(
    "missing,message",
    [
        ("CNI_COMMAND", "unexpected or missing CNI_COMMAND"),
        ("CNI_CONTAINERID", "missing CNI_CONTAINERID"),
        ("CNI_NETNS", "missing CNI_NETNS"),
        ("CNI_ARGS", "missing CNI_ARGS"),
    ],
)
def test_extract_cni_data_missing_fields(missing, message):
    env = _env()
    del env[missing]
    with pytest.raises(ValueError, match=message):
        extract_cni_data(Request(env=env, config=b"{}"), b"", False)


def test_gather_cni_args_strips_whitespace():
    parsed = gather_cni_args({"CNI_ARGS": " A = 1 ;B=2"})
    assert parsed == {"A": "1", "B": "2"}


def test_gather_cni_args_invalid():
    with pytest.raises(ValueError, match="invalid CNI_ARG 'foo'"):
        gather_cni_args({"CNI_ARGS": "A=1;foo"})


def test_gather_cni_args_missing():
    with pytest.raises(ValueError, match="missing CNI_ARGS"):
        gather_cni_args({"CNI_COMMAND": "ADD"})


def test_kubernetes_runtime_args_with_uid():
    env = _env(K8S_POD_INFRA_CONTAINER_ID="sandbox")
    k8s_args = kubernetes_runtime_args(env, None)
    assert k8s_args == K8sArgs(
        pod_name="my-little-pod",
        pod_namespace="test",
        pod_infra_container_id="sandbox",
        pod_uid="testUID",
    )


def test_kubernetes_runtime_args_looks_up_uid():
    env = _env(CNI_ARGS="K8S_POD_NAMESPACE=test;K8S_POD_NAME=pod")
    calls = []

    def lookup(namespace, name):
        calls.append((namespace, name))
        return "recovered"

    k8s_args = kubernetes_runtime_args(env, lookup)
    assert k8s_args.pod_uid == "recovered"
    assert calls == [("test", "pod")]
    assert k8s_args.pod_infra_container_id == ""


def test_kubernetes_runtime_args_lookup_failure():
    env = _env(CNI_ARGS="K8S_POD_NAMESPACE=test;K8S_POD_NAME=pod")

    def lookup(namespace, name):
        raise LookupError("not found")

    with pytest.raises(ValueError, match="missing pod UID"):
        kubernetes_runtime_args(env, lookup)


@pytest.mark.parametrize(
    "cni_args,message",
    [
        ("K8S_POD_NAME=pod", "missing K8S_POD_NAMESPACE"),
        ("K8S_POD_NAMESPACE=test", "missing K8S_POD_NAME"),
    ],
)
def test_kubernetes_runtime_args_missing_pod_fields(cni_args, message):
    with pytest.raises(ValueError, match=message):
        kubernetes_runtime_args(_env(CNI_ARGS=cni_args), None)


def test_format_cmd_args():
    args = CmdArgs(container_id="123", netns="/ns", if_name="eth0", args="A=1")
    assert format_cmd_args(args) == 'ContainerID:"123" Netns:"/ns" IfName:"eth0" Args:"A=1" Path:""'


def test_filesystem_pre_requirements_creates_missing_dir(tmp_path):
    rundir = tmp_path / "socket"
    filesystem_pre_requirements(str(rundir))
    assert rundir.is_dir()
    assert stat.S_IMODE(os.stat(rundir).st_mode) == 0o700


def test_filesystem_pre_requirements_empties_existing_dir(tmp_path):
    rundir = tmp_path / "socket"
    rundir.mkdir(mode=0o700)
    (rundir / "stale").write_text("x")
    filesystem_pre_requirements(str(rundir))
    assert list(rundir.iterdir()) == []


def test_per_node_cert_disabled():
    assert is_per_node_cert_enabled(None) is False
    assert is_per_node_cert_enabled(PerNodeCertificate(enabled=False)) is False


def test_per_node_cert_enabled():
    cert = PerNodeCertificate(enabled=True, bootstrap_kubeconfig="/kc", cert_dir="/certs")
    assert is_per_node_cert_enabled(cert) is True


def test_per_node_cert_incomplete():
    with pytest.raises(ValueError, match="failed to configure PerNodeCertificate"):
        is_per_node_cert_enabled(PerNodeCertificate(enabled=True, cert_dir="/certs"))


def test_load_daemon_net_conf_defaults():
    raw = b'{"chrootDir": "/hostroot"}'
    conf = load_daemon_net_conf(raw)
    assert conf.socket_dir == "/run/multus/"
    assert conf.chroot_dir == "/hostroot"
    assert conf.config_file_contents == raw
    assert conf.per_node_certificate is None
    assert conf.metrics_port is None


def test_load_daemon_net_conf_values():
    raw = json.dumps(
        {
            "socketDir": "/host/run/multus/socket",
            "logLevel": "debug",
            "metricsPort": 9091,
            "perNodeCertificate": {"enabled": True, "certDir": "/certs"},
        }
    )
    conf = load_daemon_net_conf(raw)
    assert conf.socket_dir == "/host/run/multus/socket"
    assert conf.log_level == "debug"
    assert conf.metrics_port == 9091
    assert conf.per_node_certificate == PerNodeCertificate(enabled=True, cert_dir="/certs")
    assert isinstance(conf, ControllerNetConf) and conf.log_to_stderr is False


def test_load_daemon_net_conf_invalid():
    with pytest.raises(ValueError, match="failed to unmarshall the daemon configuration"):
        load_daemon_net_conf(b"{not json")


def test_load_daemon_net_conf_wrong_type():
    with pytest.raises(ValueError, match="failed to unmarshall the daemon configuration"):
        load_daemon_net_conf(b'{"metricsPort": "abc"}')