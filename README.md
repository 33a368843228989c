# thickcni

`thickcni` provides the pieces of a "thick" multi-network CNI meta-plugin,
where a small shim invoked by the container runtime forwards every CNI
request to a long-running daemon:

* `thickcni.api` – the wire types (`CmdArgs`, `Request`, `Response`,
  `DelegateInterfaceAttributes`) and the client that posts JSON over HTTP on
  a unix socket;
* `thickcni.shim` – the shim's CNI command handlers;
* `thickcni.generator` and `thickcni.manager` – generation of the
  meta-plugin configuration from the cluster's primary CNI configuration,
  and a watcher that keeps it current;
* `thickcni.daemonconf` – the daemon's own configuration and the decoding of
  incoming CNI requests;
* `thickcni.server` – the daemon's HTTP server on the unix socket;
* `thickcni.chroot_exec` – running delegate plugins, optionally in a chroot;
* `thickcni.signals` – turning SIGINT/SIGTERM into a stop event.

It needs Python 3.10 or later and depends on `semver` and `watchdog`.
Install the `test` extra to run the test suite with pytest.

## Client side

Requests travel over a socket named `multus.sock` inside a run directory:

```python
from thickcni.api import socket_path, get_api_endpoint, do_cni, create_delegate_request

sock = socket_path("/run/multus/")       # "/run/multus/multus.sock"
url = get_api_endpoint("/delegate")      # "http://dummy/delegate"

request = create_delegate_request(
    "add", "123456789", "/var/run/netns/test", "net1",
    "default", "my-pod", "pod-uid",
    b'{"cniVersion": "0.4.0", "name": "net1", "type": "macvlan"}',
    None,
)
body = do_cni(url, request, sock)
```

`create_delegate_request` upper-cases the command and builds `CNI_ARGS` as
`K8S_POD_NAMESPACE=...;K8S_POD_NAME=...;K8S_POD_UID=...`. `do_cni` raises
`CNIRequestError` when the request cannot be sent or the daemon answers with
anything but HTTP 200. On the wire, `Request.config` is base64-encoded and
the response carries its CNI result under the key `Result`.

`check_api_ready_now(rundir)` probes `/healthz` once;
`wait_until_api_ready(rundir)` keeps probing every 100 ms for up to 60
seconds. Both take the run directory, not the socket path.

## The shim

`thickcni.shim` has `cmd_add`, `cmd_check`, `cmd_del`, `cmd_gc` and
`cmd_status`, each taking a `CmdArgs`. They read the shim settings from the
CNI configuration in `stdin_data` with `parse_shim_config`
(`daemonSocketDir`, defaulting to `/run/multus/`, `cniVersion`, `logFile`,
`logLevel`, `logToStderr`), then post the current process environment and
the configuration to the daemon's `/cni` endpoint.

* `cmd_add` waits for the daemon, converts the returned 1.0.0 result to the
  configuration's `cniVersion` (0.1.0 to 1.1.0), prints it to stdout and
  returns it.
* `cmd_check`, `cmd_gc` and `cmd_status` wait for the daemon and raise
  `CNIRequestError` on failure.
* `cmd_del` checks the daemon only once and, as CNI DEL requires, logs
  failures instead of raising them.

Log output goes through the `thickcni` logger; the levels understood are
`debug`, `verbose`, `error` and `panic`.

## Generating the configuration

```python
import threading
from thickcni.generator import parse_multus_config
from thickcni.manager import new_manager

conf = parse_multus_config("/etc/cni/multus/daemon-config.json")
manager = new_manager(conf)

print(manager.generate_config())   # the JSON to be written to 00-multus.conf

stop = threading.Event()
watcher = manager.start(stop)      # writes the file and watches for changes
...
stop.set()                         # stop watching; the generated file is removed
watcher.join()
```

`parse_multus_config` fills in defaults (`type` `multus-shim`,
`cniConfigDir` `/etc/cni/net.d`, `multusConfigFile` `auto`) and always names
the network `multus-cni-network`. `MultusConf.generate` drops the
daemon-only fields before serialising.

If `multusMasterCNI` is not set, the primary plugin is the first `.conf` or
`.conflist` file, in name order, in `multusAutoconfigDir` that does not
start with `00-multus`; `find_master_plugin` looks once a second, up to 120
times. When the top-level `cniVersion` is 0.4.0 or later,
`check_version_compatibility` rejects a delegate older than 0.4.0.
Capabilities enabled in the primary configuration, or in any entry of its
`plugins`, are carried into the generated configuration. With
`forceCNIVersion` the primary file's `cniVersion` is rewritten
(`override_cni_version`); with `overrideNetworkName` the generated network
takes the primary network's name.

The watcher regenerates and rewrites `00-multus.conf` whenever the primary
configuration file is written or created. If `readinessindicatorfile` is
set and that file is removed or renamed, the generated file is deleted and
the process exits with status 2.

## The daemon side

`load_daemon_net_conf` reads the daemon's JSON configuration into a
`ControllerNetConf` (`socketDir` defaults to `/run/multus/`) and applies its
logging options. `is_per_node_cert_enabled` raises when per-node
certificates are enabled without both `bootstrapKubeconfig` and `certDir`.
`filesystem_pre_requirements` recreates the socket directory empty with mode
0700, and `thickcni.server.get_listener` opens the unix socket with mode 0600.

`override_cni_config_with_server_config` merges the daemon configuration
over each incoming CNI configuration, optionally leaving
`readinessindicatorfile` untouched. `extract_cni_data`, `gather_cni_args`
and `kubernetes_runtime_args` turn a `Request` into the CNI command,
`CmdArgs` (interface name defaults to `eth0`) and `K8sArgs`.

`thickcni.server.Server` serves the socket:

```python
from thickcni.server import Server, get_listener
from thickcni.api import socket_path

server = Server("/run/multus/", backend, server_config=b"{}")
server.start(get_listener(socket_path("/run/multus/")))
...
server.close()
```

It answers POST on `/cni` (ADD, DEL, CHECK, GC, STATUS) and `/delegate`
(ADD, DEL, CHECK), GET or POST on `/healthz`, 405 for other methods and 404
for other paths; request failures come back as 400 with the error text.
`Server.dispatch(method, path, body)` does the routing without a socket.
ADD results are converted to CNI 1.0.0. Every request is counted in
`server.request_counter`, a `RequestCounter` keyed by handler, status code
and method.

`ChrootExec(chroot_dir, stderr)` runs a plugin with the given stdin and
`K=V` environment, inside `chroot_dir` when one is set, retrying up to six
times while the binary is busy ("text file busy"). A failing plugin raises
`PluginError`, carrying the code, message and details of the plugin's JSON
diagnostic when it printed one. `find_in_path` returns the first regular
file of that name among the given directories.

`thickcni.signals.setup_signal_handler()` installs SIGINT and SIGTERM
handlers and returns a `threading.Event` set on the first signal; a second
signal ends the process with exit status 1. It may be called only once.

## What this package does not do

* It does not perform the network operations themselves. `Server` calls a
  backend object you supply, with the methods `add`, `delete`, `check`,
  `gc`, `status`, `delegate_add`, `delegate_del` and `delegate_check`;
  there is no built-in backend that reads network attachment definitions,
  selects delegates or keeps a result cache.
* It has no Kubernetes client. A pod UID that the runtime did not pass can
  only be recovered through the `uid_lookup` callable given to `Server`.
* It installs no commands: there is no ready-made daemon or shim executable,
  and metrics are kept in memory only, not exposed over HTTP.