"""Watches the primary CNI configuration and keeps the multus configuration current."""

from __future__ import annotations

import copy
import json
import logging
import os
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from thickcni.generator import MultusConf, check_version_compatibility, find_master_plugin

log = logging.getLogger(__name__)

MULTUS_CONFIG_FILE_NAME = "00-multus.conf"
USER_RW_PERMISSION = 0o600

CREATE = "create"
WRITE = "write"
REMOVE = "remove"
RENAME = "rename"
CHMOD = "chmod"

_MASTER_PLUGIN_TRIES = 120


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return os.path.normpath(joined) if joined else ""


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


@dataclass(frozen=True)
class ConfigEvent:
    """A change to a watched path, with the set of operations it carries."""

    name: str
    ops: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "ops", frozenset(self.ops))


def _translate(event: FileSystemEvent) -> Iterator[ConfigEvent]:
    src = os.path.normpath(os.fsdecode(event.src_path))
    kind = event.event_type
    if kind == "created":
        yield ConfigEvent(src, {CREATE})
    elif kind == "modified":
        yield ConfigEvent(src, {WRITE})
    elif kind == "deleted":
        yield ConfigEvent(src, {REMOVE})
    elif kind == "moved":
        yield ConfigEvent(src, {RENAME})
        dest = getattr(event, "dest_path", "")
        if dest:
            yield ConfigEvent(os.path.normpath(os.fsdecode(dest)), {CREATE})


class _EventForwarder(FileSystemEventHandler):
    def __init__(self, sink: "queue.Queue[ConfigEvent]") -> None:
        super().__init__()
        self._sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        for config_event in _translate(event):
            self._sink.put(config_event)


def override_cni_version(cni_config_file: str, multus_cni_version: str) -> None:
    """Rewrite the cniVersion of a CNI configuration file in place."""
    path = os.path.abspath(cni_config_file)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OSError(f"failed to read cni config {path}: {exc}") from exc

    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("not a JSON object")
    except ValueError as exc:
        raise ValueError(f"failed to unmarshall cni config {cni_config_file}: {exc}") from exc

    data["cniVersion"] = multus_cni_version
    encoded = json.dumps(data, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    try:
        _write_file(path, encoded.encode(), 0o644)
    except OSError as exc:
        raise OSError(f"couldn't update cluster network config: {exc}") from exc


def get_primary_cni_plugin_name(multus_autoconfig_dir: str) -> str:
    """Find the file name of the primary CNI configuration in the directory."""
    try:
        return find_master_plugin(multus_autoconfig_dir, _MASTER_PLUGIN_TRIES)
    except OSError as exc:
        raise type(exc)(f"failed to find the cluster master CNI plugin: {exc}") from exc


def primary_cni_data(path: str) -> Any:
    """Read and decode the primary CNI configuration."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OSError(f"failed to read the cluster primary CNI config {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"failed to unmarshall primary CNI config: {exc}") from exc


@dataclass
class Manager:
    """Keeps the multus configuration in step with the primary CNI configuration."""

    multus_config: MultusConf
    multus_config_dir: str
    multus_config_file_path: str
    primary_cni_config_path: str
    readiness_indicator_file_path: str = ""
    cni_config_data: dict[str, Any] = field(default_factory=dict)
    _events: "queue.Queue[ConfigEvent]" = field(
        default_factory=queue.Queue, init=False, repr=False
    )

    def _watch_dirs(self) -> list[str]:
        dirs = [self.multus_config_dir]
        if self.readiness_indicator_file_path:
            readiness_dir = os.path.dirname(self.readiness_indicator_file_path) or "."
            if readiness_dir != self.multus_config_dir:
                dirs.append(readiness_dir)
        return dirs

    def load_primary_cni_config_from_file(self) -> None:
        """Reload the primary CNI configuration and the capabilities it enables."""
        try:
            data = primary_cni_data(self.primary_cni_config_path)
        except OSError as exc:
            log.error("failed to access the primary CNI configuration: %s", exc)
            raise OSError(
                "failed to access the primary CNI configuration from "
                f"{self.primary_cni_config_path}: {exc}"
            ) from exc
        except ValueError as exc:
            log.error("failed to access the primary CNI configuration: %s", exc)
            raise ValueError(
                "failed to access the primary CNI configuration from "
                f"{self.primary_cni_config_path}: {exc}"
            ) from exc

        check_version_compatibility(self.multus_config, data)

        if not isinstance(data, dict):
            raise ValueError("the primary CNI configuration is not a JSON object")
        self.cni_config_data = data
        self.multus_config.cluster_network = self.primary_cni_config_path
        self.multus_config.set_capabilities(data)

    def override_network_name(self) -> None:
        """Name the multus network after the primary CNI network."""
        if "name" not in self.cni_config_data:
            raise ValueError("failed to access delegate CNI plugin name")
        network_name = self.cni_config_data["name"]
        if not isinstance(network_name, str):
            raise ValueError("delegate CNI plugin name is not a string")
        if not network_name:
            raise ValueError(
                "the primary CNI Configuration does not feature the network name: "
                f"{self.cni_config_data}"
            )
        self.multus_config.name = network_name

    def generate_config(self) -> str:
        """Return the multus configuration; empty if the primary config cannot be read."""
        try:
            self.load_primary_cni_config_from_file()
        except (OSError, ValueError):
            log.error(
                "failed to read the primary CNI plugin config from %s",
                self.primary_cni_config_path,
            )
            return ""
        return self.multus_config.generate()

    def persist_multus_config(self, config: str) -> str:
        """Write the configuration to the multus config file and return its path."""
        if os.path.exists(self.multus_config_file_path):
            log.debug("Overwriting Multus CNI configuration @ %s", self.multus_config_file_path)
        else:
            log.debug("Writing Multus CNI configuration @ %s", self.multus_config_file_path)
        _write_file(self.multus_config_file_path, config.encode(), USER_RW_PERMISSION)
        return self.multus_config_file_path

    def should_regenerate_config(self, event: ConfigEvent) -> bool:
        """Tell whether an event concerns the readiness file or the primary config."""
        if event.name == self.readiness_indicator_file_path:
            return REMOVE in event.ops or RENAME in event.ops
        if event.name == self.primary_cni_config_path:
            return WRITE in event.ops or CREATE in event.ops
        log.debug("skipping un-related event %s", event)
        return False

    def handle_event(self, event: ConfigEvent) -> None:
        """React to one event; raises SystemExit(2) when the readiness file is gone."""
        if not self.should_regenerate_config(event):
            return
        log.debug("process event: %s", event)

        if (
            self.readiness_indicator_file_path
            and self.readiness_indicator_file_path == event.name
        ):
            log.info("readiness indicator file is gone. restart multus-daemon")
            try:
                os.remove(self.multus_config_file_path)
            except OSError:
                pass
            raise SystemExit(2)

        updated = self.generate_config()
        log.debug("Re-generated MultusCNI config: %s", updated)
        try:
            self.persist_multus_config(updated)
        except OSError as exc:
            log.error("failed to persist the multus configuration: %s", exc)
        try:
            self.load_primary_cni_config_from_file()
        except (OSError, ValueError) as exc:
            log.error("failed to reload the updated config: %s", exc)

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Write the configuration and watch for changes until ``stop_event`` is set."""
        try:
            generated = self.generate_config()
        except (TypeError, ValueError) as exc:
            log.error("failed to generated the multus configuration: %s", exc)
            raise ValueError(f"failed to generated the multus configuration: {exc}") from exc
        log.info("Generated MultusCNI config: %s", generated)

        try:
            config_file = self.persist_multus_config(generated)
        except OSError as exc:
            log.error("failed to persist the multus configuration: %s", exc)
            raise OSError(f"failed to persist the multus configuration: {exc}") from exc

        observer = Observer()
        forwarder = _EventForwarder(self._events)
        for directory in self._watch_dirs():
            observer.schedule(forwarder, directory, recursive=False)
        observer.start()

        thread = threading.Thread(
            target=self._monitor,
            args=(stop_event, observer, config_file),
            name="multus-config-watcher",
            daemon=True,
        )
        thread.start()
        return thread

    def _monitor(
        self, stop_event: threading.Event, observer: Any, config_file: str
    ) -> None:
        log.info("started to watch file %s", self.primary_cni_config_path)
        try:
            while not stop_event.is_set():
                try:
                    event = self._events.get(timeout=0.1)
                except queue.Empty:
                    continue
                try:
                    self.handle_event(event)
                except SystemExit as exc:
                    os._exit(int(exc.code or 0))
        finally:
            log.info("Stopped monitoring, closing channel ...")
            observer.stop()
            observer.join()
            log.info("Delete old config @ %s", config_file)
            try:
                os.remove(config_file)
            except OSError:
                pass


def _check_watch_dirs(dirs: Iterable[str]) -> None:
    for directory in dirs:
        if not os.path.isdir(directory):
            raise FileNotFoundError(f"failed to add watch on {directory!r}: no such directory")


def new_manager(config: MultusConf) -> Manager:
    """Create a manager for the primary CNI named in, or discovered from, ``config``."""
    config = copy.deepcopy(config)
    plugin_name = config.multus_master_cni
    if not plugin_name:
        try:
            plugin_name = get_primary_cni_plugin_name(config.multus_autoconfig_dir)
        except OSError as exc:
            log.error("failed to find the primary CNI plugin: %s", exc)
            raise
    return _new_manager(config, plugin_name)


def _new_manager(config: MultusConf, plugin_name: str) -> Manager:
    autoconfig_dir = config.multus_autoconfig_dir
    if config.force_cni_version:
        override_cni_version(_join(autoconfig_dir, plugin_name), config.cni_version)

    readiness_dir = ""
    if config.readiness_indicator_file:
        readiness_dir = os.path.dirname(config.readiness_indicator_file) or "."
    watch_dirs = [autoconfig_dir]
    if readiness_dir and readiness_dir != autoconfig_dir:
        watch_dirs.append(readiness_dir)
    _check_watch_dirs(watch_dirs)

    if plugin_name == f"{autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME}":
        message = (
            f"cannot specify {autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME} "
            "to prevent recursive config load"
        )
        log.error(message)
        raise ValueError(message)

    readiness_file = config.readiness_indicator_file
    manager = Manager(
        multus_config=config,
        multus_config_dir=autoconfig_dir,
        multus_config_file_path=_join(config.cni_config_dir, MULTUS_CONFIG_FILE_NAME),
        primary_cni_config_path=_join(autoconfig_dir, plugin_name),
        readiness_indicator_file_path=os.path.normpath(readiness_file) if readiness_file else "",
    )

    try:
        manager.load_primary_cni_config_from_file()
    except (OSError, ValueError) as exc:
        raise ValueError(
            "failed to load the primary CNI configuration as a multus delegate "
            f"with error '{exc}'"
        ) from exc

    if config.override_network_name:
        try:
            manager.override_network_name()
        except ValueError as exc:
            log.error("could not override the network name: %s", exc)
            raise ValueError(f"could not override the network name: {exc}") from exc

    return manager