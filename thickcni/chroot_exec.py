"""Runs delegate CNI plugins, optionally inside a chroot of the host filesystem."""

from __future__ import annotations

import errno
import json
import os
import signal
import stat
import subprocess
import time
from typing import BinaryIO, Iterable, Sequence

_MAX_ATTEMPTS = 6
_BUSY_RETRY_DELAY = 1.0


class PluginError(Exception):
    """A CNI plugin failed; carries the CNI error code, message and details."""

    def __init__(self, msg: str, code: int = 0, details: str = "") -> None:
        self.msg = msg
        self.code = code
        self.details = details
        super().__init__(f"{msg}; {details}" if details else msg)


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _exit_description(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.strsignal(-returncode) or f"signal {-returncode}"
        except ValueError:
            name = f"signal {-returncode}"
        return f"signal: {name.lower()}"
    return f"exit status {returncode}"


def _plugin_error(reason: str, stdout: bytes, stderr: bytes) -> PluginError:
    if not stdout:
        if not stderr:
            return PluginError(f"netplugin failed with no error message: {reason}")
        return PluginError(f"netplugin failed: {_quote(stderr.decode(errors='replace'))}")
    text = stdout.decode(errors="replace")
    try:
        data = json.loads(stdout)
        if not isinstance(data, dict):
            raise ValueError("diagnostic message is not a JSON object")
        code = data.get("code", 0)
        msg = data.get("msg", "")
        details = data.get("details", "")
        if not isinstance(code, int) or isinstance(code, bool):
            raise ValueError("field 'code' must be an integer")
        if not isinstance(msg, str) or not isinstance(details, str):
            raise ValueError("fields 'msg' and 'details' must be strings")
    except ValueError as exc:
        return PluginError(
            f"netplugin failed but error parsing its diagnostic message {_quote(text)}: {exc}"
        )
    return PluginError(msg, code=code, details=details)


def _environ_dict(environ: Iterable[str] | None) -> dict[str, str] | None:
    if environ is None:
        return None
    env: dict[str, str] = {}
    for item in environ:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value
    return env


def _is_text_busy(exc: BaseException) -> bool:
    return (
        isinstance(exc, OSError) and exc.errno == errno.ETXTBSY
    ) or "text file busy" in str(exc).lower()


class ChrootExec:
    """Executes CNI plugins with the given root directory (none when empty)."""

    def __init__(self, chroot_dir: str = "", stderr: BinaryIO | None = None) -> None:
        self.chroot_dir = chroot_dir
        self.stderr = stderr

    def _enter_root(self) -> None:
        os.chroot(self.chroot_dir)

    def exec_plugin(
        self, plugin_path: str, stdin_data: bytes | None, environ: Sequence[str] | None
    ) -> bytes:
        """Run the plugin with ``stdin_data`` and the ``K=V`` environment; return stdout."""
        env = _environ_dict(environ)
        preexec = self._enter_root if self.chroot_dir else None
        for _attempt in range(_MAX_ATTEMPTS):
            try:
                completed = subprocess.run(
                    [plugin_path],
                    input=stdin_data or b"",
                    env=env,
                    capture_output=True,
                    preexec_fn=preexec,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                if _is_text_busy(exc):
                    time.sleep(_BUSY_RETRY_DELAY)
                    continue
                raise _plugin_error(str(exc), b"", b"") from exc
            if completed.returncode != 0:
                raise _plugin_error(
                    _exit_description(completed.returncode),
                    completed.stdout,
                    completed.stderr,
                )
            break
        else:
            raise _plugin_error("text file busy", b"", b"")

        if self.stderr is not None and completed.stderr:
            try:
                self.stderr.write(completed.stderr)
            except (OSError, ValueError):
                pass
        return completed.stdout

    def find_in_path(self, plugin: str, paths: Sequence[str]) -> str:
        """Return the full path of ``plugin`` in the first directory that holds it."""
        if not plugin:
            raise ValueError("no plugin name provided")
        if os.sep in plugin:
            raise ValueError(f"invalid plugin name: {plugin}")
        if not paths:
            raise ValueError("no paths provided")
        for path in paths:
            full = os.path.join(path, plugin)
            try:
                if stat.S_ISREG(os.stat(full).st_mode):
                    return full
            except OSError:
                continue
        raise FileNotFoundError(
            f"failed to find plugin {_quote(plugin)} in path [{' '.join(paths)}]"
        )