import io
import os

import pytest

from thickcni.chroot_exec import ChrootExec, PluginError


def _script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755)
    return str(path)


def test_invalid_chroot_fails():
    chroot_exec = ChrootExec(chroot_dir="/tmp", stderr=io.BytesIO())
    with pytest.raises(PluginError):
        chroot_exec.exec_plugin("/bin/true", None, None)


def test_runs_without_chroot(tmp_path):
    plugin = _script(tmp_path, "echo", "cat")
    result = ChrootExec().exec_plugin(plugin, b'{"cniVersion":"1.0.0"}', None)
    assert result == b'{"cniVersion":"1.0.0"}'


def test_passes_environment(tmp_path):
    plugin = _script(tmp_path, "env", "printf '%s' \"$CNI_COMMAND\"")
    result = ChrootExec().exec_plugin(plugin, None, ["CNI_COMMAND=ADD", "PATH=/bin:/usr/bin"])
    assert result == b"ADD"


def test_copies_stderr_on_success(tmp_path):
    plugin = _script(tmp_path, "noisy", "echo hello >&2\necho '{}'")
    sink = io.BytesIO()
    result = ChrootExec(stderr=sink).exec_plugin(plugin, None, None)
    assert result == b"{}\n"
    assert sink.getvalue() == b"hello\n"


def test_error_from_json_stdout(tmp_path):
    plugin = _script(tmp_path, "fail", "echo '{\"code\":7,\"msg\":\"boom\",\"details\":\"more\"}'\nexit 1")
    with pytest.raises(PluginError) as info:
        ChrootExec().exec_plugin(plugin, None, None)
    assert info.value.code == 7
    assert info.value.msg == "boom"
    assert str(info.value) == "boom; more"


def test_error_from_stderr(tmp_path):
    plugin = _script(tmp_path, "fail", "echo oops >&2\nexit 1")
    with pytest.raises(PluginError) as info:
        ChrootExec().exec_plugin(plugin, None, None)
    assert str(info.value) == 'netplugin failed: "oops\\n"'


def test_error_without_message(tmp_path):
    plugin = _script(tmp_path, "fail", "exit 3")
    with pytest.raises(PluginError) as info:
        ChrootExec().exec_plugin(plugin, None, None)
    assert str(info.value) == "netplugin failed with no error message: exit status 3"


def test_error_with_unparsable_stdout(tmp_path):
    plugin = _script(tmp_path, "fail", "echo notjson\nexit 1")
    with pytest.raises(PluginError) as info:
        ChrootExec().exec_plugin(plugin, None, None)
    assert str(info.value).startswith(
        'netplugin failed but error parsing its diagnostic message "notjson\\n":'
    )


def test_missing_plugin_raises(tmp_path):
    with pytest.raises(PluginError):
        ChrootExec().exec_plugin(str(tmp_path / "absent"), None, None)


def test_find_in_path(tmp_path):
    first = tmp_path / "a"
    second = tmp_path / "b"
    first.mkdir()
    second.mkdir()
    (second / "bridge").write_text("x")
    found = ChrootExec().find_in_path("bridge", [str(first), str(second)])
    assert found == os.path.join(str(second), "bridge")


def test_find_in_path_not_found(tmp_path):
    with pytest.raises(FileNotFoundError, match="failed to find plugin"):
        ChrootExec().find_in_path("bridge", [str(tmp_path)])


@pytest.mark.parametrize(
    "plugin,paths,message",
    [
        ("", ["/opt/cni/bin"], "no plugin name provided"),
        ("a/b", ["/opt/cni/bin"], "invalid plugin name"),
        ("bridge", [], "no paths provided"),
    ],
)
def test_find_in_path_bad_arguments(plugin, paths, message):
    with pytest.raises(ValueError, match=message):
        ChrootExec().find_in_path(plugin, paths)