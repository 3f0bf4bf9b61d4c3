import pytest

from fleetrun.execution.shell import BashShell, PowerShell, select_shell


def test_select_shell_by_name():
    assert isinstance(select_shell("bash"), BashShell)
    assert isinstance(select_shell("sh"), BashShell)
    assert isinstance(select_shell("PowerShell"), PowerShell)
    with pytest.raises(ValueError):
        select_shell("fish")


def test_bash_quoting_and_paths():
    shell = BashShell()
    assert shell.quote("it's") == "'it'\"'\"'s'"
    assert shell.join_path("/tmp/", "fleetrun-1", "task.sh") == "/tmp/fleetrun-1/task.sh"
    assert shell.invoke("/tmp/x y.sh", ["a", "b c"]) == "'/tmp/x y.sh' a 'b c'"
    assert shell.with_env("run", {"PT_a": "1"}) == "PT_a=1 run"
    assert shell.with_env("run", None) == "run"
    assert shell.tempdir_name("/tmp").startswith("/tmp/fleetrun-")


def test_bash_run_as_without_cwd_reset():
    assert BashShell().run_as("id", "app", reset_cwd=False) == "sudo -n -H -u app -- sh -c id"


def test_powershell_quoting_and_paths():
    shell = PowerShell()
    assert shell.quote("it's") == "'it''s'"
    assert shell.join_path("C:\\Windows\\Temp\\", "fleetrun-1", "task.ps1") == "C:\\Windows\\Temp\\fleetrun-1\\task.ps1"
    assert shell.invoke("C:\\t\\x.ps1", ["a"]) == "& 'C:\\t\\x.ps1' 'a'"
    assert shell.env_prefix({"PT_a": "1"}) == "$env:PT_a = '1'; "
    assert shell.make_executable("C:\\t\\x.ps1") is None


def test_powershell_wrap_script_forwards_exit_code():
    wrapped = PowerShell().wrap_script("exit 3")
    assert wrapped == "exit 3\r\nif (!$?) { if($LASTEXITCODE) { exit $LASTEXITCODE } else { exit 1 } }"
