import os

import pytest

from fleetrun.errors import ConnectError, FileTransferError
from fleetrun.execution.runner import CommandResult
from fleetrun.executor import Executor, summarize
from fleetrun.target import Target
from fleetrun.task import Task

posix_only = pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")


class FakeRunner:
    def __init__(self, target, result=None, error=None):
        self.target = target
        self.result = result or CommandResult(b"", b"", 0)
        self.error = error
        self.calls = []

    def _respond(self, call):
        self.calls.append(call)
        if self.error:
            raise self.error
        return self.result

    def run_command(self, command, timeout=None):
        return self._respond(("command", command, timeout))

    def run_script(self, script, arguments=(), timeout=None):
        return self._respond(("script", script, tuple(arguments), timeout))

    def run_task(self, task, arguments=None, timeout=None):
        return self._respond(("task", task.name, arguments, timeout))

    def upload(self, source, destination):
        self._respond(("upload", source, destination))


def _factory(runners):
    def create(target, config=None, logger=None):
        _ = (config, logger)
        runner = runners[target.name]
        if isinstance(runner, Exception):
            raise runner
        return runner
    return create


def test_run_command_returns_one_result_per_target_in_order():
    targets = [Target(name="a"), Target(name="b"), Target(name="c")]
    runners = {
        "a": FakeRunner(targets[0], CommandResult(b"ok", b"", 0)),
        "b": FakeRunner(targets[1], CommandResult(b"", b"bad", 1)),
        "c": FakeRunner(targets[2], error=ConnectError("Failed to connect to c")),
    }
    executor = Executor(runner_factory=_factory(runners))

    results = executor.run_command(targets, "uptime", timeout=5)

    assert results.names == ["a", "b", "c"]
    assert results.find("a").ok is True
    assert results.find("a").value["stdout"] == "ok"
    assert results.find("b").error_hash["issue_code"] == "COMMAND_ERROR"
    assert results.find("c").error_hash["issue_code"] == "CONNECT_ERROR"
    assert results.find("c").action == "command"
    assert runners["a"].calls == [("command", "uptime", 5)]


def test_runner_creation_failure_becomes_exception_result():
    target = Target(name="broken")
    executor = Executor(runner_factory=_factory({"broken": RuntimeError("no route to host")}))

    results = executor.run_command([target], "true")

    error = results.first.error_hash
    assert error["issue_code"] == "EXCEPTION"
    assert error["msg"] == "no route to host"
    assert error["details"]["class"] == "RuntimeError"


def test_default_timeout_comes_from_config():
    target = Target(name="a")
    runner = FakeRunner(target)
    executor = Executor(config={"executor": {"command_timeout": 30}}, runner_factory=_factory({"a": runner}))

    executor.run_command([target], "true")

    assert runner.calls[0][2] == 30


def test_run_task_interprets_task_output(tmp_path):
    executable = tmp_path / "greet.sh"
    executable.write_text("#!/bin/sh\n")
    target = Target(name="a")
    runner = FakeRunner(target, CommandResult(b'{"message": "ok"}', b"", 0))
    executor = Executor(runner_factory=_factory({"a": runner}))

    results = executor.run_task([target], Task.from_path(str(executable)), {"name": "x"})

    assert dict(results.first.value) == {"message": "ok"}
    assert results.first.object == "greet"
    assert runner.calls[0] == ("task", "greet", {"name": "x"}, None)


def test_run_task_rejects_non_mapping_arguments(tmp_path):
    executable = tmp_path / "greet.sh"
    executable.write_text("#!/bin/sh\n")
    with pytest.raises(TypeError):
        Executor().run_task([Target(name="a")], Task.from_path(str(executable)), ["x"])


def test_run_script_uses_script_action(tmp_path):
    script = tmp_path / "deploy.sh"
    script.write_text("#!/bin/sh\n")
    target = Target(name="a")
    executor = Executor(runner_factory=_factory({"a": FakeRunner(target, CommandResult(b"", b"", 2))}))

    result = executor.run_script([target], str(script), ["--fast"]).first

    assert result.action == "script"
    assert result.object == str(script)
    assert result.error_hash["msg"] == "The command failed with exit code 2"


def test_upload_success_and_copy_failure(tmp_path):
    source = tmp_path / "file.txt"
    source.write_text("x")
    targets = [Target(name="web1"), Target(name="web2")]
    runners = {
        "web1": FakeRunner(targets[0]),
        "web2": FakeRunner(targets[1], error=FileTransferError("Could not copy file to /srv/file.txt: denied", destination="/srv/file.txt")),
    }
    executor = Executor(runner_factory=_factory(runners))

    results = executor.upload_file(targets, str(source), "/srv/file.txt")

    assert results.find("web1").message == f"Uploaded '{source}' to 'web1:/srv/file.txt'"
    failed = results.find("web2")
    assert failed.action == "upload"
    assert failed.error_hash["issue_code"] == "COPY_ERROR"
    assert summarize(results)["status"] == "failure"


def test_empty_target_list():
    assert len(Executor().run_command([], "true")) == 0


@posix_only
def test_local_end_to_end():
    results = Executor().run_command([Target(name="localhost")], "echo hello; exit 1")
    result = results.first
    assert result.value["stdout"] == "hello\n"
    assert result.status == "failure"
    assert result.error_hash["details"] == {"exit_code": 1}
