import pytest

from fleetrun import create_app
from fleetrun.result import Result, ResultSet

CONFIG = {
    "logging": {"level": "DEBUG"},
    "targets": {
        "localhost": {"transport": "local"},
        "web1": {"transport": "ssh", "host": "web1.example.test", "user": "deploy"},
        "broken": {"transport": "winrm", "host": "win.example.test"},
    },
}


@pytest.fixture
def app():
    return create_app(config=dict(CONFIG))


@pytest.fixture
def client(app):
    return app.test_client()


def test_health_reports_targets(client):
    payload = client.get("/health").get_json()
    targets = payload["configuration"]["targets"]

    assert payload["status"] == "ok"
    assert targets["web1"] == {"transport": "ssh", "host": "web1.example.test", "shell": "bash", "valid": True}
    assert targets["broken"]["valid"] is False
    assert "credentials" in targets["broken"]["error"]


def test_list_targets(client):
    names = [target["name"] for target in client.get("/api/targets").get_json()["targets"]]
    assert names == ["localhost", "web1", "broken"]


def test_run_command_returns_status_hashes(monkeypatch, client):
    captured = {}

    def fake_run_command(self, targets, command, timeout=None):
        captured.update(targets=[target.name for target in targets], command=command, timeout=timeout)
        return ResultSet([Result.for_command(targets[0], b"", b"", 1, command)])

    monkeypatch.setattr("fleetrun.routes.Executor.run_command", fake_run_command)

    response = client.post("/api/command", json={"targets": ["localhost"], "command": "exit 1", "timeout": 10})
    payload = response.get_json()

    assert response.status_code == 200
    assert captured == {"targets": ["localhost"], "command": "exit 1", "timeout": 10}
    assert payload["status"] == "failure"
    assert payload["results"][0]["target"] == "localhost"
    assert payload["results"][0]["value"]["_error"]["msg"] == "The command failed with exit code 1"


def test_unknown_target_is_bad_request(client):
    response = client.post("/api/command", json={"targets": ["nope"], "command": "true"})
    assert response.status_code == 400
    assert "Unknown target 'nope'" in response.get_json()["error"]


@pytest.mark.parametrize(
    "endpoint, payload",
    [
        ("/api/command", {"targets": ["localhost"]}),
        ("/api/command", {"targets": [], "command": "true"}),
        ("/api/command", {"targets": ["localhost"], "command": "true", "timeout": -1}),
        ("/api/script", {"targets": ["localhost"], "script": "/does/not/exist.sh"}),
        ("/api/task", {"targets": ["localhost"], "task": "/does/not/exist.sh"}),
        ("/api/upload", {"targets": ["localhost"], "source": "/does/not/exist", "destination": "/tmp/x"}),
    ],
)
def test_invalid_payloads(client, endpoint, payload):
    assert client.post(endpoint, json=payload).status_code == 400


def test_non_json_body_rejected(client):
    assert client.post("/api/command", data="exit 1").status_code == 400


def test_actions_only_served_to_localhost(client):
    response = client.post(
        "/api/command",
        json={"targets": ["localhost"], "command": "true"},
        environ_base={"REMOTE_ADDR": "10.1.2.3"},
    )
    assert response.status_code == 403


def test_unexpected_errors_become_500(monkeypatch, client):
    def _raise(*_args, **_kwargs):
        raise RuntimeError("executor exploded")

    monkeypatch.setattr("fleetrun.routes.Executor.run_command", _raise)
    response = client.post("/api/command", json={"targets": ["localhost"], "command": "true"})

    assert response.status_code == 500
    assert response.get_json()["error"] == "executor exploded"


def test_upload_through_local_target(client, tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("hello")
    destination = tmp_path / "b.txt"

    response = client.post(
        "/api/upload",
        json={"targets": "localhost", "source": str(source), "destination": str(destination)},
    )
    payload = response.get_json()

    assert payload["status"] == "success"
    assert payload["results"][0]["value"]["_output"] == f"Uploaded '{source}' to 'localhost:{destination}'"
    assert destination.read_text() == "hello"


def test_task_through_local_target(client, tmp_path):
    if __import__("os").name == "nt":
        pytest.skip("requires a POSIX shell")
    task_file = tmp_path / "hello.sh"
    task_file.write_text("#!/bin/sh\nprintf '{\"greeting\": \"hi %s\"}' \"$PT_name\"\n")

    response = client.post("/api/task", json={"targets": ["localhost"], "task": str(task_file), "arguments": {"name": "ops"}})
    payload = response.get_json()

    assert payload["status"] == "success"
    assert payload["results"][0]["value"] == {"greeting": "hi ops"}
    assert payload["results"][0]["action"] == "task"
