from typing import Any, Dict, Optional

from ..options import validate_options
from ..target import Target
from .runner import DockerRunner, ExecutionRunner, LocalRunner, SshRemoteRunner, WinRmRemoteRunner

RUNNERS = {
    "local": LocalRunner,
    "ssh": SshRemoteRunner,
    "winrm": WinRmRemoteRunner,
    "docker": DockerRunner,
}


def resolve_target_transport(target: Target) -> str:
    return (target.transport or "local").strip().lower() or "local"


def resolve_transport_options(target: Target, config: Optional[dict] = None) -> Dict[str, Any]:
    transport = resolve_target_transport(target)
    transports_config = (config or {}).get("transports", {}) or {}
    merged = dict(transports_config.get(transport) or {})
    merged.update(target.options or {})
    return validate_options(transport, merged)


def create_runner_for_target(target: Target, config: Optional[dict] = None, logger=None) -> ExecutionRunner:
    transport = resolve_target_transport(target)
    options = resolve_transport_options(target, config)
    runner_class = RUNNERS[transport]
    return runner_class(target=target, options=options, logger=logger)


def runner_metadata(runner: ExecutionRunner) -> dict:
    return {
        "target": runner.target.name,
        "host": runner.target.host,
        "transport": runner.transport,
        "shell": runner.shell.name,
        "supports_stdin": runner.supports_stdin(),
        "reset_cwd": runner.reset_cwd(),
    }
