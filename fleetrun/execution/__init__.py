from .context import create_runner_for_target, resolve_target_transport, resolve_transport_options, runner_metadata
from .runner import (
    CommandResult,
    DockerRunner,
    ExecutionRunner,
    LocalRunner,
    ProcessHandle,
    SshRemoteRunner,
    WinRmRemoteRunner,
)
from .shell import BashShell, PowerShell, select_shell
