import base64
import getpass
import logging
import os
import re
import shlex
import shutil
import stat
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import psutil
import requests
import winrm
from winrm.exceptions import WinRMError, WinRMTransportError

from ..errors import ConnectError, FileTransferError, FleetError, ProcessSpawnError, ValidationError
from ..target import Target
from ..task import Task
from .shell import BashShell, PowerShell, Shell, select_shell

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    stdout: bytes
    stderr: bytes
    exit_code: int


def _remove_quietly(path: str):
    with suppress(FileNotFoundError):
        os.remove(path)


def terminate_process_tree(pid: Optional[int]):
    if pid is None:
        return

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = parent.children(recursive=True)
    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(children, timeout=3)
    for child in alive:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    try:
        parent.terminate()
        parent.wait(timeout=3)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass
    except psutil.TimeoutExpired:
        try:
            parent.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass


@contextmanager
def staged_source(source: Any) -> Iterator[str]:
    """Yield a local path for ``source``, spooling file-like objects to a temp file."""
    if isinstance(source, (str, os.PathLike)):
        yield os.fspath(source)
        return

    data = source.read()
    if isinstance(data, str):
        data = data.encode("utf-8")
    fd, path = tempfile.mkstemp(prefix="fleetrun-upload-")
    try:
        with os.fdopen(fd, "wb") as staged_file:
            staged_file.write(data)
        yield path
    finally:
        _remove_quietly(path)


class ProcessHandle:
    """A spawned child process with its pipes and any files staged for it."""

    def __init__(self, process: subprocess.Popen, cleanup: Optional[List[Callable[[], None]]] = None, logger=None):
        self.process = process
        self.logger = logger or logging.getLogger(__name__)
        self._cleanup = list(cleanup or [])

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self):
        return self.process.stdin

    @property
    def stdout(self):
        return self.process.stdout

    @property
    def stderr(self):
        return self.process.stderr

    def poll(self) -> Optional[int]:
        exit_code = self.process.poll()
        if exit_code is not None:
            self._run_cleanup()
        return exit_code

    def communicate(self, stdin: Optional[bytes] = None, timeout: Optional[float] = None) -> CommandResult:
        """Feed ``stdin`` and drain stdout and stderr together until the process exits."""
        try:
            try:
                stdout, stderr = self.process.communicate(input=stdin, timeout=timeout)
            except subprocess.TimeoutExpired:
                self.logger.warning("Process %s exceeded %ss timeout; killing it", self.pid, timeout)
                self.terminate()
                stdout, stderr = self.process.communicate()
            return CommandResult(
                stdout=stdout or b"",
                stderr=stderr or b"",
                exit_code=self.process.returncode,
            )
        finally:
            self._run_cleanup()

    def terminate(self):
        terminate_process_tree(self.process.pid)

    def _run_cleanup(self):
        while self._cleanup:
            self._cleanup.pop()()


class ExecutionRunner(ABC):
    """Capability interface every transport adapter implements.

    Adapters only produce raw ``CommandResult`` values or raise ``FleetError``
    subclasses; interpreting the output is left to ``fleetrun.result``.
    """

    default_tmpdir = "/tmp"

    def __init__(self, target: Target, options: Optional[Dict[str, Any]] = None, logger=None):
        self.target = target
        self.options = dict(options or {})
        self.logger = logger or logging.getLogger(__name__)
        self.shell = self._select_shell()

    @property
    @abstractmethod
    def transport(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def _select_shell(self) -> Shell:
        raise NotImplementedError

    @abstractmethod
    def run_command(
        self,
        command: Command,
        stdin: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError

    @abstractmethod
    def copy_file(self, source: Any, destination: str):
        raise NotImplementedError

    def reset_cwd(self) -> bool:
        """Whether a run-as command should ``cd`` to the new user's home first."""
        return True

    def supports_stdin(self) -> bool:
        return True

    @property
    def tmpdir(self) -> str:
        return self.options.get("tmpdir") or self.default_tmpdir

    def make_tempdir(self) -> str:
        path = self.shell.tempdir_name(self.tmpdir)
        result = self.run_command(self.shell.make_directory(path))
        if result.exit_code != 0:
            raise FileTransferError(
                f"Could not make tempdir {path}: {_error_text(result)}",
                issue_code="MKDIR_ERROR",
                destination=path,
            )
        return path

    def make_executable(self, path: str):
        command = self.shell.make_executable(path)
        if command is None:
            return
        result = self.run_command(command)
        if result.exit_code != 0:
            raise FileTransferError(
                f"Could not make {path} executable: {_error_text(result)}",
                issue_code="CHMOD_ERROR",
                destination=path,
            )

    def remove_path(self, path: str):
        result = self.run_command(self.shell.remove_path(path))
        if result.exit_code != 0:
            self.logger.warning("Failed to clean up %s on %s: %s", path, self.target.name, _error_text(result))

    def upload(self, source: Any, destination: str):
        self.logger.debug("Uploading %s to %s:%s", source, self.target.host, destination)
        self.copy_file(source, destination)

    def run_script(
        self,
        script: str,
        arguments: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> CommandResult:
        with self._tempdir() as tmpdir:
            remote_path = self.shell.join_path(tmpdir, os.path.basename(script))
            self.copy_file(script, remote_path)
            self.make_executable(remote_path)
            return self.run_command(self.shell.invoke(remote_path, [str(item) for item in arguments]), timeout=timeout)

    def run_task(
        self,
        task: Task,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        env = Task.environment_for(arguments) if task.uses_environment else None
        stdin = None
        if task.uses_stdin:
            if self.supports_stdin():
                stdin = Task.stdin_for(arguments)
            elif env is None:
                self.logger.warning(
                    "%s transport cannot pass stdin; task %s receives its arguments as environment variables",
                    self.transport,
                    task.name,
                )
                env = Task.environment_for(arguments)

        with self._tempdir() as tmpdir:
            remote_path = self.shell.join_path(tmpdir, task.file_name)
            self.copy_file(task.executable, remote_path)
            self.make_executable(remote_path)
            return self.run_command(self.shell.invoke(remote_path), stdin=stdin, env=env, timeout=timeout)

    @contextmanager
    def _tempdir(self) -> Iterator[str]:
        path = self.make_tempdir()
        try:
            yield path
        finally:
            try:
                self.remove_path(path)
            except FleetError as exc:
                self.logger.warning("Failed to clean up %s on %s: %s", path, self.target.name, exc)

    def _prepare_command(self, command: Command, env: Optional[Dict[str, str]] = None) -> str:
        if not isinstance(command, str):
            command = " ".join(self.shell.quote(str(item)) for item in command)
        command = self.shell.with_env(command, env)
        run_as = self.options.get("run_as")
        if run_as and isinstance(self.shell, BashShell):
            command = self.shell.run_as(command, run_as, reset_cwd=self.reset_cwd())
        return command


class SubprocessRunner(ExecutionRunner):
    """Runner whose commands are child processes on this machine."""

    @abstractmethod
    def execute(self, command: Command, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
        raise NotImplementedError

    def run_command(
        self,
        command: Command,
        stdin: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        handle = self.execute(command, env=env)
        return handle.communicate(stdin=stdin, timeout=timeout)

    def _spawn(
        self,
        argv: List[str],
        env: Optional[Dict[str, str]] = None,
        cleanup: Optional[List[Callable[[], None]]] = None,
    ) -> ProcessHandle:
        cleanup = list(cleanup or [])
        self.logger.debug("Spawning %s for target %s", argv[0], self.target.name)
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except (OSError, ValueError) as exc:
            for callback in reversed(cleanup):
                callback()
            raise ProcessSpawnError(
                f"Could not start '{argv[0]}' for target '{self.target.name}': {exc}",
                command=argv,
            ) from exc
        return ProcessHandle(process, cleanup=cleanup, logger=self.logger)

    def _transfer(self, argv: List[str], destination: str, env: Optional[Dict[str, str]] = None):
        try:
            result = self._spawn(argv, env=env).communicate()
        except ProcessSpawnError as exc:
            raise FileTransferError(f"Could not copy file to {destination}: {exc}", destination=destination) from exc
        if result.exit_code != 0:
            raise FileTransferError(
                f"Could not copy file to {destination}: {_error_text(result)}",
                destination=destination,
            )


class LocalRunner(SubprocessRunner):
    def __init__(self, target: Optional[Target] = None, options: Optional[Dict[str, Any]] = None, logger=None):
        super().__init__(target or Target(name="localhost"), options=options, logger=logger)
        self.user = os.environ.get("USER") or getpass.getuser()

    @property
    def transport(self) -> str:
        return "local"

    def _select_shell(self) -> Shell:
        if os.name == "nt":
            return PowerShell()
        return BashShell()

    @property
    def tmpdir(self) -> str:
        return self.options.get("tmpdir") or tempfile.gettempdir()

    def reset_cwd(self) -> bool:
        return False

    def execute(self, command: Command, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
        if isinstance(self.shell, PowerShell):
            return self._execute_powershell(command, env)

        if self.options.get("run_as"):
            return self._spawn(["/bin/sh", "-c", self._prepare_command(command, env)])

        process_env = {**os.environ, **env} if env else None
        if isinstance(command, str):
            argv = ["/bin/sh", "-c", command]
        else:
            argv = [str(item) for item in command]
        return self._spawn(argv, env=process_env)

    def _execute_powershell(self, command: Command, env: Optional[Dict[str, str]]) -> ProcessHandle:
        if not isinstance(command, str):
            command = subprocess.list2cmdline([str(item) for item in command])
        script = self.shell.wrap_script(self.shell.with_env(command, env))
        try:
            fd, script_path = tempfile.mkstemp(prefix="wrapper", suffix=".ps1", dir=self.options.get("tmpdir"))
        except OSError as exc:
            raise ProcessSpawnError(f"Could not stage PowerShell wrapper: {exc}", command=command) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as script_file:
                script_file.write(script)
        except OSError as exc:
            _remove_quietly(script_path)
            raise ProcessSpawnError(f"Could not stage PowerShell wrapper: {exc}", command=command) from exc

        argv = ["powershell.exe", *PowerShell.PS_ARGS, script_path]
        return self._spawn(argv, cleanup=[partial(_remove_quietly, script_path)])

    def copy_file(self, source: Any, destination: str):
        self.logger.debug("Copying %s to %s", source, destination)
        try:
            with staged_source(source) as local_source:
                _replace_destination(local_source, destination)
        except (OSError, shutil.Error, TypeError, ValueError) as exc:
            raise FileTransferError(f"Could not copy file to {destination}: {exc}", destination=destination) from exc

    def make_tempdir(self) -> str:
        try:
            return tempfile.mkdtemp(prefix="fleetrun-", dir=self.tmpdir)
        except OSError as exc:
            raise FileTransferError(
                f"Could not make tempdir in {self.tmpdir}: {exc}",
                issue_code="MKDIR_ERROR",
                destination=self.tmpdir,
            ) from exc

    def make_executable(self, path: str):
        if os.name == "nt":
            return
        try:
            mode = os.stat(path).st_mode
            os.chmod(path, mode | stat.S_IXUSR)
        except OSError as exc:
            raise FileTransferError(
                f"Could not make {path} executable: {exc}",
                issue_code="CHMOD_ERROR",
                destination=path,
            ) from exc

    def remove_path(self, path: str):
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path, ignore_errors=True)
        else:
            _remove_quietly(path)


class SshRemoteRunner(SubprocessRunner):
    def __init__(self, target: Target, options: Optional[Dict[str, Any]] = None, logger=None):
        super().__init__(target, options=options, logger=logger)
        self.host = target.host
        self.port = int(self.options.get("port") or 22)
        self.user = self.options.get("user")
        self.private_key = self.options.get("private_key")
        self.connect_timeout = int(self.options.get("connect_timeout") or 10)

        if not self.host:
            raise ValidationError(f"Target '{target.name}' is missing required host configuration")

    @property
    def transport(self) -> str:
        return "ssh"

    def _select_shell(self) -> Shell:
        return select_shell(self.options.get("shell") or "bash")

    @property
    def login(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def _common_options(self) -> List[str]:
        host_key_policy = "yes" if self.options.get("host_key_check") else "accept-new"
        return [
            "-o",
            "BatchMode=yes",
            "-o",
            f"StrictHostKeyChecking={host_key_policy}",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]

    def _ssh_base(self) -> List[str]:
        command = ["ssh", *self._common_options(), "-p", str(self.port)]
        if self.private_key:
            command.extend(["-i", self.private_key])
        command.append(self.login)
        return command

    def _scp_base(self) -> List[str]:
        command = ["scp", *self._common_options(), "-P", str(self.port)]
        if self.private_key:
            command.extend(["-i", self.private_key])
        return command

    @staticmethod
    def _to_scp_path(path: str) -> str:
        normalized = path.replace("\\", "/")
        drive_match = re.match(r"^([A-Za-z]):/(.*)$", normalized)
        if drive_match:
            return f"/{drive_match.group(1)}:/{drive_match.group(2)}"
        return normalized

    def execute(self, command: Command, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
        script = self._prepare_command(command, env)
        if isinstance(self.shell, PowerShell):
            script = "powershell -NoProfile -NonInteractive -ExecutionPolicy Bypass -Command " + shlex.quote(script)
        return self._spawn(self._ssh_base() + [script])

    def run_command(
        self,
        command: Command,
        stdin: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        result = super().run_command(command, stdin=stdin, env=env, timeout=timeout)
        # ssh reports its own failures with 255 and an "ssh:" or auth diagnostic
        if result.exit_code == 255:
            diagnostic = result.stderr.decode("utf-8", errors="replace").strip()
            if diagnostic.startswith("ssh:") or "Permission denied (" in diagnostic:
                raise ConnectError(
                    f"Failed to connect to {self.login}:{self.port}: {diagnostic}",
                    details={"host": self.host, "port": self.port},
                )
        return result

    def copy_file(self, source: Any, destination: str):
        with staged_source(source) as local_source:
            try:
                cleared = self.run_command(self.shell.remove_path(destination))
            except FleetError as exc:
                raise FileTransferError(f"Could not copy file to {destination}: {exc}", destination=destination) from exc
            if cleared.exit_code != 0:
                raise FileTransferError(
                    f"Could not copy file to {destination}: {_error_text(cleared)}",
                    destination=destination,
                )

            argv = self._scp_base()
            if os.path.isdir(local_source):
                argv.append("-r")
            argv.extend([local_source, f"{self.login}:{self._to_scp_path(destination)}"])
            self._transfer(argv, destination)


class WinRmRemoteRunner(ExecutionRunner):
    TRANSFER_CHUNK_SIZE = 8192
    default_tmpdir = "C:\\Windows\\Temp"

    def __init__(self, target: Target, options: Optional[Dict[str, Any]] = None, logger=None):
        super().__init__(target, options=options, logger=logger)
        self.host = target.host
        self.ssl = self.options.get("ssl", True)
        self.scheme = "https" if self.ssl else "http"
        self.port = int(self.options.get("port") or (5986 if self.ssl else 5985))
        self.auth_mode = (self.options.get("auth_mode") or "ntlm").strip().lower()
        self.ssl_verify = bool(self.options.get("ssl_verify", True))
        self.username = self.options.get("user")
        self.password = self.options.get("password")
        self._session = None

        if not self.host:
            raise ValidationError(f"Target '{target.name}' is missing required host configuration")
        if not self.username or not self.password:
            raise ValidationError(f"Target '{target.name}' is missing WinRM credentials")

    @property
    def transport(self) -> str:
        return "winrm"

    def _select_shell(self) -> Shell:
        return PowerShell()

    def supports_stdin(self) -> bool:
        return False

    @property
    def endpoint(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}/wsman"

    def _session_or_create(self):
        if self._session is None:
            self._session = winrm.Session(
                self.endpoint,
                auth=(self.username, self.password),
                transport=self.auth_mode,
                server_cert_validation="validate" if self.ssl_verify else "ignore",
            )
        return self._session

    def run_command(
        self,
        command: Command,
        stdin: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        _ = timeout
        if stdin is not None:
            self.logger.debug("WinRM transport ignores stdin for target %s", self.target.name)

        script = self._prepare_command(command, env)
        session = self._session_or_create()
        try:
            response = session.run_ps(script)
        except (requests.exceptions.RequestException, WinRMError, WinRMTransportError) as exc:
            raise ConnectError(
                f"Failed to run command on '{self.target.name}' over WinRM: {exc}",
                details={"endpoint": self.endpoint},
            ) from exc

        return CommandResult(
            stdout=_as_bytes(response.std_out),
            stderr=_as_bytes(response.std_err),
            exit_code=int(response.status_code),
        )

    def copy_file(self, source: Any, destination: str):
        try:
            with staged_source(source) as local_source:
                if os.path.isdir(local_source):
                    raise FileTransferError(
                        f"Could not copy file to {destination}: directory uploads are not supported over WinRM",
                        destination=destination,
                    )
                self._upload_chunks(local_source, destination)
        except FileTransferError:
            raise
        except (FleetError, OSError) as exc:
            raise FileTransferError(f"Could not copy file to {destination}: {exc}", destination=destination) from exc

    def _upload_chunks(self, local_path: str, destination: str):
        quoted = self.shell.quote(destination)
        initialized = self.run_command(
            (
                f"$path = {quoted}; "
                "if (Test-Path -LiteralPath $path) { Remove-Item -LiteralPath $path -Recurse -Force }; "
                "$parent = [System.IO.Path]::GetDirectoryName($path); "
                "if ($parent) { New-Item -ItemType Directory -Path $parent -Force | Out-Null }; "
                "[System.IO.File]::WriteAllBytes($path, [byte[]]@())"
            )
        )
        if initialized.exit_code != 0:
            raise FileTransferError(
                f"Could not copy file to {destination}: {_error_text(initialized)}",
                destination=destination,
            )

        with open(local_path, "rb") as local_file:
            while True:
                chunk = local_file.read(self.TRANSFER_CHUNK_SIZE)
                if not chunk:
                    break
                encoded = base64.b64encode(chunk).decode("ascii")
                written = self.run_command(
                    (
                        f"$bytes = [Convert]::FromBase64String({self.shell.quote(encoded)}); "
                        f"$stream = [System.IO.File]::Open({quoted}, [System.IO.FileMode]::Append, "
                        "[System.IO.FileAccess]::Write, [System.IO.FileShare]::Read); "
                        "$stream.Write($bytes, 0, $bytes.Length); "
                        "$stream.Close()"
                    )
                )
                if written.exit_code != 0:
                    raise FileTransferError(
                        f"Could not copy file to {destination}: {_error_text(written)}",
                        destination=destination,
                    )


class DockerRunner(SubprocessRunner):
    def __init__(self, target: Target, options: Optional[Dict[str, Any]] = None, logger=None):
        super().__init__(target, options=options, logger=logger)
        self.container = target.host

    @property
    def transport(self) -> str:
        return "docker"

    def _select_shell(self) -> Shell:
        return select_shell(self.options.get("shell") or "sh")

    def _docker_env(self) -> Optional[Dict[str, str]]:
        docker_host = self.options.get("docker_host")
        if not docker_host:
            return None
        return {**os.environ, "DOCKER_HOST": docker_host}

    def execute(self, command: Command, env: Optional[Dict[str, str]] = None) -> ProcessHandle:
        argv = ["docker", "exec", "-i"]
        for key, value in (env or {}).items():
            argv.extend(["-e", f"{key}={value}"])
        argv.extend([self.container, "sh", "-c", self._prepare_command(command)])
        return self._spawn(argv, env=self._docker_env())

    def run_command(
        self,
        command: Command,
        stdin: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        result = super().run_command(command, stdin=stdin, env=env, timeout=timeout)
        if result.exit_code != 0:
            diagnostic = result.stderr.decode("utf-8", errors="replace").strip()
            if diagnostic.startswith(("Error response from daemon", "Cannot connect to the Docker daemon")):
                raise ConnectError(
                    f"Failed to reach container '{self.container}': {diagnostic}",
                    details={"container": self.container},
                )
        return result

    def copy_file(self, source: Any, destination: str):
        with staged_source(source) as local_source:
            try:
                cleared = self.run_command(self.shell.remove_path(destination))
            except FleetError as exc:
                raise FileTransferError(f"Could not copy file to {destination}: {exc}", destination=destination) from exc
            if cleared.exit_code != 0:
                raise FileTransferError(
                    f"Could not copy file to {destination}: {_error_text(cleared)}",
                    destination=destination,
                )
            self._transfer(
                ["docker", "cp", local_source, f"{self.container}:{destination}"],
                destination,
                env=self._docker_env(),
            )


def _replace_destination(source: str, destination: str):
    if os.path.isdir(destination) and not os.path.islink(destination):
        shutil.rmtree(destination)
    elif os.path.lexists(destination):
        os.remove(destination)

    if os.path.isdir(source):
        shutil.copytree(source, destination, symlinks=True)
    else:
        shutil.copy2(source, destination)


def _as_bytes(output) -> bytes:
    if output is None:
        return b""
    if isinstance(output, bytes):
        return output
    return str(output).encode("utf-8")


def _error_text(result: CommandResult) -> str:
    text = result.stderr or result.stdout
    return text.decode("utf-8", errors="replace").strip()
