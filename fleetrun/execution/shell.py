import posixpath
import shlex
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence


class Shell(ABC):
    """How commands, paths and environment are spelled on a target."""

    name = ""

    @abstractmethod
    def quote(self, value: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def join_path(self, *parts: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def env_prefix(self, env: Dict[str, str]) -> str:
        raise NotImplementedError

    @abstractmethod
    def make_directory(self, path: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def remove_path(self, path: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def make_executable(self, path: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def invoke(self, path: str, arguments: Sequence[str] = ()) -> str:
        raise NotImplementedError

    def with_env(self, command: str, env: Optional[Dict[str, str]]) -> str:
        if not env:
            return command
        return self.env_prefix(env) + command

    def tempdir_name(self, tmpdir: str) -> str:
        return self.join_path(tmpdir, f"fleetrun-{uuid.uuid4().hex[:12]}")


class BashShell(Shell):
    name = "bash"

    def quote(self, value: str) -> str:
        return shlex.quote(str(value))

    def join_path(self, *parts: str) -> str:
        cleaned = [str(part) for part in parts if part]
        if not cleaned:
            return ""
        return posixpath.join(cleaned[0], *[part.lstrip("/") for part in cleaned[1:]])

    def env_prefix(self, env: Dict[str, str]) -> str:
        return "".join(f"{key}={self.quote(value)} " for key, value in env.items())

    def make_directory(self, path: str) -> str:
        return f"mkdir -m 700 {self.quote(path)}"

    def remove_path(self, path: str) -> str:
        return f"rm -rf {self.quote(path)}"

    def make_executable(self, path: str) -> Optional[str]:
        return f"chmod u+x {self.quote(path)}"

    def invoke(self, path: str, arguments: Sequence[str] = ()) -> str:
        return " ".join([self.quote(path)] + [self.quote(item) for item in arguments])

    def run_as(self, command: str, user: str, reset_cwd: bool = True) -> str:
        if reset_cwd:
            command = f"cd; {command}"
        return f"sudo -n -H -u {self.quote(user)} -- sh -c {self.quote(command)}"


class PowerShell(Shell):
    name = "powershell"
    PS_ARGS = ["-NoProfile", "-NonInteractive", "-NoLogo", "-ExecutionPolicy", "Bypass", "-File"]
    EXIT_FORWARDING = "\r\nif (!$?) { if($LASTEXITCODE) { exit $LASTEXITCODE } else { exit 1 } }"

    def quote(self, value: str) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    def join_path(self, *parts: str) -> str:
        cleaned = []
        for index, part in enumerate(parts):
            if not part:
                continue
            normalized = str(part).replace("/", "\\")
            if index == 0:
                cleaned.append(normalized.rstrip("\\"))
            else:
                cleaned.append(normalized.strip("\\"))
        return "\\".join(cleaned)

    def env_prefix(self, env: Dict[str, str]) -> str:
        return "".join(f"$env:{key} = {self.quote(value)}; " for key, value in env.items())

    def make_directory(self, path: str) -> str:
        return f"New-Item -ItemType Directory -Path {self.quote(path)} -Force | Out-Null"

    def remove_path(self, path: str) -> str:
        return f"Remove-Item -LiteralPath {self.quote(path)} -Recurse -Force -ErrorAction SilentlyContinue"

    def make_executable(self, path: str) -> Optional[str]:
        return None

    def invoke(self, path: str, arguments: Sequence[str] = ()) -> str:
        return " ".join(["&", self.quote(path)] + [self.quote(item) for item in arguments])

    def wrap_script(self, command: str) -> str:
        return command + self.EXIT_FORWARDING


SHELLS = {
    "bash": BashShell,
    "sh": BashShell,
    "powershell": PowerShell,
}


def select_shell(name: str) -> Shell:
    normalized = (name or "bash").strip().lower()
    try:
        return SHELLS[normalized]()
    except KeyError:
        raise ValueError(f"Unsupported shell '{name}'") from None
