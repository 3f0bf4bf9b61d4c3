import copy
import json
import traceback
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from .errors import KIND_PREFIX, FleetError
from .target import Target

ERROR_KEY = "_error"
OUTPUT_KEY = "_output"

Output = Union[bytes, str, None]


@dataclass(frozen=True)
class ErrorRecord:
    """Wire shape nested under ``_error``; one constructor per failure variant."""

    kind: str
    issue_code: str
    msg: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def exception(cls, exc: BaseException) -> "ErrorRecord":
        details: Dict[str, Any] = {"class": type(exc).__name__}
        if exc.__traceback__ is not None:
            frames = traceback.format_tb(exc.__traceback__)
            details["stack_trace"] = "\n".join(frame.rstrip("\n") for frame in frames)
        return cls(f"{KIND_PREFIX}/exception-error", "EXCEPTION", str(exc), details)

    @classmethod
    def command_failure(cls, exit_code: int) -> "ErrorRecord":
        return cls(
            f"{KIND_PREFIX}/command-error",
            "COMMAND_ERROR",
            f"The command failed with exit code {exit_code}",
            {"exit_code": exit_code},
        )

    @classmethod
    def task_failure(cls, msg: str, details: Optional[Dict[str, Any]] = None) -> "ErrorRecord":
        return cls(f"{KIND_PREFIX}/task-error", "TASK_ERROR", msg, dict(details or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "issue_code": self.issue_code,
            "msg": self.msg,
            "details": dict(self.details),
        }


def _decode(output: Output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def _decode_strict(output: Output) -> Optional[str]:
    """Return the UTF-8 text of ``output`` or None when it is not valid UTF-8."""
    if output is None:
        return ""
    try:
        if isinstance(output, bytes):
            return output.decode("utf-8")
        output.encode("utf-8")
        return output
    except UnicodeError:
        return None


def _parse_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


class Result:
    """Normalized outcome of one action against one target.

    Status is derived from ``value``: a result failed iff ``value`` holds an
    ``_error`` record. Instances are immutable once constructed.
    """

    __slots__ = ("_target", "_value", "_action", "_object", "_frozen")

    def __init__(
        self,
        target: Target,
        error: Optional[Mapping[str, Any]] = None,
        message: Optional[str] = None,
        value: Optional[Mapping[str, Any]] = None,
        action: str = "action",
        object: Optional[str] = None,
    ):
        if error is not None and not isinstance(error, Mapping):
            raise TypeError(f"Result error must be a mapping, got {type(error).__name__}")

        assembled = copy.deepcopy(dict(value or {}))
        if error is not None:
            assembled[ERROR_KEY] = copy.deepcopy(dict(error))
        if message is not None:
            assembled[OUTPUT_KEY] = message

        self._target = target
        self._value = assembled
        self._action = action
        self._object = object
        self._frozen = True

    def __setattr__(self, name, value):
        if getattr(self, "_frozen", False):
            raise AttributeError(f"{type(self).__name__} is immutable")
        object.__setattr__(self, name, value)

    # Factories

    @classmethod
    def from_exception(cls, target: Target, exception: BaseException, action: str = "action") -> "Result":
        if isinstance(exception, FleetError):
            error = exception.to_dict()
        else:
            error = ErrorRecord.exception(exception).to_dict()
        return cls(target, error=error, action=action)

    @classmethod
    def for_command(
        cls,
        target: Target,
        stdout: Output,
        stderr: Output,
        exit_code: int,
        command: Optional[str],
        action: str = "command",
    ) -> "Result":
        value: Dict[str, Any] = {
            "stdout": _decode(stdout),
            "stderr": _decode(stderr),
            "exit_code": exit_code,
        }
        if exit_code != 0:
            value[ERROR_KEY] = ErrorRecord.command_failure(exit_code).to_dict()
        return cls(target, value=value, action=action, object=command)

    @classmethod
    def for_task(cls, target: Target, stdout: Output, stderr: Output, exit_code: int, task: Optional[str]) -> "Result":
        text = _decode_strict(stdout)
        if text is None:
            error = ErrorRecord.task_failure("The task result contained invalid UTF-8 on stdout")
            value: Dict[str, Any] = {ERROR_KEY: error.to_dict()}
        else:
            value = _parse_object(text)
            if value is None:
                value = {OUTPUT_KEY: text}

        if exit_code != 0 and value.get(ERROR_KEY) is None:
            error_text = _decode(stderr)
            if not text:
                if not error_text:
                    msg = f"The task failed with exit code {exit_code} and no output"
                else:
                    msg = (
                        f"The task failed with exit code {exit_code} and no stdout, "
                        f"but stderr contained:\n{error_text}"
                    )
            else:
                msg = f"The task failed with exit code {exit_code}"
            value[ERROR_KEY] = ErrorRecord.task_failure(msg, {"exit_code": exit_code}).to_dict()

        return cls(target, value=value, action="task", object=task)

    @classmethod
    def for_upload(cls, target: Target, source: str, destination: str) -> "Result":
        return cls(
            target,
            message=f"Uploaded '{source}' to '{target.host}:{destination}'",
            action="upload",
            object=source,
        )

    @classmethod
    def from_asserted_args(cls, target: Target, value: Mapping[str, Any]) -> "Result":
        return cls(target, value=value)

    @classmethod
    def from_status_hash(cls, data: Mapping[str, Any], target: Optional[Target] = None) -> "Result":
        """Rebuild a result from the mapping produced by ``status_hash``."""
        if target is None:
            target = Target(name=data["target"])
        return cls(
            target,
            value=data.get("value") or {},
            action=data.get("action") or "action",
            object=data.get("object"),
        )

    # Accessors

    @property
    def target(self) -> Target:
        return self._target

    @property
    def action(self) -> str:
        return self._action

    @property
    def object(self) -> Optional[str]:
        return self._object

    @property
    def value(self) -> Mapping[str, Any]:
        return MappingProxyType(copy.deepcopy(self._value))

    @property
    def error_hash(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._value.get(ERROR_KEY))

    @property
    def ok(self) -> bool:
        return self._value.get(ERROR_KEY) is None

    success = ok

    @property
    def status(self) -> str:
        return "success" if self.ok else "failure"

    @property
    def message(self) -> Optional[str]:
        return self._value.get(OUTPUT_KEY)

    @property
    def has_message(self) -> bool:
        return bool(self.message and self.message.strip())

    @property
    def generic_value(self) -> Dict[str, Any]:
        return {
            key: copy.deepcopy(item)
            for key, item in self._value.items()
            if key not in (ERROR_KEY, OUTPUT_KEY)
        }

    @property
    def status_hash(self) -> Dict[str, Any]:
        return {
            "target": self._target.name,
            "action": self._action,
            "object": self._object,
            "status": self.status,
            "value": copy.deepcopy(self._value),
        }

    def to_data(self) -> Dict[str, Any]:
        return self.status_hash

    def to_json(self, **kwargs) -> str:
        return json.dumps(self.status_hash, **kwargs)

    def __getitem__(self, key: str) -> Any:
        return copy.deepcopy(self._value[key])

    def __eq__(self, other) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self._target == other._target and self._value == other._value

    __hash__ = None

    def __repr__(self) -> str:
        return f"Result(target={self._target.name!r}, action={self._action!r}, status={self.status!r})"

    def __str__(self) -> str:
        return self.to_json()


class ResultSet:
    """Ordered collection of the results an executor gathered for one batch."""

    def __init__(self, results: Optional[Iterable[Result]] = None):
        self._results: List[Result] = list(results or [])

    @classmethod
    def from_data(cls, items: Iterable[Mapping[str, Any]], targets: Optional[Mapping[str, Target]] = None) -> "ResultSet":
        targets = targets or {}
        return cls(Result.from_status_hash(item, targets.get(item["target"])) for item in items)

    @property
    def results(self) -> List[Result]:
        return list(self._results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self._results)

    @property
    def status(self) -> str:
        return "success" if self.ok else "failure"

    @property
    def ok_set(self) -> "ResultSet":
        return ResultSet(result for result in self._results if result.ok)

    @property
    def error_set(self) -> "ResultSet":
        return ResultSet(result for result in self._results if not result.ok)

    @property
    def names(self) -> List[str]:
        return [result.target.name for result in self._results]

    @property
    def first(self) -> Optional[Result]:
        return self._results[0] if self._results else None

    def find(self, name: str) -> Optional[Result]:
        for result in self._results:
            if result.target.name == name:
                return result
        return None

    def to_data(self) -> List[Dict[str, Any]]:
        return [result.status_hash for result in self._results]

    def to_json(self, **kwargs) -> str:
        return json.dumps(self.to_data(), **kwargs)

    def __iter__(self) -> Iterator[Result]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def __getitem__(self, index: int) -> Result:
        return self._results[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, ResultSet):
            return NotImplemented
        return self._results == other._results

    __hash__ = None

    def __repr__(self) -> str:
        return f"ResultSet(count={len(self._results)}, status={self.status!r})"
