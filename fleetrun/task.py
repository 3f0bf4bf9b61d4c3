import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

INPUT_METHODS = ("environment", "stdin", "both")


@dataclass(frozen=True)
class Task:
    """An executable that reports its own outcome as a JSON object on stdout."""

    name: str
    executable: str
    input_method: str = "both"
    description: Optional[str] = None

    def __post_init__(self):
        if self.input_method not in INPUT_METHODS:
            raise ValueError(
                f"Task '{self.name}' has invalid input_method '{self.input_method}'; "
                f"expected one of {', '.join(INPUT_METHODS)}"
            )

    @classmethod
    def from_path(cls, path: str) -> "Task":
        """Load a task from its executable, reading ``<stem>.json`` metadata when present."""
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Task executable not found: {path}")

        stem = os.path.splitext(os.path.basename(path))[0]
        metadata: Dict[str, Any] = {}
        metadata_path = os.path.join(os.path.dirname(path), f"{stem}.json")
        if os.path.isfile(metadata_path) and os.path.abspath(metadata_path) != os.path.abspath(path):
            with open(metadata_path, "r", encoding="utf-8") as metadata_file:
                metadata = json.load(metadata_file) or {}
            if not isinstance(metadata, dict):
                raise ValueError(f"Task metadata must be a JSON object: {metadata_path}")

        return cls(
            name=metadata.get("name") or stem,
            executable=path,
            input_method=metadata.get("input_method") or "both",
            description=metadata.get("description"),
        )

    @property
    def file_name(self) -> str:
        return os.path.basename(self.executable)

    @property
    def uses_environment(self) -> bool:
        return self.input_method in ("environment", "both")

    @property
    def uses_stdin(self) -> bool:
        return self.input_method in ("stdin", "both")

    @staticmethod
    def environment_for(arguments: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        env = {}
        for key, value in (arguments or {}).items():
            env[f"PT_{key}"] = value if isinstance(value, str) else json.dumps(value)
        return env

    @staticmethod
    def stdin_for(arguments: Optional[Mapping[str, Any]]) -> bytes:
        return json.dumps(dict(arguments or {})).encode("utf-8")
