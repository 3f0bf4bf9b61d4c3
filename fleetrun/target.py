from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Target:
    """Identity of the endpoint an action runs against."""

    name: str
    host: Optional[str] = None
    transport: str = "local"
    options: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Target name is required")
        if not self.host:
            object.__setattr__(self, "host", self.name)

    @classmethod
    def from_config(cls, name: str, target_config: Optional[Dict[str, Any]] = None) -> "Target":
        target_config = dict(target_config or {})
        transport = (target_config.pop("transport", None) or "local").strip().lower()
        host = (target_config.pop("host", None) or "").strip() or None
        return cls(name=str(name), host=host, transport=transport, options=target_config)

    def __str__(self) -> str:
        return self.name
