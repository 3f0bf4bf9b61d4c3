import os
from typing import Dict, Iterable, List, Tuple

import yaml

from .target import Target

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_CONFIG_CANDIDATES = [
    os.path.join(ROOT_DIR, "config", "config.yaml"),
]


def resolve_config_path(path: str = "") -> str:
    requested = (path or "").strip()
    if requested:
        candidate_paths = [requested]
    else:
        env_path = (os.environ.get("FLEETRUN_CONFIG_PATH") or "").strip()
        candidate_paths = [env_path] if env_path else list(DEFAULT_CONFIG_CANDIDATES)

    for candidate in candidate_paths:
        expanded = os.path.abspath(os.path.expanduser(candidate))
        if os.path.exists(expanded):
            return expanded

    raise FileNotFoundError("Could not locate config/config.yaml")


def load_config(path: str = "") -> Tuple[str, Dict]:
    resolved_path = resolve_config_path(path)
    with open(resolved_path, "r", encoding="utf-8") as config_file:
        config = yaml.safe_load(config_file) or {}
    if not isinstance(config, dict):
        raise ValueError("Config root must be a mapping")
    return resolved_path, config


def load_targets(config: Dict) -> Dict[str, Target]:
    targets_config = config.get("targets", {}) or {}
    if not isinstance(targets_config, dict):
        raise ValueError("targets configuration must be a mapping")

    default_transport = (config.get("default_transport") or "local").strip().lower()
    targets: Dict[str, Target] = {}
    for name, target_config in targets_config.items():
        if target_config is None:
            target_config = {}
        if not isinstance(target_config, dict):
            raise ValueError(f"Configuration for target '{name}' must be a mapping")
        target_config = dict(target_config)
        target_config.setdefault("transport", default_transport)
        targets[str(name)] = Target.from_config(str(name), target_config)
    return targets


def resolve_targets(config: Dict, names: Iterable[str]) -> List[Target]:
    known = load_targets(config)
    resolved = []
    for name in names:
        normalized = str(name).strip()
        if normalized not in known:
            raise KeyError(f"Unknown target '{normalized}'")
        resolved.append(known[normalized])
    return resolved
