import logging
from typing import Any, Dict, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

SHELLS = ("bash", "sh", "powershell")
WINRM_AUTH_MODES = ("basic", "ntlm", "kerberos", "credssp", "certificate")

TRANSPORT_OPTIONS: Dict[str, Dict[str, Any]] = {
    "tmpdir": {
        "type": (str,),
        "description": "Directory used to stage scripts and tasks before running them.",
    },
    "run_as": {
        "type": (str,),
        "description": "User to run commands as, via sudo. Only honored by bash shells.",
    },
    "shell": {
        "type": (str,),
        "enum": SHELLS,
        "description": "Shell the target runs commands in.",
    },
    "port": {
        "type": (int,),
        "description": "Port used to connect to the target.",
    },
    "user": {
        "type": (str,),
        "description": "Login user on the target.",
    },
    "password": {
        "type": (str,),
        "description": "Login password. Only used by WinRM.",
    },
    "private_key": {
        "type": (str,),
        "description": "Path to the private key passed to ssh and scp.",
    },
    "connect_timeout": {
        "type": (int,),
        "description": "Seconds to wait when establishing a connection.",
    },
    "host_key_check": {
        "type": (bool,),
        "description": "Whether ssh rejects unknown host keys instead of accepting them.",
    },
    "ssl": {
        "type": (bool,),
        "description": "Whether WinRM connects over https.",
    },
    "ssl_verify": {
        "type": (bool,),
        "description": "Whether the WinRM server certificate is validated.",
    },
    "auth_mode": {
        "type": (str,),
        "enum": WINRM_AUTH_MODES,
        "description": "WinRM authentication transport.",
    },
    "docker_host": {
        "type": (str,),
        "description": "Value for DOCKER_HOST when talking to the container engine.",
    },
}

TRANSPORT_CONFIG: Dict[str, Dict[str, Any]] = {
    "local": {
        "tmpdir": None,
        "run_as": None,
    },
    "ssh": {
        "port": 22,
        "user": None,
        "private_key": None,
        "connect_timeout": 10,
        "host_key_check": False,
        "shell": "bash",
        "tmpdir": "/tmp",
        "run_as": None,
    },
    "winrm": {
        "port": None,
        "user": None,
        "password": None,
        "ssl": True,
        "ssl_verify": True,
        "auth_mode": "ntlm",
        "connect_timeout": 10,
        "tmpdir": "C:\\Windows\\Temp",
    },
    "docker": {
        "docker_host": None,
        "shell": "sh",
        "tmpdir": "/tmp",
    },
}


def validate_options(transport: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge ``options`` over the transport defaults, rejecting malformed values."""
    normalized = (transport or "").strip().lower()
    if normalized not in TRANSPORT_CONFIG:
        raise ValidationError(
            f"Unsupported transport '{transport}'",
            details={"transport": transport, "supported": sorted(TRANSPORT_CONFIG)},
        )

    merged = dict(TRANSPORT_CONFIG[normalized])
    for name, value in (options or {}).items():
        if name not in merged:
            logger.warning("Ignoring unknown option '%s' for %s transport", name, normalized)
            continue
        if value is None:
            continue

        definition = TRANSPORT_OPTIONS[name]
        expected = definition["type"]
        # bool is an int subclass; keep port: true from passing as an integer
        if not isinstance(value, expected) or (isinstance(value, bool) and bool not in expected):
            raise ValidationError(
                f"Option '{name}' for {normalized} transport must be of type {expected[0].__name__}",
                details={"option": name, "value": value},
            )
        if "enum" in definition and value not in definition["enum"]:
            raise ValidationError(
                f"Option '{name}' for {normalized} transport must be one of {', '.join(definition['enum'])}",
                details={"option": name, "value": value},
            )
        merged[name] = value

    return merged
