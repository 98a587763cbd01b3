"""Configuration management for the typegen daemon session.

Loads user settings from ~/.config/tgsdaemon/config.cfg, falling back to a
.env file next to the package. Environment variables override both.
Provides SessionConfig (how to run and talk to the worker).
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

# Default location for user configuration.
CONFIG_PATH = Path.home() / ".config" / "tgsdaemon" / "config.cfg"

# Legacy/dev fallback, read only when the cfg file is absent.
ENV_PATH = Path(__file__).resolve().parent.parent.parent / ".env"

DAEMON_ARGUMENTS: Tuple[str, ...] = ("parse", "--json", "--daemon")

POLICIES = ("fifo", "single-slot")

# Environment variable -> raw config key.
ENV_OVERRIDES = {
    "TGSDAEMON_EXECUTABLE": "executable",
    "TGSDAEMON_STARTUP_TIMEOUT_S": "startup_timeout",
    "TGSDAEMON_POLICY": "policy",
}


@dataclass
class SessionConfig:
    executable: str = "typegen"
    arguments: Tuple[str, ...] = DAEMON_ARGUMENTS
    startup_timeout: float = 10.0
    terminate_timeout: float = 5.0
    policy: str = "fifo"
    log_level: str = "WARNING"

    @property
    def command(self) -> Tuple[str, ...]:
        """Full argv used to spawn the worker."""
        return (self.executable, *self.arguments)


def load_raw_config(path: Path = CONFIG_PATH, env_path: Optional[Path] = ENV_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.
    Values are returned with lowercase keys for convenience.
    """
    data: Dict[str, str] = {}

    if path.exists():
        cfg = configparser.ConfigParser()
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})
        if "DAEMON" in cfg:
            data.update({k.lower(): v for k, v in cfg["DAEMON"].items()})
    elif env_path is not None and env_path.exists():
        data.update(
            {k.lower(): v for k, v in dotenv_values(env_path).items() if v is not None}
        )

    return data


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for '{key}': {value!r} is not a number")


def get_session_config(raw: Optional[Dict[str, str]] = None) -> SessionConfig:
    """
    Build a SessionConfig from raw configuration values.
    Environment overrides are applied on top of ``raw``.
    Raises ValueError if a value is invalid.
    """
    raw = dict(raw if raw is not None else load_raw_config())
    for env_name, key in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value is not None and env_value.strip() != "":
            raw[key] = env_value

    executable = raw.get("executable", "typegen").strip()
    if not executable:
        raise ValueError("Missing typegen executable in configuration.")

    policy = raw.get("policy", "fifo").strip().lower()
    if policy not in POLICIES:
        raise ValueError(
            f"Unknown policy '{policy}'. Expected one of: {', '.join(POLICIES)}"
        )

    startup_timeout = _get_float(raw, "startup_timeout", 10.0)
    terminate_timeout = _get_float(raw, "terminate_timeout", 5.0)
    if startup_timeout <= 0 or terminate_timeout <= 0:
        raise ValueError("Timeouts must be positive numbers of seconds.")

    return SessionConfig(
        executable=executable,
        startup_timeout=startup_timeout,
        terminate_timeout=terminate_timeout,
        policy=policy,
        log_level=raw.get("log_level", "WARNING").strip().upper() or "WARNING",
    )
