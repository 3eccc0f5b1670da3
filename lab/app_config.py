"""
Process-wide configuration of the pipeline lab.

Values come from environment variables and can be overridden by the
command line flags of ``main.py``:

- LAB_HOST / LAB_PORT: address the server binds to
- LAB_WWW: directory holding the static client (``index.html``)
- LAB_CONFIG: data directory (settings file); defaults to the platform
  user data directory
- LAB_SHARE_TTL: lifetime of share records, in seconds
- LAB_EXECUTE_TIMEOUT: per-batch execute timeout, in seconds
- LAB_SHARE_URL: origin of an external share service; when unset sessions
  share through this process's own ``/share`` endpoint
- LAB_NORMALISE_URL: origin of an HTTP normalise service used instead of the
  session's engine
- LAB_SESSION_IDLE_HOURS: sessions idle for longer are closed and removed
- LAB_CLEANUP_INTERVAL: seconds between two idle-session sweeps
- LAB_LOG_LEVEL: logging level
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from platformdirs import user_data_dir

_APP_NAME = "pipeline-lab"

DEFAULT_SHARE_TTL = 259200
DEFAULT_EXECUTE_TIMEOUT = 30.0
DEFAULT_SESSION_IDLE_HOURS = 24.0
DEFAULT_CLEANUP_INTERVAL = 600.0


def default_data_dir() -> Path:
    return Path(user_data_dir(_APP_NAME, appauthor=False))


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class LabConfig:
    """Runtime configuration of the lab server."""

    host: str = "127.0.0.1"
    port: int = 4195
    www_dir: Optional[Path] = None
    data_dir: Path = field(default_factory=default_data_dir)
    share_ttl: float = DEFAULT_SHARE_TTL
    execute_timeout: float = DEFAULT_EXECUTE_TIMEOUT
    share_url: Optional[str] = None
    normalise_url: Optional[str] = None
    session_idle_hours: float = DEFAULT_SESSION_IDLE_HOURS
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "LabConfig":
        """Build a config from environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed.
        """
        env = os.environ if env is None else env
        www = env.get("LAB_WWW")
        data = env.get("LAB_CONFIG")
        return cls(
            host=env.get("LAB_HOST") or cls.host,
            port=int(_float(env, "LAB_PORT", cls.port)),
            www_dir=Path(www) if www else None,
            data_dir=Path(data) if data else default_data_dir(),
            share_ttl=_float(env, "LAB_SHARE_TTL", DEFAULT_SHARE_TTL),
            execute_timeout=_float(env, "LAB_EXECUTE_TIMEOUT", DEFAULT_EXECUTE_TIMEOUT),
            share_url=env.get("LAB_SHARE_URL") or None,
            normalise_url=env.get("LAB_NORMALISE_URL") or None,
            session_idle_hours=_float(env, "LAB_SESSION_IDLE_HOURS", DEFAULT_SESSION_IDLE_HOURS),
            cleanup_interval=_float(env, "LAB_CLEANUP_INTERVAL", DEFAULT_CLEANUP_INTERVAL),
            log_level=env.get("LAB_LOG_LEVEL") or cls.log_level,
        )

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["www_dir"] = str(self.www_dir) if self.www_dir else None
        data["data_dir"] = str(self.data_dir)
        return data
