from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import ValidationError
from .net import DEFAULT_BACKOFF_S, DEFAULT_MAX_RETRIES

DEFAULT_BASE_URL = "https://api.skills.supply"
DEFAULT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class Config:
    base_url: str = DEFAULT_BASE_URL
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_s: float = DEFAULT_BACKOFF_S
    git_executable: str = "git"
    max_workers: int = 4


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SK_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillsync") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def apply_env(cfg: Config) -> Config:
    """Overlay SK_BASE_URL / SK_TOKEN / SK_TIMEOUT_S on a loaded config."""
    updates: dict[str, Any] = {}
    if base_url := os.getenv("SK_BASE_URL"):
        updates["base_url"] = base_url
    if token := os.getenv("SK_TOKEN"):
        updates["token"] = token
    if timeout := os.getenv("SK_TIMEOUT_S"):
        try:
            updates["timeout_s"] = float(timeout)
        except ValueError:
            raise ValidationError(f"SK_TIMEOUT_S must be a number, got {timeout!r}", field="SK_TIMEOUT_S") from None
    return replace(cfg, **updates) if updates else cfg


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # The file may hold a token.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
