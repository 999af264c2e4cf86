from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .agents import ResolvedAgent
from .errors import IoError, ParseError, ValidationError
from .fs import write_json_atomic

STATE_FILENAME = ".sk-state.json"
STATE_VERSION = 1


@dataclass(frozen=True)
class AgentInstallState:
    skills: tuple[str, ...]
    version: int = STATE_VERSION
    updated_at: str = ""

    def to_json(self) -> dict[str, Any]:
        return {"version": self.version, "skills": list(self.skills), "updated_at": self.updated_at}


def state_path(agent: ResolvedAgent) -> Path:
    return agent.root_path / STATE_FILENAME


def build_agent_state(skills: list[str] | tuple[str, ...] | set[str]) -> AgentInstallState:
    return AgentInstallState(
        skills=tuple(sorted(set(skills))),
        updated_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )


def _invalid(path: Path, field: str, message: str) -> ValidationError:
    return ValidationError(f"{message} ({path})", field=field, source="manual")


def parse_agent_state(value: Any, path: Path) -> AgentInstallState:
    if not isinstance(value, dict):
        raise _invalid(path, "state", "State file must be a JSON object.")
    version = value.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version != STATE_VERSION:
        raise _invalid(path, "version", f"State file version must be {STATE_VERSION}.")
    skills = value.get("skills")
    if not isinstance(skills, list) or not all(isinstance(s, str) and s.strip() for s in skills):
        raise _invalid(path, "skills", "State file skills must be an array of non-empty strings.")
    updated_at = value.get("updated_at", "")
    if not isinstance(updated_at, str):
        raise _invalid(path, "updated_at", "State file updated_at must be a string.")
    return AgentInstallState(skills=tuple(skills), version=version, updated_at=updated_at)


def read_agent_state(agent: ResolvedAgent) -> AgentInstallState | None:
    """Load the agent's state file, or None when the agent was never synced."""
    path = state_path(agent)
    try:
        if not path.exists():
            return None
        if not path.is_file():
            raise IoError(f"Expected file at {path}.", path=path, operation="stat")
        contents = path.read_text(encoding="utf-8")
    except OSError as e:
        raise IoError(f"Unable to read {path}: {e}", path=path, operation="read") from e
    try:
        raw = json.loads(contents)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {path}.", source=path) from e
    return parse_agent_state(raw, path)


def write_agent_state(agent: ResolvedAgent, state: AgentInstallState) -> Path:
    path = state_path(agent)
    try:
        write_json_atomic(path, state.to_json())
    except OSError as e:
        raise IoError(f"Unable to write {path}: {e}", path=path, operation="write") from e
    return path
