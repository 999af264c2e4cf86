from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import IoError, NotFoundError

logger = logging.getLogger(__name__)

AgentScope = Literal["local", "global"]


@dataclass(frozen=True)
class AgentDefinition:
    id: str
    display_name: str
    base_path: str  # relative to the project root or the home directory
    skills_dir: str

    def detect_path(self, home: Path) -> Path:
        return home / self.base_path


@dataclass(frozen=True)
class ResolvedAgent:
    id: str
    display_name: str
    root_path: Path
    skills_path: Path


AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(id="claude-code", display_name="Claude Code", base_path=".claude", skills_dir="skills"),
    AgentDefinition(id="codex", display_name="Codex", base_path=".codex", skills_dir="skills"),
    AgentDefinition(id="opencode", display_name="OpenCode", base_path=".config/opencode", skills_dir="skill"),
    AgentDefinition(id="factory", display_name="Factory", base_path=".factory", skills_dir="skills"),
)

_BY_ID = {a.id: a for a in AGENTS}


def list_agents() -> list[AgentDefinition]:
    return list(AGENTS)


def get_agent(agent_id: str) -> AgentDefinition:
    agent = _BY_ID.get(agent_id)
    if agent is None:
        raise NotFoundError(f"Unknown agent: {agent_id}", target=agent_id)
    return agent


def detect_agent(agent: AgentDefinition, *, home: Path | None = None) -> bool:
    """True when the agent's config directory exists under ``home``."""
    path = agent.detect_path(home if home is not None else Path.home())
    try:
        if not path.exists():
            return False
        is_dir = path.is_dir()
    except OSError as e:
        raise IoError(f"Unable to access {path}. {e}", path=path, operation="stat") from e
    if not is_dir:
        raise IoError(f"Expected directory at {path}.", path=path, operation="stat")
    logger.debug("detected agent %s at %s", agent.id, path)
    return True


def detect_installed_agents(*, home: Path | None = None) -> tuple[list[AgentDefinition], list[str]]:
    """Probe every known agent; probe failures become warnings."""
    found: list[AgentDefinition] = []
    warnings: list[str] = []
    for agent in AGENTS:
        try:
            if detect_agent(agent, home=home):
                found.append(agent)
        except IoError as e:
            warnings.append(f"Skipping {agent.display_name}: {e}")
    return found, warnings


def resolve_agent(
    agent: AgentDefinition,
    *,
    scope: AgentScope,
    project_root: Path | None = None,
    home: Path | None = None,
) -> ResolvedAgent:
    if scope == "local":
        if project_root is None:
            raise NotFoundError(f"No project root to install {agent.display_name} skills into.", target=agent.id)
        base = project_root
    else:
        base = home if home is not None else Path.home()
    root = (base / agent.base_path).absolute()
    return ResolvedAgent(
        id=agent.id,
        display_name=agent.display_name,
        root_path=root,
        skills_path=root / agent.skills_dir,
    )
