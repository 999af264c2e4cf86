from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet

from . import fs
from .agents import ResolvedAgent
from .errors import IoError, ReconcileError
from .state import AgentInstallState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    removed: tuple[str, ...]


def stale_skills(state: AgentInstallState | None, desired: AbstractSet[str]) -> tuple[str, ...]:
    if state is None:
        return ()
    return tuple(name for name in state.skills if name not in desired)


def reconcile_agent_skills(
    agent: ResolvedAgent,
    state: AgentInstallState | None,
    desired: AbstractSet[str],
) -> ReconcileResult:
    """Remove every previously installed skill that is no longer desired.

    Without prior state nothing is touched. Otherwise names are removed in
    the order they were stored, and the first failed removal aborts the rest.
    """
    if state is None:
        return ReconcileResult(removed=())

    removed: list[str] = []
    for name in stale_skills(state, desired):
        target = agent.skills_path / name
        try:
            fs.remove_path(target)
        except IoError as e:
            raise ReconcileError(
                f"Failed to remove stale skill {name} for {agent.display_name}: {e}",
                path=target,
                removed=tuple(removed),
            ) from e
        logger.info("removed stale skill %s from %s", name, agent.skills_path)
        removed.append(name)
    return ReconcileResult(removed=tuple(removed))
