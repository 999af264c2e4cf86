from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AbstractSet, Literal

from . import fs
from .agents import ResolvedAgent
from .errors import ConflictError, InstallError, IoError, ValidationError
from .extract import ExtractedPackage
from .refs import LocalDeclaration

logger = logging.getLogger(__name__)

InstallMode = Literal["copy", "symlink"]

_TMP_SUFFIX = ".sk-tmp"
_COPY_EXCLUDE = frozenset({".git"})
_BACKUP_SUFFIX = ".sk-backup"


@dataclass(frozen=True)
class InstallTask:
    skill_name: str
    target_name: str
    source_path: Path
    target_path: Path
    mode: InstallMode


@dataclass(frozen=True)
class AgentInstallPlan:
    agent: ResolvedAgent
    base_path: Path
    tasks: tuple[InstallTask, ...]

    @property
    def target_names(self) -> tuple[str, ...]:
        return tuple(t.target_name for t in self.tasks)


@dataclass(frozen=True)
class InstallOutcome:
    installed: tuple[str, ...]
    unchanged: tuple[str, ...]


def _normalize_segment(value: str, label: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(f"Skill {label} cannot be empty.", field=label)
    if "/" in trimmed or "\\" in trimmed:
        raise ValidationError(f"Skill {label} must not include path separators.", field=label, value=value)
    if trimmed in (".", ".."):
        raise ValidationError(f'Skill {label} must not be "." or "..".', field=label, value=value)
    return trimmed


def _is_within(base: Path, target: Path) -> bool:
    rel = os.path.relpath(target, base)
    return rel not in (".", "") and not rel.startswith("..") and not os.path.isabs(rel)


def plan_agent_install(agent: ResolvedAgent, packages: list[ExtractedPackage]) -> AgentInstallPlan:
    """Compute one ``prefix-skill`` target per skill under the agent's skills dir."""
    base = Path(os.path.abspath(agent.skills_path))
    tasks: list[InstallTask] = []
    seen: set[Path] = set()
    for pkg in packages:
        if not pkg.skills:
            raise ValidationError(f'Package "{pkg.prefix}" has no skills to install.', field="skills")
        prefix = _normalize_segment(pkg.prefix, "prefix")
        mode: InstallMode = "symlink" if isinstance(pkg.package.declaration, LocalDeclaration) else "copy"
        for skill in pkg.skills:
            name = _normalize_segment(skill.name, "name")
            target_name = f"{prefix}-{name}"
            target_path = base / target_name
            if not _is_within(base, target_path):
                raise ValidationError(
                    f"Skill target path escapes the agent skills directory: {target_path}", field="target"
                )
            if target_path in seen:
                raise ConflictError(f"Duplicate target path detected: {target_name}")
            seen.add(target_path)
            tasks.append(
                InstallTask(
                    skill_name=name,
                    target_name=target_name,
                    source_path=skill.source_path,
                    target_path=target_path,
                    mode=mode,
                )
            )
    return AgentInstallPlan(agent=agent, base_path=base, tasks=tuple(tasks))


def is_current(task: InstallTask) -> bool:
    """True when the target already holds exactly what the task would install."""
    target = task.target_path
    if task.mode == "symlink":
        if not target.is_symlink():
            return False
        return os.path.realpath(target) == os.path.realpath(task.source_path)
    if target.is_symlink() or not target.is_dir():
        return False
    return fs.tree_digest(target, exclude=_COPY_EXCLUDE) == fs.tree_digest(task.source_path, exclude=_COPY_EXCLUDE)


def pending_tasks(plan: AgentInstallPlan) -> list[InstallTask]:
    return [t for t in plan.tasks if not is_current(t)]


def check_targets(plan: AgentInstallPlan, managed: AbstractSet[str]) -> None:
    for task in plan.tasks:
        if fs.lexists(task.target_path) and task.target_name not in managed:
            raise ConflictError(f"Skill target already exists and is not managed by sk: {task.target_name}")


def _ensure_base(base: Path) -> None:
    if base.exists() and not base.is_dir():
        raise IoError(f"Expected directory at {base}.", path=base, operation="mkdir")
    try:
        base.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"Could not create skills directory: {base}", path=base, operation="mkdir") from e


def _install_copy(task: InstallTask) -> None:
    dest = task.target_path
    staging = dest.with_name(dest.name + _TMP_SUFFIX)
    backup = dest.with_name(dest.name + _BACKUP_SUFFIX)
    fs.remove_path(staging)
    fs.remove_path(backup)
    try:
        shutil.copytree(task.source_path, staging, symlinks=True, ignore=shutil.ignore_patterns(*_COPY_EXCLUDE))
    except OSError as e:
        fs.remove_path(staging)
        raise IoError(f"Unable to copy {task.source_path}: {e}", path=task.source_path, operation="copy") from e

    had_existing = fs.lexists(dest)
    try:
        if had_existing:
            dest.rename(backup)
        staging.rename(dest)
    except OSError as e:
        fs.remove_path(staging)
        if had_existing and fs.lexists(backup) and not fs.lexists(dest):
            backup.rename(dest)
        raise IoError(f"Unable to install {dest}: {e}", path=dest, operation="rename") from e
    finally:
        fs.remove_path(backup)


def _install_symlink(task: InstallTask) -> None:
    fs.remove_path(task.target_path)
    try:
        task.target_path.symlink_to(task.source_path, target_is_directory=True)
    except OSError as e:
        raise IoError(f"Unable to link {task.target_path}: {e}", path=task.target_path, operation="symlink") from e


def apply_agent_install(plan: AgentInstallPlan, *, managed: AbstractSet[str] = frozenset()) -> InstallOutcome:
    """Install every task of the plan; targets that already match are left alone.

    ``managed`` names the targets recorded in the agent's state. Any other
    pre-existing target is a conflict and nothing is written.
    """
    _ensure_base(plan.base_path)
    check_targets(plan, managed)

    installed: list[str] = []
    unchanged: list[str] = []
    for task in plan.tasks:
        try:
            if not task.source_path.is_dir():
                raise IoError(
                    f"Skill source is not a directory: {task.source_path}", path=task.source_path, operation="stat"
                )
            if is_current(task):
                logger.debug("%s is up to date", task.target_path)
                unchanged.append(task.target_name)
                continue
            if task.mode == "symlink":
                _install_symlink(task)
            else:
                _install_copy(task)
        except IoError as e:
            raise InstallError(str(e), path=e.path, operation=e.operation, installed=tuple(installed)) from e
        logger.info("installed %s into %s", task.target_name, plan.base_path)
        installed.append(task.target_name)
    return InstallOutcome(installed=tuple(installed), unchanged=tuple(unchanged))
