from __future__ import annotations

import logging
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Literal

import httpx

from .agents import (
    AgentDefinition,
    AgentScope,
    ResolvedAgent,
    detect_installed_agents,
    get_agent,
    resolve_agent,
)
from .config import Config
from .errors import InstallError, NotFoundError, ReconcileError, SkillsyncError
from .extract import ExtractedPackage, extract_skills
from .fetch import GitRunner, PackageFetcher
from .install import AgentInstallPlan, apply_agent_install, check_targets, pending_tasks, plan_agent_install
from .manifest import Manifest, find_project_root, global_manifest_path, load_manifest
from .marketplace import MarketplaceResolver
from .reconcile import reconcile_agent_skills, stale_skills
from .refs import AbsolutePath
from .resolve import merge_manifests, resolve_packages
from .state import AgentInstallState, build_agent_state, read_agent_state, write_agent_state
from .structure import MANIFEST_FILENAME, detect_structure
from .validate import validate_extracted_packages

logger = logging.getLogger(__name__)

SyncStage = Literal[
    "discover",
    "parse",
    "merge",
    "resolve",
    "agents",
    "fetch",
    "detect",
    "extract",
    "validate",
    "install",
    "reconcile",
]

STAGES: tuple[SyncStage, ...] = (
    "discover",
    "parse",
    "merge",
    "resolve",
    "agents",
    "fetch",
    "detect",
    "extract",
    "validate",
    "install",
    "reconcile",
)

NO_AGENTS_ENABLED = "All agents are disabled. Enable agents in the [agents] section of agents.toml."


class SyncError(SkillsyncError):
    """A pipeline failure, tagged with the stage it happened in."""

    kind = "sync"

    def __init__(self, stage: SyncStage, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self._details = details

    def details(self) -> dict[str, Any]:
        return dict(self._details or {})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"stage": self.stage, "message": self.message}
        if self._details:
            d["details"] = self.details()
        return d


EventKind = Literal["stage-start", "stage-done", "warning"]


@dataclass(frozen=True)
class SyncEvent:
    kind: EventKind
    stage: SyncStage
    message: str = ""
    count: int | None = None


@dataclass(frozen=True)
class SyncOptions:
    dry_run: bool = False
    scope: AgentScope = "local"
    # Explicitly targeted agent ids; empty means "use the manifest".
    agents: tuple[str, ...] = ()
    # Explicit manifests to merge, in precedence order; empty means discover.
    manifest_paths: tuple[Path, ...] = ()
    on_event: Callable[[SyncEvent], None] | None = None


@dataclass(frozen=True)
class SyncSummary:
    agents: tuple[str, ...]
    dry_run: bool
    installed: int
    removed: int
    packages: int
    manifests: int
    warnings: tuple[str, ...] = ()
    no_op_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents": list(self.agents),
            "dry_run": self.dry_run,
            "installed": self.installed,
            "removed": self.removed,
            "packages": self.packages,
            "manifests": self.manifests,
            "warnings": list(self.warnings),
            "no_op_reason": self.no_op_reason,
        }


class SyncContext:
    """Resources shared by one process: HTTP client, git runner, scratch dir.

    Use as a context manager; everything it created is released on exit.
    """

    def __init__(
        self,
        *,
        config: Config | None = None,
        cwd: Path | None = None,
        home: Path | None = None,
        http: httpx.Client | None = None,
        git: GitRunner | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self.config = config or Config()
        self.cwd = (cwd or Path.cwd()).absolute()
        self.home = (home or Path.home()).absolute()
        self.git = git or GitRunner(executable=self.config.git_executable)
        self._http = http
        self._owns_http = http is None
        self._temp_root = temp_root
        self._owns_temp = temp_root is None
        self._fetcher: PackageFetcher | None = None

    def __enter__(self) -> "SyncContext":
        if self._http is None:
            self._http = httpx.Client(timeout=self.config.timeout_s, follow_redirects=True)
        if self._temp_root is None:
            self._temp_root = Path(tempfile.mkdtemp(prefix="sk-sync-"))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http and self._http is not None:
            self._http.close()
            self._http = None
        if self._owns_temp and self._temp_root is not None:
            shutil.rmtree(self._temp_root, ignore_errors=True)
            self._temp_root = None

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            raise RuntimeError("SyncContext is not open; use it in a with block.")
        return self._http

    @property
    def temp_root(self) -> Path:
        if self._temp_root is None:
            raise RuntimeError("SyncContext is not open; use it in a with block.")
        return self._temp_root

    @property
    def fetcher(self) -> PackageFetcher:
        if self._fetcher is None:
            self._fetcher = PackageFetcher(
                temp_root=self.temp_root, git=self.git, max_workers=self.config.max_workers
            )
        return self._fetcher


class _StageRunner:
    def __init__(self, on_event: Callable[[SyncEvent], None] | None) -> None:
        self._on_event = on_event
        self.warnings: list[str] = []

    def emit(self, event: SyncEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def warn(self, stage: SyncStage, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)
        self.emit(SyncEvent(kind="warning", stage=stage, message=message))

    @contextmanager
    def stage(self, name: SyncStage) -> Iterator[None]:
        logger.info("stage %s", name)
        self.emit(SyncEvent(kind="stage-start", stage=name))
        try:
            yield
        except SyncError:
            raise
        except SkillsyncError as e:
            raise SyncError(name, str(e), e.details()) from e
        self.emit(SyncEvent(kind="stage-done", stage=name))


@dataclass
class _AgentRun:
    agent: ResolvedAgent
    state: AgentInstallState | None = None
    plan: AgentInstallPlan | None = None
    installed: int = 0
    removed: int = 0


def _discover(options: SyncOptions, ctx: SyncContext) -> tuple[list[Path], Path | None]:
    if options.manifest_paths:
        paths = [AbsolutePath(str(p), base=ctx.cwd).as_path() for p in options.manifest_paths]
        for p in paths:
            if not p.is_file():
                raise NotFoundError(f"Manifest not found: {p}", target=str(p))
        project_root = paths[0].parent if options.scope == "local" else None
        return paths, project_root

    if options.scope == "global":
        path = global_manifest_path(ctx.home)
        if not path.is_file():
            raise NotFoundError(f"No global manifest found at {path}.", target=str(path))
        return [path], None

    root = find_project_root(ctx.cwd, home=ctx.home)
    if root is None:
        raise NotFoundError(
            f"No {MANIFEST_FILENAME} found in {ctx.cwd} or any parent directory.", target=MANIFEST_FILENAME
        )
    return [root / MANIFEST_FILENAME], root


def _parse_all(paths: list[Path], max_workers: int) -> list[Manifest]:
    if len(paths) == 1:
        return [load_manifest(AbsolutePath(str(paths[0])))]
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(paths)))) as pool:
        futures = [pool.submit(load_manifest, AbsolutePath(str(p))) for p in paths]
        return [f.result() for f in futures]


def _select_agents(
    options: SyncOptions,
    agents_table: dict[str, bool],
    runner: _StageRunner,
    *,
    project_root: Path | None,
    home: Path,
) -> list[ResolvedAgent]:
    definitions: list[AgentDefinition]
    if options.agents:
        # Explicit targets: any failure is fatal.
        definitions = [get_agent(agent_id) for agent_id in options.agents]
    elif agents_table:
        definitions = [get_agent(agent_id) for agent_id, enabled in agents_table.items() if enabled]
    else:
        definitions, probe_warnings = detect_installed_agents(home=home)
        for message in probe_warnings:
            runner.warn("agents", message)
        if not definitions:
            raise NotFoundError("No installed agents detected.", target="agents")

    return [
        resolve_agent(definition, scope=options.scope, project_root=project_root, home=home)
        for definition in definitions
    ]


def _sync_without_dependencies(
    agents: list[ResolvedAgent],
    options: SyncOptions,
    runner: _StageRunner,
    manifests: int,
) -> SyncSummary:
    removed = 0
    has_state = False
    with runner.stage("reconcile"):
        for agent in agents:
            state = read_agent_state(agent)
            if state is None:
                continue
            has_state = True
            if options.dry_run:
                removed += len(state.skills)
                continue
            result = reconcile_agent_skills(agent, state, frozenset())
            removed += len(result.removed)
            write_agent_state(agent, build_agent_state([]))
    return SyncSummary(
        agents=tuple(a.id for a in agents),
        dry_run=options.dry_run,
        installed=0,
        removed=removed,
        packages=0,
        manifests=manifests,
        warnings=tuple(runner.warnings),
        no_op_reason=None if has_state else "no-dependencies",
    )


def _install_agent(
    run: _AgentRun, extracted: list[ExtractedPackage], options: SyncOptions, runner: _StageRunner
) -> None:
    run.state = read_agent_state(run.agent)
    if run.state is None:
        runner.warn("install", f"No prior state for {run.agent.display_name}; skipping stale skill removal.")
    run.plan = plan_agent_install(run.agent, extracted)
    managed = frozenset(run.state.skills) if run.state else frozenset()
    if options.dry_run:
        check_targets(run.plan, managed)
        run.installed = len(pending_tasks(run.plan))
        return
    try:
        run.installed = len(apply_agent_install(run.plan, managed=managed).installed)
    except InstallError as e:
        # Record what did land so the next run treats it as managed.
        if e.installed:
            write_agent_state(run.agent, build_agent_state(sorted(managed | set(e.installed))))
        raise


def _reconcile_agent(run: _AgentRun, options: SyncOptions) -> None:
    assert run.plan is not None
    desired = frozenset(run.plan.target_names)
    if options.dry_run:
        run.removed = len(stale_skills(run.state, desired))
        return
    try:
        result = reconcile_agent_skills(run.agent, run.state, desired)
    except ReconcileError as e:
        left = set(stale_skills(run.state, desired)) - set(e.removed)
        write_agent_state(run.agent, build_agent_state(sorted(desired | left)))
        raise
    run.removed = len(result.removed)
    if run.state is None or set(run.state.skills) != desired:
        write_agent_state(run.agent, build_agent_state(desired))


def run_sync(options: SyncOptions, ctx: SyncContext) -> SyncSummary:
    """Run every stage in order. The first failure raises ``SyncError``."""
    runner = _StageRunner(options.on_event)

    with runner.stage("discover"):
        manifest_paths, project_root = _discover(options, ctx)

    with runner.stage("parse"):
        manifests = _parse_all(manifest_paths, ctx.config.max_workers)

    with runner.stage("merge"):
        merged = merge_manifests(manifests)
        for message in merged.warnings:
            runner.warn("merge", message)

    with runner.stage("resolve"):
        packages = resolve_packages(merged)
        resolver = MarketplaceResolver(
            fetcher=ctx.fetcher,
            http=ctx.http,
            max_retries=ctx.config.max_retries,
            backoff_s=ctx.config.backoff_s,
        )
        packages = resolver.resolve_all(packages)
        for pkg in packages:
            logger.debug("package %s: %s via %s", pkg.alias, pkg.describe(), pkg.fetch_mode)

    with runner.stage("agents"):
        agents = _select_agents(options, merged.agents, runner, project_root=project_root, home=ctx.home)

    if not agents:
        runner.warn("agents", NO_AGENTS_ENABLED)
        return SyncSummary(
            agents=(),
            dry_run=options.dry_run,
            installed=0,
            removed=0,
            packages=len(packages),
            manifests=len(manifests),
            warnings=tuple(runner.warnings),
            no_op_reason="no-agents",
        )

    if not packages:
        return _sync_without_dependencies(agents, options, runner, len(manifests))

    with runner.stage("fetch"):
        fetched = ctx.fetcher.fetch_all(packages)

    with runner.stage("detect"):
        structures = [detect_structure(f.root) for f in fetched]

    with runner.stage("extract"):
        extracted: list[ExtractedPackage] = [extract_skills(f, s) for f, s in zip(fetched, structures)]

    with runner.stage("validate"):
        validate_extracted_packages(extracted)

    runs = [_AgentRun(agent=agent) for agent in agents]

    # Each agent is finished, state included, before the next one is touched.
    for run in runs:
        with runner.stage("install"):
            _install_agent(run, extracted, options, runner)
        with runner.stage("reconcile"):
            _reconcile_agent(run, options)

    return SyncSummary(
        agents=tuple(run.agent.id for run in runs),
        dry_run=options.dry_run,
        installed=sum(run.installed for run in runs),
        removed=sum(run.removed for run in runs),
        packages=len(packages),
        manifests=len(manifests),
        warnings=tuple(runner.warnings),
    )
