from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from .agents import AgentDefinition, detect_installed_agents, get_agent
from .autodetect import AutoDetectResult, GithubSource
from .errors import ConflictError, NotFoundError, ValidationError
from .manifest import Manifest, find_project_root, global_manifest_path, load_manifest
from .refs import AbsolutePath, Alias, Declaration, GitRef, coerce_declaration
from .structure import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

PLUGIN_TYPES = ("claude-plugin", "claude", "plugin")
GITHUB_TYPES = ("gh", "github")
LOCAL_TYPES = ("path", "local")

_AUTO_DETECT_PATTERNS = (
    re.compile(r"^https://github\.com/[^/]+/[^/]+"),
    re.compile(r"^git@[^:]+:.+"),
    re.compile(r"^https://.+\.git$"),
)
_SSH_PATH_RE = re.compile(r"^git@[^:]+:(.+)$")
_REGISTRY_SPEC_RE = re.compile(r"^(?:@[^/@]+/)?([^/@]+)@(.+)$")


@dataclass(frozen=True)
class PackageSpec:
    """One dependency as it is written under ``[dependencies]``."""

    alias: str
    value: str | dict[str, str]

    def to_declaration(self, base_dir: str | Path) -> tuple[Alias, Declaration]:
        alias = Alias(self.alias, field="alias")
        return alias, coerce_declaration(self.value, alias=alias.unwrap(), base_dir=base_dir)


def is_auto_detect_url(value: str) -> bool:
    trimmed = value.strip()
    return any(p.match(trimmed) for p in _AUTO_DETECT_PATTERNS)


def option_value(value: str | None, flag: str) -> str | None:
    """Trim a command-line option; an explicitly empty value is an error."""
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(f"{flag} must not be empty.", field=flag)
    return trimmed


def _alias_from_github(spec: str) -> str:
    parts = spec.split("/")
    return parts[1].removesuffix(".git").strip() if len(parts) > 1 else ""


def _alias_from_git(spec: str) -> str:
    m = _SSH_PATH_RE.match(spec)
    path = m.group(1) if m else urlsplit(spec).path
    return PurePosixPath(path.rstrip("/").removesuffix(".git")).name


def _require_alias(alias: str, what: str) -> str:
    if not alias:
        raise ValidationError(f"Unable to derive alias from {what}; pass --as.", field="alias")
    return alias


def build_package_spec(
    kind: str,
    spec: str,
    *,
    alias: str | None = None,
    ref: GitRef = GitRef(),
    path: str | None = None,
) -> PackageSpec:
    """Turn ``sk pkg add TYPE SPEC`` into the value written to agents.toml.

    Without ``alias`` the name is derived from the repository name, the last
    path segment, the plugin name or the registry package name.
    """
    normalized = kind.strip().lower()
    if not normalized:
        raise ValidationError("Package type is required.", field="type")
    spec = spec.strip()
    if not spec:
        raise ValidationError("Package spec is required.", field="spec")

    if normalized in PLUGIN_TYPES:
        if ref.kind or path:
            raise ValidationError("--tag/--branch/--rev/--path are not valid for Claude plugins.", field="ref")
        plugin, sep, marketplace = spec.partition("@")
        plugin, marketplace = plugin.strip(), marketplace.strip()
        if not sep or not plugin or not marketplace:
            raise ValidationError(
                'Claude plugin specs must be in the form "<plugin>@<marketplace>".', field="spec", value=spec
            )
        return PackageSpec(alias or plugin, {"marketplace": marketplace, "plugin": plugin, "type": "claude-plugin"})

    if normalized in GITHUB_TYPES or normalized == "git":
        if normalized == "git":
            value = {"git": spec}
            derived = _require_alias(alias or _alias_from_git(spec), "git URL")
        else:
            value = {"gh": spec}
            derived = _require_alias(alias or _alias_from_github(spec), "GitHub spec")
        if ref.kind and ref.value:
            value[ref.kind] = ref.value
        if path:
            value["path"] = path
        return PackageSpec(derived, value)

    if normalized in LOCAL_TYPES:
        if ref.kind:
            raise ValidationError("--tag/--branch/--rev are not valid for local paths.", field="ref")
        if path:
            raise ValidationError("--path is not valid for local packages.", field="path")
        derived = _require_alias(alias or os.path.basename(spec.rstrip("/\\")), "local path")
        return PackageSpec(derived, {"path": spec})

    if normalized == "registry":
        if ref.kind or path:
            raise ValidationError("--tag/--branch/--rev/--path are not valid for registry packages.", field="ref")
        m = _REGISTRY_SPEC_RE.match(spec)
        if not m:
            raise ValidationError(
                "Registry packages must be in the form name@version or @org/name@version.", field="spec", value=spec
            )
        return PackageSpec(alias or m.group(1), spec)

    raise ValidationError(f"Unsupported package type: {kind}", field="type", value=kind)


def spec_from_detection(
    result: AutoDetectResult,
    *,
    alias: str | None = None,
    ref: GitRef = GitRef(),
    path: str | None = None,
) -> PackageSpec:
    """Build the dependency for a URL that ``auto_detect_package`` inspected.

    A marketplace with exactly one plugin is added as that plugin; with more
    than one the caller has to name it.
    """
    source = result.source.slug if isinstance(result.source, GithubSource) else result.source.url
    if result.marketplace_name is None:
        logger.info("detected %s package at %s", result.method, source)
        return build_package_spec(result.source.type, source, alias=alias, ref=ref, path=path)

    if ref.kind:
        raise ValidationError("--tag/--branch/--rev are not valid for marketplace plugins.", field="ref")
    if path:
        logger.warning("--path is used for detection only; marketplace plugins do not support subpaths")
    plugins = result.marketplace_plugins
    if not plugins:
        raise ValidationError(f'Marketplace "{result.marketplace_name}" has no plugins.', field="plugin")
    if len(plugins) > 1:
        raise ValidationError(
            f'Marketplace "{result.marketplace_name}" has multiple plugins ({", ".join(plugins)}). '
            f"Add one with: sk pkg add plugin <plugin>@{source}",
            field="plugin",
        )
    logger.info("auto-selecting plugin %s from marketplace %s", plugins[0], result.marketplace_name)
    return build_package_spec("claude-plugin", f"{plugins[0]}@{source}", alias=alias)


def parse_agent_list(raw: str) -> list[AgentDefinition]:
    """``claude-code,codex`` -> agent definitions. Unknown ids raise ``NotFoundError``."""
    ids = [part.strip() for part in raw.split(",") if part.strip()]
    if not ids:
        raise ValidationError("--agents must name at least one agent.", field="agents", value=raw)
    return [get_agent(agent_id) for agent_id in dict.fromkeys(ids)]


def new_manifest(
    path: Path,
    *,
    agents: list[AgentDefinition] | None = None,
    home: Path | None = None,
) -> tuple[Manifest, list[str]]:
    """A fresh manifest at ``path`` enabling ``agents``, or the installed ones.

    Returns the manifest and any detection warnings; nothing is written.
    """
    if path.exists():
        raise ConflictError(f"Manifest already exists at {path}.")
    warnings: list[str] = []
    if agents is None:
        agents, warnings = detect_installed_agents(home=home)
        if not agents:
            warnings.append("No installed agents detected; created manifest with empty [agents].")
    manifest = Manifest(path=AbsolutePath(os.path.abspath(path)), agents={a.id: True for a in agents})
    return manifest, warnings


@dataclass(frozen=True)
class ManifestTarget:
    manifest: Manifest
    created: bool = False

    @property
    def path(self) -> Path:
        return self.manifest.path.as_path()


def manifest_path_for(*, global_scope: bool, cwd: Path, home: Path) -> Path:
    """Where an edit lands: the global manifest, or the nearest project one."""
    if global_scope:
        return global_manifest_path(home)
    root = find_project_root(cwd, home=home)
    return (root if root is not None else cwd) / MANIFEST_FILENAME


def open_manifest(*, global_scope: bool, cwd: Path, home: Path, create: bool = False) -> ManifestTarget:
    path = Path(os.path.abspath(manifest_path_for(global_scope=global_scope, cwd=cwd, home=home)))
    if path.is_file():
        return ManifestTarget(load_manifest(AbsolutePath(str(path))))
    if not create:
        raise NotFoundError(f"No {MANIFEST_FILENAME} found at {path}. Run `sk init` or pass --init.", target=str(path))
    manifest, warnings = new_manifest(path, home=home)
    for warning in warnings:
        logger.warning(warning)
    return ManifestTarget(manifest, created=True)
