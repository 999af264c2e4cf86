from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

import tomli_w

from . import fs
from .errors import IoError, ParseError, ValidationError
from .refs import (
    AbsolutePath,
    Alias,
    ClaudePluginDeclaration,
    Declaration,
    GitDeclaration,
    GithubDeclaration,
    GithubRef,
    LocalDeclaration,
    MarketplaceRef,
    RegistryDeclaration,
    coerce_declaration,
)
from .structure import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

GLOBAL_MANIFEST_DIR = ".sk"
DEFAULT_SKILLS_EXPORT = "./skills"

_TOP_LEVEL_KEYS = {"package", "agents", "dependencies", "exports"}
_PACKAGE_KEYS = {"name", "version", "description", "license", "org"}


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    description: str | None = None
    license: str | None = None
    org: str | None = None


@dataclass(frozen=True)
class Dependency:
    alias: Alias
    declaration: Declaration


@dataclass(frozen=True)
class Manifest:
    path: AbsolutePath
    package: PackageInfo | None = None
    agents: dict[str, bool] = field(default_factory=dict)
    dependencies: tuple[Dependency, ...] = ()
    # None means auto-discovery was disabled with `skills = false`.
    skills_export: str | None = DEFAULT_SKILLS_EXPORT

    @property
    def root(self) -> Path:
        return self.path.as_path().parent


class _Issues:
    def __init__(self) -> None:
        self.items: list[str] = []

    def add(self, path: str, message: str) -> None:
        self.items.append(f"{path}: {message}")


def _trimmed(value: Any, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, "must be a string.")
        return None
    value = value.strip()
    if not value:
        issues.add(path, "must not be empty.")
        return None
    return value


def _parse_package(raw: Any, issues: _Issues) -> PackageInfo | None:
    if not isinstance(raw, dict):
        issues.add("package", "must be a table.")
        return None
    for key in sorted(set(raw) - _PACKAGE_KEYS):
        issues.add(f"package.{key}", "unknown key.")
    name = _trimmed(raw.get("name"), "package.name", issues)
    version = _trimmed(raw.get("version"), "package.version", issues)
    optional = {k: _trimmed(raw[k], f"package.{k}", issues) for k in ("description", "license", "org") if k in raw}
    if name is None or version is None:
        return None
    return PackageInfo(name=name, version=version, **optional)


def _parse_agents(raw: Any, issues: _Issues) -> dict[str, bool]:
    if not isinstance(raw, dict):
        issues.add("agents", "must be a table.")
        return {}
    out: dict[str, bool] = {}
    for agent_id, enabled in raw.items():
        if not isinstance(enabled, bool):
            issues.add(f"agents.{agent_id}", "must be a boolean.")
            continue
        out[agent_id] = enabled
    return out


def _parse_exports(raw: Any, issues: _Issues) -> str | None:
    if not isinstance(raw, dict):
        issues.add("exports", "must be a table.")
        return DEFAULT_SKILLS_EXPORT
    for key in sorted(set(raw) - {"auto_discover"}):
        issues.add(f"exports.{key}", "unknown key.")
    auto = raw.get("auto_discover", {})
    if not isinstance(auto, dict):
        issues.add("exports.auto_discover", "must be a table.")
        return DEFAULT_SKILLS_EXPORT
    for key in sorted(set(auto) - {"skills"}):
        issues.add(f"exports.auto_discover.{key}", "unknown key.")
    if "skills" not in auto:
        return DEFAULT_SKILLS_EXPORT
    skills = auto["skills"]
    if skills is False:
        return None
    trimmed = _trimmed(skills, "exports.auto_discover.skills", issues)
    return trimmed or DEFAULT_SKILLS_EXPORT


def parse_manifest(contents: str, source_path: AbsolutePath) -> Manifest:
    """Parse agents.toml text. Raises ``ParseError`` or ``ValidationError``."""
    try:
        data = tomllib.loads(contents)
    except tomllib.TOMLDecodeError as e:
        raise ParseError(f"Invalid TOML: {e}", source=source_path.unwrap()) from e

    issues = _Issues()
    for key in sorted(set(data) - _TOP_LEVEL_KEYS):
        issues.add(key, "unknown key.")

    package = _parse_package(data["package"], issues) if "package" in data else None
    agents = _parse_agents(data.get("agents", {}), issues)
    skills_export = _parse_exports(data["exports"], issues) if "exports" in data else DEFAULT_SKILLS_EXPORT

    raw_deps = data.get("dependencies", {})
    if not isinstance(raw_deps, dict):
        issues.add("dependencies", "must be a table.")
        raw_deps = {}

    if issues.items:
        raise ParseError(f"Invalid manifest: {'; '.join(issues.items)}", source=source_path.unwrap())

    base_dir = source_path.as_path().parent
    dependencies: list[Dependency] = []
    for alias_raw, decl_raw in raw_deps.items():
        alias = Alias(alias_raw, field=f"dependencies.{alias_raw}")
        try:
            declaration = coerce_declaration(decl_raw, alias=alias.unwrap(), base_dir=base_dir)
        except ValidationError as e:
            raise ValidationError(
                f"{e} (in {source_path.unwrap()})", field=e.field, source=e.source, value=e.value
            ) from e
        dependencies.append(Dependency(alias=alias, declaration=declaration))

    return Manifest(
        path=source_path,
        package=package,
        agents=agents,
        dependencies=tuple(dependencies),
        skills_export=skills_export,
    )


def load_manifest(path: AbsolutePath) -> Manifest:
    p = path.as_path()
    try:
        contents = p.read_text(encoding="utf-8")
    except OSError as e:
        raise IoError(f"Unable to read {p}: {e}", path=p, operation="read") from e
    return parse_manifest(contents, path)


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True


def find_project_root(start_dir: str | Path, *, home: str | Path | None = None) -> Path | None:
    """Walk up from ``start_dir`` to the nearest directory holding agents.toml.

    The walk stops at the home directory when starting inside it, otherwise at
    the filesystem root.
    """
    start = Path(os.path.abspath(start_dir))
    if not start.is_dir():
        raise IoError(f"Manifest discovery start path must be a directory: {start}", path=start, operation="stat")
    home_dir = Path(os.path.abspath(home if home is not None else Path.home()))
    stop = home_dir if _is_within(start, home_dir) else Path(start.anchor)

    current = start
    while True:
        candidate = current / MANIFEST_FILENAME
        try:
            if candidate.is_file():
                return current
        except OSError as e:
            raise IoError(f"Unable to inspect {candidate}: {e}", path=candidate, operation="stat") from e
        if current == stop or current.parent == current:
            return None
        current = current.parent


def global_manifest_path(home: str | Path | None = None) -> Path:
    home_dir = Path(home) if home is not None else Path.home()
    return home_dir / GLOBAL_MANIFEST_DIR / MANIFEST_FILENAME


def find_dependency(manifest: Manifest, alias: Alias) -> Dependency | None:
    for dep in manifest.dependencies:
        if dep.alias == alias:
            return dep
    return None


def with_dependency(manifest: Manifest, alias: Alias, declaration: Declaration) -> Manifest:
    """Add ``alias`` or replace its declaration in place."""
    dep = Dependency(alias=alias, declaration=declaration)
    if find_dependency(manifest, alias) is None:
        return replace(manifest, dependencies=(*manifest.dependencies, dep))
    return replace(manifest, dependencies=tuple(dep if d.alias == alias else d for d in manifest.dependencies))


def without_dependency(manifest: Manifest, alias: Alias) -> Manifest:
    return replace(manifest, dependencies=tuple(d for d in manifest.dependencies if d.alias != alias))


def with_agent(manifest: Manifest, agent_id: str, enabled: bool) -> Manifest:
    return replace(manifest, agents={**manifest.agents, agent_id: enabled})


def _path_value(path: AbsolutePath, base_dir: Path) -> str:
    # Paths under the manifest directory are written back relative to it.
    rel = os.path.relpath(path.unwrap(), base_dir)
    if rel == ".":
        return "."
    if rel.startswith("..") or os.path.isabs(rel):
        return path.unwrap()
    return "./" + Path(rel).as_posix()


def _marketplace_value(ref: MarketplaceRef, base_dir: Path) -> str:
    if isinstance(ref, AbsolutePath):
        return _path_value(ref, base_dir)
    if isinstance(ref, GithubRef):
        return f"github:{ref.unwrap()}"
    return ref.unwrap()


def dependency_value(declaration: Declaration, *, base_dir: Path) -> str | dict[str, str]:
    """The ``[dependencies]`` value that parses back to ``declaration``."""
    if isinstance(declaration, RegistryDeclaration):
        scope = f"@{declaration.org}/" if declaration.org else ""
        return f"{scope}{declaration.name}@{declaration.version}"
    if isinstance(declaration, LocalDeclaration):
        return {"path": _path_value(declaration.path, base_dir)}
    if isinstance(declaration, ClaudePluginDeclaration):
        return {
            "marketplace": _marketplace_value(declaration.marketplace, base_dir),
            "plugin": declaration.plugin.unwrap(),
            "type": "claude-plugin",
        }
    out: dict[str, str]
    if isinstance(declaration, GithubDeclaration):
        out = {"gh": declaration.gh.unwrap()}
    elif isinstance(declaration, GitDeclaration):
        out = {"git": declaration.url.unwrap()}
    else:
        raise AssertionError("unreachable")
    if declaration.ref.kind and declaration.ref.value:
        out[declaration.ref.kind] = declaration.ref.value
    if declaration.path:
        out["path"] = declaration.path
    return out


def serialize_manifest(manifest: Manifest, *, include_empty_agents: bool = False) -> str:
    """Render ``manifest`` as agents.toml text.

    Sections are written in the order package, agents, dependencies, exports.
    Empty sections are left out, except ``[agents]`` when
    ``include_empty_agents`` is set. The export path is only written when it
    differs from the default.
    """
    data: dict[str, Any] = {}
    if manifest.package is not None:
        data["package"] = {k: v for k, v in asdict(manifest.package).items() if v is not None}
    if manifest.agents or include_empty_agents:
        data["agents"] = dict(manifest.agents)
    if manifest.dependencies:
        data["dependencies"] = {
            d.alias.unwrap(): dependency_value(d.declaration, base_dir=manifest.root) for d in manifest.dependencies
        }
    if manifest.skills_export != DEFAULT_SKILLS_EXPORT:
        skills = manifest.skills_export if manifest.skills_export is not None else False
        data["exports"] = {"auto_discover": {"skills": skills}}
    return tomli_w.dumps(data)


def write_manifest(manifest: Manifest, *, include_empty_agents: bool = False) -> Path:
    path = manifest.path.as_path()
    try:
        fs.write_text_atomic(path, serialize_manifest(manifest, include_empty_agents=include_empty_agents))
    except OSError as e:
        raise IoError(f"Unable to write {path}: {e}", path=path, operation="write") from e
    logger.debug("wrote manifest %s", path)
    return path
