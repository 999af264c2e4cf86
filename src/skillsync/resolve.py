from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from .errors import ConflictError
from .manifest import Dependency, Manifest
from .refs import (
    AbsolutePath,
    Alias,
    ClaudePluginDeclaration,
    Declaration,
    GitDeclaration,
    GithubDeclaration,
    LocalDeclaration,
    RegistryDeclaration,
    declaration_key,
    describe_declaration,
)

logger = logging.getLogger(__name__)

FetchMode = Literal["symlink", "clone", "sparse-clone", "marketplace", "registry"]


@dataclass(frozen=True)
class PackageOrigin:
    alias: Alias
    manifest_path: AbsolutePath


@dataclass(frozen=True)
class CanonicalPackage:
    declaration: Declaration
    origin: PackageOrigin
    prefix: str
    fetch_mode: FetchMode

    @property
    def alias(self) -> str:
        return self.origin.alias.unwrap()

    def describe(self) -> str:
        return describe_declaration(self.declaration)


@dataclass(frozen=True)
class MergedDependency:
    dependency: Dependency
    manifest_path: AbsolutePath


@dataclass(frozen=True)
class MergedManifest:
    manifests: tuple[Manifest, ...]
    agents: dict[str, bool]
    dependencies: tuple[MergedDependency, ...]
    warnings: tuple[str, ...]


def merge_manifests(manifests: list[Manifest] | tuple[Manifest, ...]) -> MergedManifest:
    """Merge manifests in order.

    Agents: first occurrence wins. Dependencies are deduplicated by
    declaration key; one alias naming two different packages is a conflict,
    one package under two aliases keeps the first alias and warns.
    """
    agents: dict[str, bool] = {}
    merged: list[MergedDependency] = []
    warnings: list[str] = []

    alias_to_key: dict[Alias, str] = {}
    alias_origin: dict[Alias, AbsolutePath] = {}
    key_to_alias: dict[str, Alias] = {}
    warned: set[Alias] = set()

    for manifest in manifests:
        for agent_id, enabled in manifest.agents.items():
            agents.setdefault(agent_id, enabled)

        for dep in manifest.dependencies:
            key = declaration_key(dep.declaration)
            existing_key = alias_to_key.get(dep.alias)
            if existing_key is not None:
                if existing_key != key:
                    raise ConflictError(
                        f'Alias "{dep.alias.unwrap()}" refers to different dependencies '
                        f"(first: {alias_origin[dep.alias].unwrap()}, next: {manifest.path.unwrap()})."
                    )
                continue

            existing_alias = key_to_alias.get(key)
            if existing_alias is not None and existing_alias != dep.alias:
                if dep.alias not in warned:
                    warnings.append(
                        f'Dependency alias "{dep.alias.unwrap()}" in {manifest.path.unwrap()} resolves to the '
                        f'same package as "{existing_alias.unwrap()}" in {alias_origin[existing_alias].unwrap()}; '
                        f'using "{existing_alias.unwrap()}".'
                    )
                    warned.add(dep.alias)
                continue

            alias_to_key[dep.alias] = key
            alias_origin[dep.alias] = manifest.path
            key_to_alias[key] = dep.alias
            merged.append(MergedDependency(dependency=dep, manifest_path=manifest.path))

    return MergedManifest(
        manifests=tuple(manifests),
        agents=agents,
        dependencies=tuple(merged),
        warnings=tuple(warnings),
    )


def fetch_mode_for(decl: Declaration) -> FetchMode:
    if isinstance(decl, LocalDeclaration):
        return "symlink"
    if isinstance(decl, (GithubDeclaration, GitDeclaration)):
        return "sparse-clone" if decl.path else "clone"
    if isinstance(decl, ClaudePluginDeclaration):
        return "marketplace"
    if isinstance(decl, RegistryDeclaration):
        return "registry"
    raise AssertionError("unreachable")


def resolve_declaration(decl: Declaration, origin: PackageOrigin) -> CanonicalPackage:
    return CanonicalPackage(
        declaration=decl,
        origin=origin,
        prefix=origin.alias.unwrap(),
        fetch_mode=fetch_mode_for(decl),
    )


def resolve_packages(merged: MergedManifest) -> list[CanonicalPackage]:
    """Map every merged dependency to its canonical package, in order. No IO."""
    return [
        resolve_declaration(
            entry.dependency.declaration,
            PackageOrigin(alias=entry.dependency.alias, manifest_path=entry.manifest_path),
        )
        for entry in merged.dependencies
    ]
