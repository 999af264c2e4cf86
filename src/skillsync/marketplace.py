from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .errors import IoError, NotFoundError, ParseError, ValidationError
from .fetch import Fetcher, github_clone_url
from .net import fetch_text
from .refs import (
    AbsolutePath,
    ClaudePluginDeclaration,
    Declaration,
    GitDeclaration,
    GithubDeclaration,
    GithubRef,
    GitUrl,
    LocalDeclaration,
    MarketplaceRef,
    RemoteMarketplaceUrl,
    marketplace_ref_kind,
    strip_github_prefix,
)
from .resolve import CanonicalPackage, resolve_declaration
from .structure import MARKETPLACE_FILENAME, PLUGIN_DIR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketplacePlugin:
    name: str
    source: Any  # relative path string or {"source": "github"|"url", ...}


@dataclass(frozen=True)
class MarketplaceManifest:
    name: str
    plugin_root: str | None
    plugins: tuple[MarketplacePlugin, ...]

    def find(self, plugin_name: str) -> MarketplacePlugin | None:
        for plugin in self.plugins:
            if plugin.name == plugin_name:
                return plugin
        return None


def parse_marketplace_json(contents: str, source_path: str | Path) -> MarketplaceManifest:
    """Parse marketplace.json text. Pure: never touches the filesystem."""
    try:
        data = json.loads(contents)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {source_path}. {e}", source=source_path) from e

    if not isinstance(data, dict):
        raise ParseError("Marketplace manifest must be a JSON object.", source=source_path)

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ParseError("Marketplace manifest must include a non-empty name.", source=source_path)

    raw_plugins = data.get("plugins")
    if not isinstance(raw_plugins, list) or not raw_plugins:
        raise ParseError("Marketplace manifest must include a non-empty plugins array.", source=source_path)

    plugins: list[MarketplacePlugin] = []
    for entry in raw_plugins:
        if not isinstance(entry, dict):
            raise ParseError("Marketplace plugins must be objects.", source=source_path)
        plugin_name = entry.get("name")
        if not isinstance(plugin_name, str) or not plugin_name.strip():
            raise ParseError("Marketplace plugins must include a non-empty name.", source=source_path)
        if "source" not in entry or entry["source"] is None:
            raise ParseError(f'Marketplace plugin "{plugin_name}" is missing source.', source=source_path)
        plugins.append(MarketplacePlugin(name=plugin_name.strip(), source=entry["source"]))

    plugin_root: str | None = None
    if "metadata" in data:
        metadata = data["metadata"]
        if not isinstance(metadata, dict):
            raise ParseError("Marketplace metadata must be a JSON object.", source=source_path)
        if "pluginRoot" in metadata:
            root = metadata["pluginRoot"]
            if not isinstance(root, str) or not root.strip():
                raise ParseError("Marketplace metadata.pluginRoot must be a non-empty string.", source=source_path)
            plugin_root = root.strip()

    return MarketplaceManifest(name=name.strip(), plugin_root=plugin_root, plugins=tuple(plugins))


@dataclass(frozen=True)
class LoadedMarketplace:
    ref: MarketplaceRef
    manifest: MarketplaceManifest
    manifest_path: str
    root: Path | None  # None for URL marketplaces
    plugin_root: Path | None

    @property
    def base_path(self) -> Path | None:
        return self.plugin_root or self.root


def _expand(value: str, base: Path) -> Path:
    expanded = os.path.expanduser(value) if value.startswith("~") else value
    return Path(os.path.normpath(os.path.join(base, expanded)))


class MarketplaceResolver:
    """Loads marketplaces and turns plugin declarations into packages.

    Marketplaces are loaded once per resolver and reused.
    """

    def __init__(
        self,
        *,
        fetcher: Fetcher,
        http: httpx.Client,
        max_retries: int = 3,
        backoff_s: float = 0.5,
    ) -> None:
        self.fetcher = fetcher
        self.http = http
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._cache: dict[str, LoadedMarketplace] = {}

    def load(self, ref: MarketplaceRef) -> LoadedMarketplace:
        cache_key = f"{type(ref).__name__}:{ref.unwrap()}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        if isinstance(ref, RemoteMarketplaceUrl):
            manifest_path = ref.unwrap()
            contents = fetch_text(self.http, manifest_path, max_retries=self.max_retries, backoff_s=self.backoff_s)
            root: Path | None = None
        else:
            if isinstance(ref, AbsolutePath):
                root = ref.as_path()
                if not root.is_dir():
                    raise NotFoundError(f"Marketplace path is not a directory: {root}", target=ref.unwrap())
            elif isinstance(ref, GithubRef):
                root = self.fetcher.fetch_repository(github_clone_url(ref.unwrap()), label="marketplace")
            elif isinstance(ref, GitUrl):
                root = self.fetcher.fetch_repository(ref.unwrap(), label="marketplace")
            else:
                raise AssertionError("unreachable")
            path = root / PLUGIN_DIR / MARKETPLACE_FILENAME
            manifest_path = str(path)
            try:
                contents = path.read_text(encoding="utf-8")
            except FileNotFoundError as e:
                raise NotFoundError(f"No {MARKETPLACE_FILENAME} found at {path}", target=ref.unwrap()) from e
            except OSError as e:
                raise IoError(f"Unable to read {path}: {e}", path=path, operation="read") from e

        manifest = parse_marketplace_json(contents, manifest_path)

        plugin_root: Path | None = None
        if manifest.plugin_root:
            if root is None:
                raise ValidationError(
                    "Marketplace pluginRoot is not supported for URL marketplaces.", field="metadata.pluginRoot"
                )
            plugin_root = _expand(manifest.plugin_root, root)
            if not plugin_root.is_dir():
                raise NotFoundError(f"Marketplace pluginRoot is not a directory: {plugin_root}", target=str(plugin_root))

        loaded = LoadedMarketplace(
            ref=ref, manifest=manifest, manifest_path=manifest_path, root=root, plugin_root=plugin_root
        )
        self._cache[cache_key] = loaded
        logger.debug(
            "loaded %s marketplace %s with %d plugins", marketplace_ref_kind(ref), manifest.name, len(manifest.plugins)
        )
        return loaded

    def resolve_plugin(self, package: CanonicalPackage) -> CanonicalPackage:
        decl = package.declaration
        if not isinstance(decl, ClaudePluginDeclaration):
            return package
        marketplace = self.load(decl.marketplace)
        plugin_name = decl.plugin.unwrap()
        entry = marketplace.manifest.find(plugin_name)
        if entry is None:
            raise NotFoundError(
                f'Marketplace "{marketplace.manifest.name}" does not contain plugin "{plugin_name}".',
                target=plugin_name,
            )
        resolved = plugin_source_declaration(entry.source, alias=package.alias, marketplace=marketplace)
        logger.debug("plugin %s resolved to %s", plugin_name, type(resolved).__name__)
        return resolve_declaration(resolved, package.origin)

    def resolve_all(self, packages: list[CanonicalPackage]) -> list[CanonicalPackage]:
        return [self.resolve_plugin(pkg) for pkg in packages]


def _cloned_source_declaration(candidate: Path, *, alias: str, marketplace: LoadedMarketplace) -> Declaration:
    # The marketplace clone lives in a scratch dir, so point back at the repository instead.
    assert marketplace.root is not None
    rel = os.path.relpath(candidate, marketplace.root)
    if rel.startswith("..") or os.path.isabs(rel):
        raise ValidationError(f'Plugin "{alias}" source must stay inside the marketplace repository.', field="source")
    path = None if rel == "." else Path(rel).as_posix()
    ref = marketplace.ref
    if isinstance(ref, GithubRef):
        return GithubDeclaration(gh=ref, path=path)
    if isinstance(ref, GitUrl):
        return GitDeclaration(url=ref, path=path)
    raise AssertionError("unreachable")


def plugin_source_declaration(source: Any, *, alias: str, marketplace: LoadedMarketplace) -> Declaration:
    """Map a marketplace plugin ``source`` to a concrete declaration."""
    if isinstance(source, str):
        trimmed = source.strip()
        if not trimmed:
            raise ValidationError(f'Plugin "{alias}" source must not be empty.', field="source")
        base = marketplace.base_path
        if base is None:
            raise ValidationError(
                f'Plugin "{alias}" uses a relative source, but marketplace URL sources do not support relative plugin paths.',
                field="source",
            )
        candidate = _expand(trimmed, base)
        if candidate.is_dir():
            if isinstance(marketplace.ref, (GithubRef, GitUrl)):
                return _cloned_source_declaration(candidate, alias=alias, marketplace=marketplace)
            return LocalDeclaration(path=AbsolutePath(str(candidate)))
        if candidate.exists():
            raise ValidationError(f'Plugin "{alias}" source path is not a directory.', field="source")
        raise NotFoundError(f'Plugin "{alias}" source path does not exist: {candidate}', target=str(candidate))

    if not isinstance(source, dict):
        raise ValidationError(f'Plugin "{alias}" source must be a string or object declaration.', field="source")

    kind = source.get("source")
    if not isinstance(kind, str) or not kind.strip():
        raise ValidationError(f'Plugin "{alias}" source must include a non-empty "source" field.', field="source")
    kind = kind.strip()
    allowed = {"github": {"source", "repo"}, "url": {"source", "url"}}.get(kind, {"source"})
    unknown = sorted(k for k in source if k not in allowed)
    if unknown:
        raise ValidationError(f'Plugin "{alias}" source has unknown keys: {", ".join(unknown)}.', field="source")

    if kind == "github":
        repo = source.get("repo")
        if not isinstance(repo, str) or not repo.strip():
            raise ValidationError(f'Plugin "{alias}" source repo must be a string.', field="source.repo")
        return GithubDeclaration(gh=GithubRef(strip_github_prefix(repo.strip()), field="source.repo"))
    if kind == "url":
        url = source.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValidationError(f'Plugin "{alias}" source url must be a string.', field="source.url")
        return GitDeclaration(url=GitUrl(url, field="source.url"))
    raise ValidationError(f'Plugin "{alias}" source must use "github" or "url" for source type.', field="source.source")
