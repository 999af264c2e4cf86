from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union
from urllib.parse import urlsplit

from .errors import ValidationError

_GITHUB_SLUG_RE = re.compile(r"^([a-zA-Z0-9_.-]+)/([a-zA-Z0-9_.-]+)$")
_SSH_GIT_RE = re.compile(r"^git@([^:]+):(.+?)(?:\.git)?$")
_HTTP_GIT_RE = re.compile(r"^https?://([^/]+)/(.+?)(?:\.git)?$")
_REGISTRY_RE = re.compile(r"^(?:@([a-zA-Z0-9_.-]+)/)?([a-zA-Z0-9_.-]+)@(.+)$")
_ALIAS_FORBIDDEN = ("/", "\\", ".", ":")


class _Validated:
    """A string that satisfied ``_coerce`` when it was built.

    The only way in is the constructor; the only way out is ``unwrap()``.
    """

    __slots__ = ("_value",)

    rule = "must be valid"

    def __init__(self, raw: Any, *, field: str = "value") -> None:
        value = self._coerce(raw.strip()) if isinstance(raw, str) else None
        if not value:
            raise ValidationError(f"{field} {self.rule}", field=field, value=raw)
        self._value = value

    def _coerce(self, raw: str) -> str | None:
        return raw or None

    def unwrap(self) -> str:
        return self._value

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and other._value == self._value  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._value))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"


class NonEmptyString(_Validated):
    __slots__ = ()
    rule = "must be non-empty"


class Alias(_Validated):
    __slots__ = ()
    rule = "must be non-empty and must not contain '/', '\\', '.' or ':'"

    def _coerce(self, raw: str) -> str | None:
        if not raw or any(ch in raw for ch in _ALIAS_FORBIDDEN):
            return None
        return raw


class GithubRef(_Validated):
    __slots__ = ()
    rule = "must be in owner/repo format"

    def _coerce(self, raw: str) -> str | None:
        return raw if _GITHUB_SLUG_RE.match(raw) else None

    @property
    def owner(self) -> str:
        return self._value.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self._value.split("/", 1)[1]


class GitUrl(_Validated):
    __slots__ = ()
    rule = "must be a valid git URL (git@host:path or https://host/path format)"

    def _coerce(self, raw: str) -> str | None:
        m = _SSH_GIT_RE.match(raw)
        if m:
            return f"https://{m.group(1)}/{m.group(2)}"
        m = _HTTP_GIT_RE.match(raw)
        if m:
            return raw[: -len(".git")] if raw.endswith(".git") else raw
        return None


class RemoteMarketplaceUrl(_Validated):
    __slots__ = ()
    rule = "must be an http(s) URL ending in marketplace.json"

    def _coerce(self, raw: str) -> str | None:
        parts = urlsplit(raw)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            return None
        if not parts.path.endswith("marketplace.json"):
            return None
        return raw


class AbsolutePath(_Validated):
    """Normalized absolute filesystem path.

    Relative input is accepted only when ``base`` is given.
    """

    __slots__ = ()
    rule = "must be an absolute path"

    def __init__(self, raw: Any, *, field: str = "path", base: str | Path | None = None) -> None:
        if isinstance(raw, Path):
            raw = str(raw)
        if isinstance(raw, str) and base is not None:
            expanded = _expand_home(raw.strip())
            if expanded and not os.path.isabs(expanded):
                raw = os.path.join(str(base), expanded)
        super().__init__(raw, field=field)

    def _coerce(self, raw: str) -> str | None:
        expanded = _expand_home(raw)
        if not expanded or not os.path.isabs(expanded):
            return None
        return os.path.normpath(expanded)

    def as_path(self) -> Path:
        return Path(self._value)


def _expand_home(value: str) -> str:
    if value == "~" or value.startswith("~/"):
        return os.path.expanduser(value)
    return value


@dataclass(frozen=True)
class GitRef:
    tag: str | None = None
    branch: str | None = None
    rev: str | None = None

    def __post_init__(self) -> None:
        set_fields = [name for name in ("tag", "branch", "rev") if getattr(self, name)]
        if len(set_fields) > 1:
            raise ValidationError(
                f"Only one of tag, branch or rev may be set (got {', '.join(set_fields)}).",
                field="ref",
            )

    @property
    def kind(self) -> str | None:
        for name in ("tag", "branch", "rev"):
            if getattr(self, name):
                return name
        return None

    @property
    def value(self) -> str | None:
        return self.tag or self.branch or self.rev

    def describe(self) -> str:
        return f"{self.kind}={self.value}" if self.kind else "default"


# Declarations: exactly one of these describes where a package comes from.


@dataclass(frozen=True)
class GithubDeclaration:
    gh: GithubRef
    ref: GitRef = GitRef()
    path: str | None = None


@dataclass(frozen=True)
class GitDeclaration:
    url: GitUrl
    ref: GitRef = GitRef()
    path: str | None = None


@dataclass(frozen=True)
class LocalDeclaration:
    path: AbsolutePath


MarketplaceRef = Union[GithubRef, GitUrl, AbsolutePath, RemoteMarketplaceUrl]


@dataclass(frozen=True)
class ClaudePluginDeclaration:
    marketplace: MarketplaceRef
    plugin: NonEmptyString


@dataclass(frozen=True)
class RegistryDeclaration:
    name: str
    version: str
    org: str | None = None


Declaration = Union[
    GithubDeclaration,
    GitDeclaration,
    LocalDeclaration,
    ClaudePluginDeclaration,
    RegistryDeclaration,
]


def build_claude_plugin_declaration(marketplace: MarketplaceRef, plugin: str | NonEmptyString) -> ClaudePluginDeclaration:
    if not isinstance(plugin, NonEmptyString):
        plugin = NonEmptyString(plugin, field="plugin")
    return ClaudePluginDeclaration(marketplace=marketplace, plugin=plugin)


def marketplace_ref_kind(ref: MarketplaceRef) -> str:
    if isinstance(ref, GithubRef):
        return "github"
    if isinstance(ref, GitUrl):
        return "git"
    if isinstance(ref, AbsolutePath):
        return "path"
    if isinstance(ref, RemoteMarketplaceUrl):
        return "url"
    raise AssertionError("unreachable")


def declaration_key(decl: Declaration) -> str:
    """Identity used to dedupe the same package declared in several manifests."""
    if isinstance(decl, GithubDeclaration):
        return f"github|{decl.gh.unwrap()}|{decl.path or ''}"
    if isinstance(decl, GitDeclaration):
        return f"git|{decl.url.unwrap()}|{decl.path or ''}"
    if isinstance(decl, LocalDeclaration):
        return f"local|{decl.path.unwrap()}"
    if isinstance(decl, ClaudePluginDeclaration):
        return f"claude-plugin|{decl.marketplace.unwrap()}|{decl.plugin.unwrap()}"
    if isinstance(decl, RegistryDeclaration):
        return f"registry|{decl.org or ''}|{decl.name}"
    raise AssertionError("unreachable")


def describe_declaration(decl: Declaration) -> str:
    if isinstance(decl, GithubDeclaration):
        suffix = f" ({decl.path})" if decl.path else ""
        return f"gh:{decl.gh.unwrap()}{suffix}"
    if isinstance(decl, GitDeclaration):
        suffix = f" ({decl.path})" if decl.path else ""
        return f"git:{decl.url.unwrap()}{suffix}"
    if isinstance(decl, LocalDeclaration):
        return f"path:{decl.path.unwrap()}"
    if isinstance(decl, ClaudePluginDeclaration):
        return f"plugin:{decl.plugin.unwrap()}@{decl.marketplace.unwrap()}"
    if isinstance(decl, RegistryDeclaration):
        scope = f"@{decl.org}/" if decl.org else ""
        return f"registry:{scope}{decl.name}@{decl.version}"
    raise AssertionError("unreachable")


def strip_github_prefix(value: str) -> str:
    for prefix in ("github:", "gh:"):
        if value.startswith(prefix):
            return value[len(prefix) :]
    return value


def _looks_like_marketplace_json_url(value: str) -> bool:
    if "://" not in value:
        return False
    return urlsplit(value).path.endswith(".json")


def _looks_like_git_url(value: str) -> bool:
    return value.startswith("git@") or "://" in value


def parse_marketplace_ref(raw: Any, *, base_dir: str | Path, field: str = "marketplace") -> MarketplaceRef:
    """Classify a marketplace string.

    Order: ``github:``/``gh:`` prefix, ``*.json`` URL, git URL, existing local
    directory (relative to ``base_dir``), then GitHub ``owner/repo``.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(f"{field} must be non-empty", field=field, value=raw)
    value = raw.strip()

    stripped = strip_github_prefix(value)
    if stripped != value:
        return GithubRef(stripped, field=field)
    if _looks_like_marketplace_json_url(value):
        return RemoteMarketplaceUrl(value, field=field)
    if _looks_like_git_url(value):
        return GitUrl(value, field=field)

    candidate = AbsolutePath(value, field=field, base=base_dir)
    path = candidate.as_path()
    if path.is_dir():
        return candidate
    if path.exists():
        raise ValidationError(f"Marketplace path is not a directory: {path}", field=field, value=raw)
    if value.startswith((".", "/", "~")):
        raise ValidationError(f"Marketplace path does not exist: {path}", field=field, value=raw)
    return GithubRef(value, field=field)


_REF_KEYS = ("tag", "branch", "rev")


def _optional_str(table: dict[str, Any], key: str, alias: str) -> str | None:
    value = table.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f'Dependency "{alias}": {key} must be a non-empty string.',
            field=f"dependencies.{alias}.{key}",
            source="schema",
            value=value,
        )
    return value.strip()


def _reject_unknown(table: dict[str, Any], allowed: set[str], alias: str) -> None:
    unknown = sorted(k for k in table if k not in allowed)
    if unknown:
        raise ValidationError(
            f'Dependency "{alias}" has unknown keys: {", ".join(unknown)}.',
            field=f"dependencies.{alias}",
            source="schema",
        )


def coerce_declaration(raw: Any, *, alias: str, base_dir: str | Path) -> Declaration:
    """Turn one ``[dependencies]`` value from agents.toml into a declaration."""
    field = f"dependencies.{alias}"
    if isinstance(raw, str):
        m = _REGISTRY_RE.match(raw.strip())
        if not m:
            raise ValidationError(
                f'Dependency "{alias}" must be a table or a "name@version" string.',
                field=field,
                source="schema",
                value=raw,
            )
        return RegistryDeclaration(org=m.group(1), name=m.group(2), version=m.group(3))

    if not isinstance(raw, dict):
        raise ValidationError(f'Dependency "{alias}" must be a table.', field=field, source="schema", value=raw)

    if raw.get("type") == "claude-plugin":
        _reject_unknown(raw, {"type", "plugin", "marketplace"}, alias)
        plugin = NonEmptyString(raw.get("plugin"), field=f"{field}.plugin")
        marketplace = parse_marketplace_ref(raw.get("marketplace"), base_dir=base_dir, field=f"{field}.marketplace")
        return build_claude_plugin_declaration(marketplace, plugin)

    if "gh" in raw:
        _reject_unknown(raw, {"gh", "path", *_REF_KEYS}, alias)
        ref = GitRef(**{k: _optional_str(raw, k, alias) for k in _REF_KEYS})
        return GithubDeclaration(
            gh=GithubRef(strip_github_prefix(str(raw["gh"]).strip()), field=f"{field}.gh"),
            ref=ref,
            path=_optional_str(raw, "path", alias),
        )

    if "git" in raw:
        _reject_unknown(raw, {"git", "path", *_REF_KEYS}, alias)
        ref = GitRef(**{k: _optional_str(raw, k, alias) for k in _REF_KEYS})
        return GitDeclaration(
            url=GitUrl(raw["git"], field=f"{field}.git"),
            ref=ref,
            path=_optional_str(raw, "path", alias),
        )

    if "path" in raw:
        _reject_unknown(raw, {"path"}, alias)
        return LocalDeclaration(path=AbsolutePath(raw["path"], field=f"{field}.path", base=base_dir))

    raise ValidationError(
        f'Dependency "{alias}" must declare one of gh, git, path or type = "claude-plugin".',
        field=field,
        source="schema",
    )
