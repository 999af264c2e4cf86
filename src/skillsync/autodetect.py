from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union
from urllib.parse import urlsplit

from .errors import ValidationError
from .extract import build_skill_list, skill_dirs_for
from .fetch import Fetcher, github_clone_url, normalize_sparse_path
from .marketplace import parse_marketplace_json
from .refs import AbsolutePath, GitRef
from .structure import MarketplaceStructure, detect_structure, structure_kind

logger = logging.getLogger(__name__)

_SSH_RE = re.compile(r"^git@([^:]+):(.+)$")

UNSUPPORTED_MESSAGE = "Unsupported URL format. Use a GitHub URL, git@host:path, or https://host/repo.git."


@dataclass(frozen=True)
class GithubSource:
    slug: str
    type: Literal["github"] = "github"

    def clone_url(self) -> str:
        return github_clone_url(self.slug)


@dataclass(frozen=True)
class GitSource:
    url: str
    type: Literal["git"] = "git"

    def clone_url(self) -> str:
        return self.url


AutoDetectSource = Union[GithubSource, GitSource]


def _strip_git(value: str) -> str:
    return value[: -len(".git")] if value.endswith(".git") else value


def _github_slug(path: str) -> str | None:
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) != 2:
        return None
    owner, repo = parts[0], _strip_git(parts[1])
    if not owner or not repo:
        return None
    return f"{owner}/{repo}"


def parse_auto_detect_url(raw: str) -> AutoDetectSource:
    """Classify a user-supplied URL as a GitHub slug or a generic git URL.

    Pure string matching; no network access.
    """
    trimmed = raw.strip().rstrip("/")
    if not trimmed:
        raise ValidationError("URL is required for auto-detect.", field="url")

    if trimmed.startswith("https://"):
        parts = urlsplit(trimmed)
        if parts.hostname == "github.com":
            slug = _github_slug(parts.path)
            if slug is None:
                raise ValidationError(
                    "GitHub URLs must be in the form https://github.com/owner/repo. "
                    "Extra path segments are not supported; use --tag, --branch, or --rev instead.",
                    field="url",
                    value=raw,
                )
            return GithubSource(slug=slug)
        if parts.path.endswith(".git"):
            return GitSource(url=_strip_git(trimmed))

    m = _SSH_RE.match(trimmed)
    if m:
        host, path = m.group(1), m.group(2)
        if host == "github.com":
            slug = _github_slug(path)
            if slug is None:
                raise ValidationError(
                    "GitHub SSH URLs must be in the form git@github.com:owner/repo.git.", field="url", value=raw
                )
            return GithubSource(slug=slug)
        return GitSource(url=_strip_git(f"git@{host}:{path}"))

    raise ValidationError(UNSUPPORTED_MESSAGE, field="url", value=raw)


@dataclass(frozen=True)
class AutoDetectResult:
    source: AutoDetectSource
    method: str
    skills: tuple[str, ...] = ()
    marketplace_name: str | None = None
    marketplace_plugins: tuple[str, ...] = ()


def auto_detect_package(
    raw: str,
    *,
    fetcher: Fetcher,
    path: str | None = None,
    ref: GitRef = GitRef(),
) -> AutoDetectResult:
    """Fetch the source behind ``raw`` and describe what would be installed."""
    source = parse_auto_detect_url(raw)
    sparse = normalize_sparse_path(path)
    repo = fetcher.fetch_repository(source.clone_url(), label="detect", ref=ref)
    root: Path = repo.joinpath(*sparse.split("/")) if sparse else repo
    structure = detect_structure(AbsolutePath(str(root)))
    method = structure_kind(structure)
    logger.debug("auto-detected %s as %s", raw, method)

    if isinstance(structure, MarketplaceStructure):
        manifest = parse_marketplace_json(
            structure.marketplace_json.read_text(encoding="utf-8"), structure.marketplace_json
        )
        return AutoDetectResult(
            source=source,
            method=method,
            marketplace_name=manifest.name,
            marketplace_plugins=tuple(p.name for p in manifest.plugins),
        )

    skills = build_skill_list(skill_dirs_for(structure))
    return AutoDetectResult(source=source, method=method, skills=tuple(s.name for s in skills))
