from __future__ import annotations

import hashlib
import logging
import posixpath
import re
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from .errors import IoError, NetworkError, NotFoundError, ValidationError
from .refs import (
    AbsolutePath,
    ClaudePluginDeclaration,
    GitDeclaration,
    GithubDeclaration,
    GitRef,
    LocalDeclaration,
    RegistryDeclaration,
)
from .resolve import CanonicalPackage

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class GitCommandError(IoError):
    """A git command exited non-zero; ``path`` is the repository it ran against."""

    def __init__(self, message: str, *, path: str | Path, args: list[str], stderr: str) -> None:
        super().__init__(message, path=path, operation="git")
        self.git_args = args
        self.stderr = stderr

    def details(self) -> dict[str, Any]:
        d = super().details()
        if self.stderr:
            d["stderr"] = self.stderr
        return d


def _command_path(args: list[str], executable: str) -> str:
    if len(args) > 1 and args[0] == "-C":
        return args[1]
    if args and args[0] == "clone":
        return args[-1]
    return executable


class GitRunner:
    def __init__(
        self,
        *,
        executable: str = "git",
        clone_retries: int = 1,
        backoff_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executable = executable
        self.clone_retries = clone_retries
        self.backoff_s = backoff_s
        self._sleep = sleep

    def run(self, args: list[str]) -> str:
        cmd = [self.executable, *args]
        logger.debug("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as e:
            raise IoError(f"git executable not found: {self.executable}", path=self.executable, operation="exec") from e
        except OSError as e:
            raise IoError(f"Unable to run git: {e}", path=self.executable, operation="exec") from e
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise GitCommandError(
                f"git {' '.join(args)} failed: {stderr or proc.returncode}",
                path=_command_path(args, self.executable),
                args=args,
                stderr=stderr,
            )
        return proc.stdout

    def clone(self, url: str, dest: Path, *, sparse: bool) -> None:
        args = ["clone", "--depth", "1"]
        if sparse:
            args += ["--filter=blob:none", "--sparse"]
        args += [url, str(dest)]
        attempts = self.clone_retries + 1
        last: GitCommandError | None = None
        for attempt in range(attempts):
            if attempt:
                self._sleep(self.backoff_s * (2 ** (attempt - 1)))
                shutil.rmtree(dest, ignore_errors=True)
            try:
                self.run(args)
                return
            except GitCommandError as e:
                logger.warning("clone of %s failed (attempt %d/%d): %s", url, attempt + 1, attempts, e.stderr)
                last = e
        assert last is not None
        raise NetworkError(f"Unable to clone {url}: {last.stderr or last}", retryable=True) from last

    def _fetch_or_deepen(self, repo: Path, *refspec: str) -> None:
        try:
            self.run(["-C", str(repo), "fetch", "--depth", "1", "origin", *refspec])
        except GitCommandError:
            self.run(["-C", str(repo), "fetch", "--depth", "50", "origin"])

    def checkout(self, repo: Path, ref: GitRef) -> None:
        if ref.tag:
            self._fetch_or_deepen(repo, "tag", ref.tag)
            self.run(["-C", str(repo), "checkout", "--detach", f"tags/{ref.tag}"])
        elif ref.branch:
            self._fetch_or_deepen(repo, ref.branch)
            self.run(["-C", str(repo), "checkout", "-B", ref.branch, f"origin/{ref.branch}"])
        elif ref.rev:
            self._fetch_or_deepen(repo, ref.rev)
            try:
                self.run(["-C", str(repo), "checkout", "--detach", ref.rev])
            except GitCommandError:
                self.run(["-C", str(repo), "fetch", "--depth", "50", "origin"])
                self.run(["-C", str(repo), "checkout", "--detach", ref.rev])

    def sparse_checkout(self, repo: Path, paths: list[str]) -> None:
        self.run(["-C", str(repo), "sparse-checkout", "init", "--cone"])
        self.run(["-C", str(repo), "sparse-checkout", "set", *paths])


def normalize_sparse_path(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError("Package path cannot be empty.", field="path")
    cleaned = trimmed.replace("\\", "/")
    if cleaned.startswith("/"):
        raise ValidationError("Package path must be relative.", field="path", value=value)
    if any(seg == ".." for seg in cleaned.split("/")):
        raise ValidationError("Package path must not escape the repository.", field="path", value=value)
    normalized = re.sub(r"^\./+", "", posixpath.normpath(cleaned))
    if not normalized or normalized == ".":
        return None
    return normalized


def repo_key(kind: str, identity: str, ref: GitRef) -> str:
    ref_part = f"{ref.kind}:{ref.value}" if ref.kind else "default"
    return f"{kind}:{identity}:{ref_part}"


def repo_dir(temp_root: Path, key: str, alias: str) -> Path:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    safe = re.sub(r"[^a-z0-9._-]+", "-", alias.strip().lower()).strip("-")
    return temp_root / (f"{safe}-{digest}" if safe else digest)


def github_clone_url(slug: str) -> str:
    return f"https://github.com/{slug}.git"


@dataclass(frozen=True)
class FetchedPackage:
    package: CanonicalPackage
    root: AbsolutePath
    repo_path: Path | None = None


@dataclass
class _RepoGroup:
    key: str
    url: str
    ref: GitRef
    alias: str
    members: list[tuple[int, str | None]] = field(default_factory=list)

    @property
    def sparse_paths(self) -> list[str] | None:
        paths = [p for _, p in self.members]
        if any(p is None for p in paths):
            return None
        return sorted(set(p for p in paths if p))


class Fetcher(Protocol):
    def fetch_all(self, packages: list[CanonicalPackage]) -> list[FetchedPackage]:
        ...

    def fetch_repository(self, url: str, *, label: str, ref: GitRef = ...) -> Path:
        ...


class PackageFetcher:
    """Materializes canonical packages on disk.

    Local packages are used in place. Remote ones are cloned under
    ``temp_root``; packages that share a repository and ref share one clone.
    """

    def __init__(self, *, temp_root: Path, git: GitRunner | None = None, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self.temp_root = temp_root
        self.git = git or GitRunner()
        self.max_workers = max(1, max_workers)

    def _clone(self, url: str, dest: Path, *, ref: GitRef, sparse_paths: list[str] | None) -> Path:
        if dest.exists():
            return dest
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.git.clone(url, dest, sparse=bool(sparse_paths))
        if sparse_paths:
            self.git.sparse_checkout(dest, sparse_paths)
        self.git.checkout(dest, ref)
        logger.info("fetched %s (%s) into %s", url, ref.describe(), dest)
        return dest

    def fetch_repository(self, url: str, *, label: str, ref: GitRef = GitRef()) -> Path:
        dest = repo_dir(self.temp_root, repo_key("git", url, ref), label)
        return self._clone(url, dest, ref=ref, sparse_paths=None)

    def fetch_all(self, packages: list[CanonicalPackage]) -> list[FetchedPackage]:
        results: list[FetchedPackage | None] = [None] * len(packages)
        groups: dict[str, _RepoGroup] = {}

        for index, pkg in enumerate(packages):
            decl = pkg.declaration
            if isinstance(decl, LocalDeclaration):
                results[index] = _fetch_local(pkg, decl)
            elif isinstance(decl, (GithubDeclaration, GitDeclaration)):
                if isinstance(decl, GithubDeclaration):
                    kind, identity, url = "github", decl.gh.unwrap(), github_clone_url(decl.gh.unwrap())
                else:
                    kind, identity, url = "git", decl.url.unwrap(), decl.url.unwrap()
                key = repo_key(kind, identity, decl.ref)
                group = groups.setdefault(key, _RepoGroup(key=key, url=url, ref=decl.ref, alias=pkg.alias))
                group.members.append((index, normalize_sparse_path(decl.path)))
            elif isinstance(decl, RegistryDeclaration):
                raise ValidationError(
                    f'Registry packages are not supported yet ("{pkg.alias}").',
                    field=f"dependencies.{pkg.alias}",
                )
            elif isinstance(decl, ClaudePluginDeclaration):
                raise NotFoundError(
                    f'Plugin "{decl.plugin.unwrap()}" was not resolved through its marketplace.', target=pkg.alias
                )
            else:
                raise AssertionError("unreachable")

        ordered = list(groups.values())
        if ordered:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ordered))) as pool:
                futures = [
                    pool.submit(
                        self._clone,
                        g.url,
                        repo_dir(self.temp_root, g.key, g.alias),
                        ref=g.ref,
                        sparse_paths=g.sparse_paths,
                    )
                    for g in ordered
                ]
                # First failure in declaration order wins.
                repo_paths = [f.result() for f in futures]

            for group, repo_path in zip(ordered, repo_paths):
                for index, sparse in group.members:
                    root = repo_path.joinpath(*sparse.split("/")) if sparse else repo_path
                    if not root.is_dir():
                        raise NotFoundError(
                            f'Package path "{sparse}" does not exist in {group.url}.', target=packages[index].alias
                        )
                    results[index] = FetchedPackage(
                        package=packages[index], root=AbsolutePath(str(root)), repo_path=repo_path
                    )

        return [r for r in results if r is not None]


def _fetch_local(pkg: CanonicalPackage, decl: LocalDeclaration) -> FetchedPackage:
    path = decl.path.as_path()
    try:
        exists = path.exists()
        is_dir = path.is_dir()
    except OSError as e:
        raise IoError(f"Unable to access {path}: {e}", path=path, operation="stat") from e
    if not exists:
        raise NotFoundError(f"Local package path does not exist: {path}", target=pkg.alias)
    if not is_dir:
        raise IoError(f"Local package path is not a directory: {path}", path=path, operation="stat")
    return FetchedPackage(package=pkg, root=decl.path)
