from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .errors import DetectionError, IoError
from .refs import AbsolutePath

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "agents.toml"
SKILL_FILENAME = "SKILL.md"
PLUGIN_DIR = ".claude-plugin"
PLUGIN_FILENAME = "plugin.json"
MARKETPLACE_FILENAME = "marketplace.json"
PLUGIN_SKILLS_DIR = "skills"

# Never treated as skill directories when scanning children.
IGNORED_DIRS = frozenset(
    {
        ".git",
        ".next",
        ".turbo",
        ".vscode",
        ".idea",
        ".cache",
        "__pycache__",
        "build",
        "coverage",
        "dist",
        "node_modules",
        "vendor",
        PLUGIN_DIR,
    }
)


@dataclass(frozen=True)
class ManifestStructure:
    root: Path
    manifest_path: Path


@dataclass(frozen=True)
class PluginStructure:
    root: Path
    plugin_json: Path
    skills_dir: Path | None


@dataclass(frozen=True)
class MarketplaceStructure:
    root: Path
    marketplace_json: Path


@dataclass(frozen=True)
class SubdirStructure:
    root: Path
    skill_dirs: tuple[Path, ...]


@dataclass(frozen=True)
class SingleStructure:
    root: Path


DetectedStructure = Union[ManifestStructure, PluginStructure, MarketplaceStructure, SubdirStructure, SingleStructure]


def structure_kind(structure: DetectedStructure) -> str:
    if isinstance(structure, ManifestStructure):
        return "manifest"
    if isinstance(structure, PluginStructure):
        return "plugin"
    if isinstance(structure, MarketplaceStructure):
        return "marketplace"
    if isinstance(structure, SubdirStructure):
        return "subdir"
    if isinstance(structure, SingleStructure):
        return "single"
    raise AssertionError("unreachable")


def _probe(path: Path, *, want_dir: bool) -> bool:
    try:
        return path.is_dir() if want_dir else path.is_file()
    except OSError as e:
        raise IoError(f"Unable to inspect {path}: {e}", path=path, operation="stat") from e


def find_skill_subdirs(root: Path) -> tuple[Path, ...]:
    try:
        children = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise IoError(f"Unable to list {root}: {e}", path=root, operation="readdir") from e
    found: list[Path] = []
    for child in children:
        if child.name in IGNORED_DIRS or not _probe(child, want_dir=True):
            continue
        if _probe(child / SKILL_FILENAME, want_dir=False):
            found.append(child)
    return tuple(found)


def detect_structure(path: AbsolutePath) -> DetectedStructure:
    """Classify the directory at ``path``.

    Markers are probed in a fixed order (manifest, plugin, marketplace,
    subdir) and the first hit wins; a directory with none of them is a
    single skill.
    """
    root = path.as_path()
    try:
        exists = root.exists()
    except OSError as e:
        raise IoError(f"Unable to inspect {root}: {e}", path=root, operation="stat") from e
    if not exists:
        raise DetectionError(f"Package path does not exist: {root}", path=root)
    if not _probe(root, want_dir=True):
        raise DetectionError(f"Package path is not a directory: {root}", path=root)

    manifest_path = root / MANIFEST_FILENAME
    if _probe(manifest_path, want_dir=False):
        logger.debug("detected manifest at %s", root)
        return ManifestStructure(root=root, manifest_path=manifest_path)

    plugin_dir = root / PLUGIN_DIR
    if _probe(plugin_dir, want_dir=True):
        plugin_json = plugin_dir / PLUGIN_FILENAME
        if _probe(plugin_json, want_dir=False):
            skills_dir = root / PLUGIN_SKILLS_DIR
            logger.debug("detected plugin at %s", root)
            return PluginStructure(
                root=root,
                plugin_json=plugin_json,
                skills_dir=skills_dir if _probe(skills_dir, want_dir=True) else None,
            )
        marketplace_json = plugin_dir / MARKETPLACE_FILENAME
        if _probe(marketplace_json, want_dir=False):
            logger.debug("detected marketplace at %s", root)
            return MarketplaceStructure(root=root, marketplace_json=marketplace_json)
        raise DetectionError(
            f"Found {PLUGIN_DIR} without {PLUGIN_FILENAME} or {MARKETPLACE_FILENAME} in {root}.",
            path=root,
        )

    skill_dirs = find_skill_subdirs(root)
    if skill_dirs:
        logger.debug("detected %d skill subdirectories at %s", len(skill_dirs), root)
        return SubdirStructure(root=root, skill_dirs=skill_dirs)

    return SingleStructure(root=root)
