from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import frontmatter
import yaml

from .errors import DetectionError, IoError, ValidationError
from .fetch import FetchedPackage
from .manifest import load_manifest
from .refs import AbsolutePath
from .resolve import CanonicalPackage
from .structure import (
    SKILL_FILENAME,
    DetectedStructure,
    ManifestStructure,
    MarketplaceStructure,
    PluginStructure,
    SingleStructure,
    SubdirStructure,
    find_skill_subdirs,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Skill:
    name: str
    source_path: Path


@dataclass(frozen=True)
class ExtractedPackage:
    package: CanonicalPackage
    prefix: str
    skills: tuple[Skill, ...]


def parse_skill_name(contents: str, skill_path: Path) -> str:
    """Read ``name`` from the YAML frontmatter of a SKILL.md."""
    lines = contents.replace("\r\n", "\n").split("\n")
    if not lines or lines[0].strip() != "---":
        raise ValidationError(f"SKILL.md must start with YAML frontmatter ({skill_path}).", field="name")
    if not any(line.strip() == "---" for line in lines[1:]):
        raise ValidationError(f"SKILL.md frontmatter is missing a closing --- ({skill_path}).", field="name")

    try:
        post = frontmatter.loads(contents)
    except (yaml.YAMLError, ValueError) as e:
        raise ValidationError(f"Invalid SKILL.md frontmatter in {skill_path}: {e}", field="name") from e

    name = (post.metadata or {}).get("name")
    if name is None:
        raise ValidationError(f"SKILL.md frontmatter must define name ({skill_path}).", field="name")
    if not isinstance(name, str):
        raise ValidationError(f"SKILL.md name must be a string ({skill_path}).", field="name")
    if "\n" in name.strip():
        raise ValidationError(f"SKILL.md name must be a single line ({skill_path}).", field="name")
    name = name.strip()
    if not name:
        raise ValidationError(f"Skill name must not be empty ({skill_path}).", field="name")
    return name


def load_skill(skill_dir: Path) -> Skill:
    skill_path = skill_dir / SKILL_FILENAME
    try:
        contents = skill_path.read_text(encoding="utf-8")
    except OSError as e:
        raise IoError(f"Unable to read {skill_path}: {e}", path=skill_path, operation="read") from e
    return Skill(name=parse_skill_name(contents, skill_path), source_path=skill_dir)


def build_skill_list(skill_dirs: tuple[Path, ...] | list[Path]) -> tuple[Skill, ...]:
    skills: list[Skill] = []
    seen: set[str] = set()
    for skill_dir in skill_dirs:
        skill = load_skill(skill_dir)
        if skill.name in seen:
            raise ValidationError(f'Duplicate skill name "{skill.name}" found in {skill_dir}.', field="name")
        seen.add(skill.name)
        skills.append(skill)
    return tuple(skills)


def discover_skill_dirs(root: Path) -> tuple[Path, ...]:
    if not root.exists():
        raise DetectionError(f"Skills directory not found: {root}", path=root)
    if not root.is_dir():
        raise DetectionError(f"Expected directory at {root}.", path=root)
    dirs = find_skill_subdirs(root)
    if not dirs:
        raise DetectionError(f"No skills found in {root}.", path=root)
    return dirs


def skill_dirs_for(structure: DetectedStructure) -> tuple[Path, ...]:
    if isinstance(structure, ManifestStructure):
        manifest = load_manifest(AbsolutePath(str(structure.manifest_path)))
        if manifest.skills_export is None:
            raise ValidationError(
                f"Skill auto-discovery is disabled in {structure.manifest_path}.", field="exports.auto_discover.skills"
            )
        skills_root = AbsolutePath(manifest.skills_export, field="exports.auto_discover.skills", base=structure.root)
        return discover_skill_dirs(skills_root.as_path())
    if isinstance(structure, PluginStructure):
        if structure.skills_dir is None:
            raise DetectionError(f"Plugin at {structure.root} has no skills directory.", path=structure.root)
        return discover_skill_dirs(structure.skills_dir)
    if isinstance(structure, MarketplaceStructure):
        raise ValidationError(
            "Marketplace packages cannot be installed as skills. Add a plugin from the marketplace instead.",
            field="marketplace",
        )
    if isinstance(structure, SubdirStructure):
        return structure.skill_dirs
    if isinstance(structure, SingleStructure):
        if not (structure.root / SKILL_FILENAME).is_file():
            raise DetectionError(f"No {SKILL_FILENAME} found in {structure.root}.", path=structure.root)
        return (structure.root,)
    raise AssertionError("unreachable")


def extract_skills(fetched: FetchedPackage, structure: DetectedStructure) -> ExtractedPackage:
    skills = build_skill_list(skill_dirs_for(structure))
    logger.debug("extracted %d skills from %s", len(skills), fetched.package.alias)
    return ExtractedPackage(package=fetched.package, prefix=fetched.package.prefix, skills=skills)
