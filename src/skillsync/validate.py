from __future__ import annotations

from .errors import ConflictError, ValidationError
from .extract import ExtractedPackage


def validate_extracted_packages(packages: list[ExtractedPackage]) -> None:
    """Check prefixes, skill names and install targets before anything is written.

    ``prefix-skill`` must be unique across every package of the run, not just
    within one package: two packages may never install to the same name.
    """
    seen: set[str] = set()
    for pkg in packages:
        prefix = pkg.prefix.strip()
        if not prefix:
            raise ValidationError("Package prefix cannot be empty.", field="prefix")
        if not pkg.skills:
            raise ValidationError(f'Package "{prefix}" has no skills to install.', field="skills")
        for skill in pkg.skills:
            name = skill.name.strip()
            if not name:
                raise ValidationError(f'Package "{prefix}" has a skill with an empty name.', field="skills.name")
            target = f"{prefix}-{name}"
            if target in seen:
                raise ConflictError(f"Duplicate skill target detected: {target}")
            seen.add(target)
