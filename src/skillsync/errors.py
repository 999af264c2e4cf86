from __future__ import annotations

from pathlib import Path
from typing import Any


class SkillsyncError(RuntimeError):
    kind = "error"

    @property
    def message(self) -> str:
        return str(self)

    def details(self) -> dict[str, Any]:
        return {"kind": self.kind}


class ValidationError(SkillsyncError):
    kind = "validation"

    def __init__(self, message: str, *, field: str | None = None, source: str = "manual", value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.source = source  # "schema" or "manual"
        self.value = value

    def details(self) -> dict[str, Any]:
        d = super().details()
        if self.field:
            d["field"] = self.field
        d["source"] = self.source
        return d


class ParseError(SkillsyncError):
    kind = "parse"

    def __init__(self, message: str, *, source: str | Path | None = None) -> None:
        super().__init__(message)
        self.source = str(source) if source is not None else None

    def details(self) -> dict[str, Any]:
        d = super().details()
        if self.source:
            d["source"] = self.source
        return d


class DetectionError(SkillsyncError):
    kind = "detection"

    def __init__(self, message: str, *, path: str | Path) -> None:
        super().__init__(message)
        self.path = str(path)

    def details(self) -> dict[str, Any]:
        d = super().details()
        d["path"] = self.path
        return d


class IoError(SkillsyncError):
    kind = "io"

    def __init__(self, message: str, *, path: str | Path, operation: str) -> None:
        super().__init__(message)
        self.path = str(path)
        self.operation = operation

    def details(self) -> dict[str, Any]:
        d = super().details()
        d["path"] = self.path
        d["operation"] = self.operation
        return d


class ConflictError(SkillsyncError):
    kind = "conflict"


class NotFoundError(SkillsyncError):
    kind = "not_found"

    def __init__(self, message: str, *, target: str) -> None:
        super().__init__(message)
        self.target = target

    def details(self) -> dict[str, Any]:
        d = super().details()
        d["target"] = self.target
        return d


class NetworkError(SkillsyncError):
    kind = "network"

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    def details(self) -> dict[str, Any]:
        d = super().details()
        if self.status_code is not None:
            d["status_code"] = self.status_code
        d["retryable"] = self.retryable
        return d


class ReconcileError(IoError):
    """Removal failed part-way; ``removed`` lists what was already gone."""

    def __init__(self, message: str, *, path: str | Path, removed: tuple[str, ...]) -> None:
        super().__init__(message, path=path, operation="remove")
        self.removed = removed

    def details(self) -> dict[str, Any]:
        d = super().details()
        d["removed"] = list(self.removed)
        return d


class InstallError(IoError):
    """Install failed part-way; ``installed`` lists the targets already written."""

    def __init__(self, message: str, *, path: str | Path, operation: str, installed: tuple[str, ...]) -> None:
        super().__init__(message, path=path, operation=operation)
        self.installed = installed

    def details(self) -> dict[str, Any]:
        d = super().details()
        d["installed"] = list(self.installed)
        return d
