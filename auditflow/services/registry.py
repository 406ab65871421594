"""Closed set of job kinds and the handler table that serves them."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from ..core.exceptions import UnknownJobKind
from ..models.job import JobDirection

RowHandler = Callable[[int, dict[str, Any]], None]
ExportResult = list[dict[str, Any]] | dict[str, list[dict[str, Any]]]
ExportHandler = Callable[[int, dict[str, Any]], ExportResult]


class JobKind(str, Enum):
    """Every job kind the pipeline can run, as ``<direction>:<entity>``."""

    IMPORT_INVENTORY = "import:inventory"
    IMPORT_NETWORK_DEVICES = "import:network_devices"
    IMPORT_VULNERABILITIES = "import:vulnerabilities"
    EXPORT_INVENTORY = "export:inventory"
    EXPORT_NETWORK_DEVICES = "export:network_devices"
    EXPORT_VULNERABILITIES = "export:vulnerabilities"
    EXPORT_FULL_AUDIT = "export:full_audit"

    @property
    def direction(self) -> JobDirection:
        return JobDirection(self.value.split(":", 1)[0])

    @property
    def entity(self) -> str:
        return self.value.split(":", 1)[1]

    @property
    def is_composite(self) -> bool:
        return self is JobKind.EXPORT_FULL_AUDIT

    @classmethod
    def parse(
        cls, value: "JobKind | str", direction: JobDirection | str | None = None
    ) -> "JobKind":
        """Resolve ``value`` (a full kind or a bare entity name) for ``direction``.

        Raises :class:`UnknownJobKind` when no such kind exists or when the kind
        belongs to the other direction.
        """

        expected: JobDirection | None = None
        if direction is not None:
            try:
                expected = JobDirection(str(getattr(direction, "value", direction)).lower())
            except ValueError as exc:
                raise UnknownJobKind(str(value), details={"direction": str(direction)}) from exc

        if isinstance(value, JobKind):
            kind = value
        else:
            raw = str(value or "").strip().lower()
            if ":" not in raw and expected is not None:
                raw = f"{expected.value}:{raw}"
            try:
                kind = cls(raw)
            except ValueError as exc:
                raise UnknownJobKind(str(value)) from exc
        if expected is not None and kind.direction is not expected:
            raise UnknownJobKind(str(value), details={"direction": expected.value})
        return kind


class HandlerRegistry:
    """Maps every :class:`JobKind` to its handler.

    The table is validated at construction: each import kind needs a row
    handler and each export kind an export handler, so a missing entry is a
    startup error rather than a failure discovered mid-job.
    """

    def __init__(
        self,
        import_handlers: Mapping[JobKind, RowHandler],
        export_handlers: Mapping[JobKind, ExportHandler],
        *,
        require_all: bool = True,
    ) -> None:
        self._imports = dict(import_handlers)
        self._exports = dict(export_handlers)

        misplaced = [kind.value for kind in self._imports if kind.direction is not JobDirection.IMPORT]
        misplaced += [kind.value for kind in self._exports if kind.direction is not JobDirection.EXPORT]
        if misplaced:
            raise ValueError(f"Handlers registered for the wrong direction: {sorted(misplaced)}")

        if require_all:
            missing = [
                kind.value
                for kind in JobKind
                if kind not in self._imports and kind not in self._exports
            ]
            if missing:
                raise ValueError(f"No handler registered for job kinds: {sorted(missing)}")

    def supports(self, kind: JobKind | str) -> bool:
        try:
            resolved = JobKind.parse(kind)
        except UnknownJobKind:
            return False
        return resolved in self._imports or resolved in self._exports

    def kinds(self) -> list[JobKind]:
        return [kind for kind in JobKind if kind in self._imports or kind in self._exports]

    def resolve_import(self, kind: JobKind | str) -> RowHandler:
        resolved = JobKind.parse(kind, JobDirection.IMPORT)
        try:
            return self._imports[resolved]
        except KeyError as exc:
            raise UnknownJobKind(resolved.value) from exc

    def resolve_export(self, kind: JobKind | str) -> ExportHandler:
        resolved = JobKind.parse(kind, JobDirection.EXPORT)
        try:
            return self._exports[resolved]
        except KeyError as exc:
            raise UnknownJobKind(resolved.value) from exc


__all__ = ["ExportHandler", "ExportResult", "HandlerRegistry", "JobKind", "RowHandler"]
