"""Driver records and their document form.

Records are frozen dataclasses; a transition replaces a DriverState rather
than mutating it. `to_document` / `from_document` define the JSON document
written by persistence engines and returned by the HTTP layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from clusterdispatch.utils import as_str_map, as_str_tuple, format_rfc3339, parse_rfc3339


@dataclass(frozen=True)
class Command:
    main_class: str
    arguments: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    class_path_entries: tuple[str, ...] = ()
    library_path_entries: tuple[str, ...] = ()
    java_opts: tuple[str, ...] = ()

    def to_document(self) -> dict[str, Any]:
        return {
            "main_class": self.main_class,
            "arguments": list(self.arguments),
            "environment": dict(self.environment),
            "class_path_entries": list(self.class_path_entries),
            "library_path_entries": list(self.library_path_entries),
            "java_opts": list(self.java_opts),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Command":
        return cls(
            main_class=str(doc.get("main_class", "")),
            arguments=as_str_tuple(doc.get("arguments"), field="command.arguments"),
            environment=as_str_map(doc.get("environment"), field="command.environment"),
            class_path_entries=as_str_tuple(doc.get("class_path_entries"), field="command.class_path_entries"),
            library_path_entries=as_str_tuple(doc.get("library_path_entries"), field="command.library_path_entries"),
            java_opts=as_str_tuple(doc.get("java_opts"), field="command.java_opts"),
        )


@dataclass(frozen=True)
class DriverDescription:
    name: str
    command: Command
    mem_mb: int
    cores: int
    submission_date: datetime
    supervise: bool = False
    jar_url: str = ""
    properties: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "jar_url": self.jar_url,
            "mem_mb": self.mem_mb,
            "cores": self.cores,
            "supervise": self.supervise,
            "command": self.command.to_document(),
            "properties": dict(self.properties),
            "submission_date": format_rfc3339(self.submission_date),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, submission_date: datetime | None = None) -> "DriverDescription":
        """Build a description from its document form.

        `submission_date` is used when the document carries none (fresh
        submissions over HTTP); persisted documents always carry one.
        """
        raw_date = doc.get("submission_date")
        if raw_date is not None:
            date = parse_rfc3339(str(raw_date))
        elif submission_date is not None:
            date = submission_date
        else:
            raise ValueError("submission_date is required")
        return cls(
            name=str(doc.get("name", "")),
            jar_url=str(doc.get("jar_url", "")),
            mem_mb=doc.get("mem_mb"),
            cores=doc.get("cores"),
            supervise=bool(doc.get("supervise", False)),
            command=Command.from_document(doc.get("command") or {}),
            properties=as_str_map(doc.get("properties"), field="properties"),
            submission_date=date,
        )


@dataclass(frozen=True)
class DriverState:
    submission_id: str
    description: DriverDescription
    status: str
    sequence: int
    updated_at: datetime
    retries: int = 0
    last_failure: str | None = None
    next_retry_at: datetime | None = None
    kill_requested: bool = False
    launch_handle: dict[str, str] | None = None

    def evolve(self, **changes: Any) -> "DriverState":
        return replace(self, **changes)

    def to_document(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "description": self.description.to_document(),
            "status": self.status,
            "sequence": self.sequence,
            "updated_at": format_rfc3339(self.updated_at),
            "retries": self.retries,
            "last_failure": self.last_failure,
            "next_retry_at": format_rfc3339(self.next_retry_at) if self.next_retry_at else None,
            "kill_requested": self.kill_requested,
            "launch_handle": dict(self.launch_handle) if self.launch_handle is not None else None,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "DriverState":
        next_retry_at = doc.get("next_retry_at")
        launch_handle = doc.get("launch_handle")
        return cls(
            submission_id=str(doc["submission_id"]),
            description=DriverDescription.from_document(doc["description"]),
            status=str(doc["status"]),
            sequence=int(doc["sequence"]),
            updated_at=parse_rfc3339(str(doc["updated_at"])),
            retries=int(doc.get("retries", 0)),
            last_failure=doc.get("last_failure"),
            next_retry_at=parse_rfc3339(str(next_retry_at)) if next_retry_at else None,
            kill_requested=bool(doc.get("kill_requested", False)),
            launch_handle=as_str_map(launch_handle, field="launch_handle") if launch_handle is not None else None,
        )


@dataclass(frozen=True)
class SchedulerState:
    """Point-in-time view of the registry. Never a source of truth."""

    readiness: str
    queued: tuple[DriverState, ...] = ()
    launched: tuple[DriverState, ...] = ()
    retrying: tuple[DriverState, ...] = ()
    finished: tuple[DriverState, ...] = ()

    def to_document(self) -> dict[str, Any]:
        return {
            "readiness": self.readiness,
            "queued": [d.to_document() for d in self.queued],
            "launched": [d.to_document() for d in self.launched],
            "retrying": [d.to_document() for d in self.retrying],
            "finished": [d.to_document() for d in self.finished],
        }
