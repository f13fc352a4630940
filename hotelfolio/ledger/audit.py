"""Append-only audit trail entries."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any

from .money import parse_timestamp, utcnow


@dataclass(frozen=True, slots=True)
class AuditEntry:
    action: str
    description: str
    actor: str
    timestamp: dt.datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "description": self.description,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            action=data["action"],
            description=data["description"],
            actor=data["actor"],
            timestamp=parse_timestamp(data["timestamp"]),
        )


class AuditTrail:
    """Ordered entries that can only grow."""

    __slots__ = ("_entries",)

    def __init__(self, entries: tuple[AuditEntry, ...] | list[AuditEntry] = ()) -> None:
        self._entries: list[AuditEntry] = list(entries)

    def record(self, action: str, description: str, actor: str) -> AuditEntry:
        entry = AuditEntry(action=action, description=description, actor=actor)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(tuple(self._entries))

    def to_list(self) -> list[dict]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(cls, items: list[dict] | None) -> "AuditTrail":
        return cls([AuditEntry.from_dict(item) for item in items or ()])
