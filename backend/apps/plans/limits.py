"""
Resource limit value types.

A plan bounds each countable resource with either a finite maximum or no
maximum at all. ``-1`` is the unlimited sentinel only at the storage and wire
boundary (``Limit.from_raw`` / ``Limit.to_raw``); code in between compares
``Limit`` values, never raw integers.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

UNLIMITED_SENTINEL = -1


class ResourceType(StrEnum):
    """Countable tenant resources guarded by the usage ledger."""

    STUDENTS = "students"
    BATCHES = "batches"
    STAFF = "staff"
    USERS = "users"
    STORAGE_MB = "storage_mb"

    @property
    def limit_key(self) -> str:
        """Key of this resource in a serialized limits mapping, e.g. 'maxStudents'."""
        return LIMIT_KEYS[self]


LIMIT_KEYS: dict[ResourceType, str] = {
    ResourceType.STUDENTS: "maxStudents",
    ResourceType.BATCHES: "maxBatches",
    ResourceType.STAFF: "maxStaff",
    ResourceType.USERS: "maxUsers",
    ResourceType.STORAGE_MB: "maxStorageMB",
}


@dataclass(frozen=True)
class Limit:
    """Either Finite(maximum) or Unlimited (maximum is None)."""

    maximum: int | None

    def __post_init__(self) -> None:
        if self.maximum is not None and self.maximum < 0:
            raise ValueError(f"Finite limit must be non-negative, got {self.maximum}")

    @classmethod
    def finite(cls, maximum: int) -> "Limit":
        return cls(maximum)

    @classmethod
    def unlimited(cls) -> "Limit":
        return cls(None)

    @classmethod
    def from_raw(cls, raw: int) -> "Limit":
        """Parse the storage/wire form where -1 means unlimited."""
        if raw == UNLIMITED_SENTINEL:
            return cls.unlimited()
        if raw < 0:
            raise ValueError(f"Limit must be >= 0 or {UNLIMITED_SENTINEL}, got {raw}")
        return cls.finite(raw)

    @property
    def is_unlimited(self) -> bool:
        return self.maximum is None

    def to_raw(self) -> int:
        return UNLIMITED_SENTINEL if self.maximum is None else self.maximum

    def allows(self, current: int, amount: int = 1) -> bool:
        """True if ``current + amount`` stays within the limit."""
        return self.maximum is None or current + amount <= self.maximum

    def is_exceeded_by(self, current: int) -> bool:
        return self.maximum is not None and current > self.maximum

    def __str__(self) -> str:
        return "unlimited" if self.maximum is None else str(self.maximum)


@dataclass(frozen=True)
class Limits:
    """The full set of per-resource limits granted by a plan."""

    students: Limit
    batches: Limit
    staff: Limit
    users: Limit
    storage_mb: Limit

    def for_resource(self, resource_type: ResourceType | str) -> Limit:
        return getattr(self, ResourceType(resource_type).value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Limits":
        """
        Parse a serialized mapping (``{"maxStudents": 100, ...}``).

        Missing keys are treated as a zero limit.
        """
        return cls(
            **{
                resource.value: Limit.from_raw(int(data.get(resource.limit_key, 0)))
                for resource in ResourceType
            }
        )

    def to_dict(self) -> dict[str, int]:
        return {resource.limit_key: self.for_resource(resource).to_raw() for resource in ResourceType}

    def exceeded_by(self, usage: dict[str, int]) -> list[str]:
        """Resource types whose current usage is above the limit."""
        return [
            resource.value
            for resource in ResourceType
            if self.for_resource(resource).is_exceeded_by(usage.get(resource.value, 0))
        ]
