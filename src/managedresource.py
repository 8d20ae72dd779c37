"""
Managed Resource - desired-state records and their status conditions.

A managed resource is one external object a user wants to exist. The record
carries the kind-specific spec, the provider config it should be reconciled
with, and the observed status: a set of typed conditions plus the external
name that binds the record to the object it created.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import ExternalNameConflict

logger = logging.getLogger(__name__)

FINALIZER = "finalizer.managedresource"
DEFAULT_PROVIDER_CONFIG = "default"


class ConditionType(Enum):
    """Condition types a managed resource reports."""

    READY = "Ready"
    SYNCED = "Synced"


class ConditionReason(Enum):
    """Reasons attached to conditions."""

    AVAILABLE = "Available"
    CREATING = "Creating"
    DELETING = "Deleting"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"


class DeletionPolicy(Enum):
    """What happens to the external object when the record is deleted."""

    DELETE = "Delete"
    ORPHAN = "Orphan"


class IdentityState(Enum):
    """Where a record stands relative to its external object."""

    NEVER_CREATED = "never_created"
    BOUND = "bound"
    ABSENT_REMOTELY = "absent_remotely"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Condition:
    """A single observed condition of a managed resource."""

    type: ConditionType
    status: str
    reason: ConditionReason
    message: str = ""
    last_transition_time: datetime = field(default_factory=_now)

    def equal(self, other: "Condition") -> bool:
        """Compare two conditions, ignoring the transition time."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status,
            "reason": self.reason.value,
            "message": self.message,
            "last_transition_time": self.last_transition_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        transition = data.get("last_transition_time")
        return cls(
            type=ConditionType(data["type"]),
            status=data["status"],
            reason=ConditionReason(data["reason"]),
            message=data.get("message", ""),
            last_transition_time=(
                datetime.fromisoformat(transition) if transition else _now()
            ),
        )


def available() -> Condition:
    """The external object exists and is ready for use."""
    return Condition(ConditionType.READY, "True", ConditionReason.AVAILABLE)


def creating() -> Condition:
    """The external object is being created."""
    return Condition(ConditionType.READY, "False", ConditionReason.CREATING)


def deleting() -> Condition:
    """The external object is being deleted."""
    return Condition(ConditionType.READY, "False", ConditionReason.DELETING)


def reconcile_success() -> Condition:
    return Condition(ConditionType.SYNCED, "True", ConditionReason.RECONCILE_SUCCESS)


def reconcile_error(message: str) -> Condition:
    return Condition(
        ConditionType.SYNCED, "False", ConditionReason.RECONCILE_ERROR, message
    )


@dataclass
class ManagedResource:
    """A desired-state record for one external object."""

    id: int
    name: str
    kind: str
    spec: Dict[str, Any] = field(default_factory=dict)
    provider_config_ref: str = DEFAULT_PROVIDER_CONFIG
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    external_name: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)
    generation: int = 1
    observed_generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deleted: bool = False

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "ManagedResource":
        """Build a record from a parsed database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            spec=row.get("spec") or {},
            provider_config_ref=row.get("provider_config_name")
            or DEFAULT_PROVIDER_CONFIG,
            deletion_policy=DeletionPolicy(
                row.get("deletion_policy") or DeletionPolicy.DELETE.value
            ),
            external_name=row.get("external_name"),
            conditions=[Condition.from_dict(c) for c in row.get("conditions") or []],
            generation=row.get("generation", 1),
            observed_generation=row.get("observed_generation", 0),
            finalizers=list(row.get("finalizers") or []),
            deleted=row.get("deleted_at") is not None,
        )

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_conditions(self, *conditions: Condition) -> None:
        """
        Set conditions, replacing any existing condition of the same type.

        A condition equal to the existing one (ignoring time) keeps the
        existing transition time.
        """
        for new in conditions:
            existing = self.get_condition(new.type)
            if existing is not None and existing.equal(new):
                continue
            self.conditions = [c for c in self.conditions if c.type != new.type]
            self.conditions.append(new)

    def conditions_as_dicts(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.conditions]


def get_external_name(record: ManagedResource) -> Optional[str]:
    """Return the external name bound to the record, if any."""
    return record.external_name or None


def check_external_name(record: ManagedResource, name: str) -> None:
    """
    Check that the record may be bound to name.

    Raises:
        ExternalNameConflict: If the record is already bound to a different
            external object.
    """
    current = get_external_name(record)
    if current is not None and current != name:
        raise ExternalNameConflict(current, name)


def set_external_name(record: ManagedResource, name: str) -> None:
    """Bind the record to an external object. See check_external_name."""
    check_external_name(record, name)
    record.external_name = name


def identity_state(record: ManagedResource, resource_exists: bool) -> IdentityState:
    """
    Classify a record after an observation.

    A record with no external name that is absent remotely was never created.
    A record with an external name that is absent remotely lost its object
    out-of-band and is due for re-creation.
    """
    if resource_exists:
        return IdentityState.BOUND
    if get_external_name(record) is None:
        return IdentityState.NEVER_CREATED
    return IdentityState.ABSENT_REMOTELY
