"""
Domain models for the issue pipeline.

These dataclasses are the normalized internal representation of tracked
issues, pool workers, notification outcomes and command results. The State
Store persists ``IssueRecord`` as plain JSON via ``to_dict``/``from_dict``;
everything else lives only for the duration of one command invocation.

Example:
    Reading a record back from its stored form::

        record = IssueRecord.from_dict(42, {"state": "assigned", "assigned_worker": "w1"})
        assert record.state is LifecycleState.ASSIGNED
"""

from dataclasses import dataclass, field, fields
from typing import Any

from issue_pipeline.enums import Destination, IssueType, LifecycleState, SenderIdentity

TIMESTAMP_FIELDS = (
    "created",
    "assigned",
    "review_requested",
    "approved",
    "rejected",
    "merged",
    "closed",
)


def branch_for(number: int) -> str:
    """Branch name an issue's work lands on; fixed at creation."""
    return f"issue-{number}"


@dataclass
class IssueRecord:
    """One tracked issue as held by the State Store.

    Unknown keys found in the stored record are kept in ``extra`` and
    written back unchanged, so fields added by newer versions survive a
    round trip through older code.
    """

    number: int
    """Issue number allocated by the Tracker; unique within a project."""

    state: LifecycleState = LifecycleState.CREATED
    """Current lifecycle state."""

    title: str = ""
    url: str = ""
    type: IssueType = IssueType.TASK
    project: str | None = None

    thread: str | None = None
    """Board thread handle, created once at ``create`` and reused."""

    branch: str = ""
    """Derived from the number at creation; never changes."""

    auto_merge: bool = False
    """Whether ``approve`` merges immediately or defers to ``approved``."""

    assigned_worker: str | None = None
    pr: int | None = None
    """Pull request under review. A later ``request-review`` may replace it."""

    pr_url: str | None = None
    rejection_reason: str | None = None
    close_reason: str | None = None

    created: str | None = None
    assigned: str | None = None
    review_requested: str | None = None
    approved: str | None = None
    rejected: str | None = None
    merged: str | None = None
    closed: str | None = None

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, number: int, data: dict[str, Any]) -> "IssueRecord":
        """Build a record from its stored JSON object.

        Args:
            number: Issue number (the store key)
            data: Stored fields

        Returns:
            The parsed record

        Raises:
            ValueError: If ``state`` or ``type`` hold unknown values, or a
                numeric field is not numeric
            TypeError: If ``data`` is not a mapping
        """
        if not isinstance(data, dict):
            raise TypeError(f"record for issue {number} is {type(data).__name__}, not an object")

        known = {f.name for f in fields(cls)} - {"number", "extra"}
        kwargs: dict[str, Any] = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known and k != "number"}

        if "state" in kwargs:
            kwargs["state"] = LifecycleState(kwargs["state"])
        if "type" in kwargs:
            kwargs["type"] = IssueType(kwargs["type"])
        if kwargs.get("pr") is not None:
            kwargs["pr"] = int(kwargs["pr"])
        if "auto_merge" in kwargs:
            kwargs["auto_merge"] = _as_bool(kwargs["auto_merge"])

        return cls(number=int(number), extra=extra, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON form, omitting unset fields."""
        data: dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("number", "extra"):
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, LifecycleState | IssueType):
                value = value.value
            data[f.name] = value
        data.update(self.extra)
        return data

    @property
    def is_active(self) -> bool:
        """True while the assigned worker still owes work on this issue."""
        return self.state.is_active

    def summary_line(self) -> str:
        """One-line listing used by ``status`` and ``list``."""
        worker = f" @{self.assigned_worker}" if self.assigned_worker else ""
        return f"#{self.number} [{self.state.value}] {self.title or 'untitled'}{worker}"


def _as_bool(value: Any) -> bool:
    # Records written by the shell tool stored every value as a string.
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


@dataclass
class Worker:
    """A member of the assignment pool as seen by one command."""

    id: str
    """Board user id; used to @-mention the worker."""

    name: str = ""
    paused: bool = False
    active_count: int = 0
    """Issues assigned to this worker that are not yet merged, approved or closed."""

    last_assigned: str | None = None
    """Most recent assignment timestamp across all of the worker's issues."""

    is_default: bool = False
    """True for the statically configured fallback used when no roster exists."""

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class Delivery:
    """Outcome of one Board side effect performed by the Notification Router."""

    destination: Destination
    identity: SenderIdentity | None
    action: str
    """"post", "archive" or "tag"."""

    ok: bool
    status_code: int | None = None
    error: str | None = None

    def describe(self) -> str:
        target = f"{self.action} {self.destination.value}"
        if self.ok:
            return f"{target}: delivered"
        code = f" (status {self.status_code})" if self.status_code is not None else ""
        return f"{target}: failed{code} {self.error or ''}".rstrip()


@dataclass
class Draft:
    """Issue title and body, either drafted by an agent or from the template."""

    title: str
    body: str
    drafted: bool = True
    """False when the deterministic template was used."""


@dataclass
class DeployResult:
    """Outcome of running the project's deploy steps after a merge."""

    ok: bool
    output: str = ""
    failed_step: str | None = None
    exit_code: int | None = None


@dataclass
class CommandResult:
    """What a pipeline command returns to its caller.

    Commands that change state report the new state and a short summary;
    reporting commands (status, list, workers) carry their rows in ``data``.
    """

    command: str
    summary: str
    issue: int | None = None
    state: LifecycleState | None = None
    record: IssueRecord | None = None
    deliveries: list[Delivery] = field(default_factory=list)
    data: Any = None

    @property
    def failed_deliveries(self) -> list[Delivery]:
        return [d for d in self.deliveries if not d.ok]

    @property
    def warnings(self) -> list[str]:
        return [d.describe() for d in self.failed_deliveries]
