import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ErrorClass(str, Enum):
    """Failure categories tagged into the learning store."""

    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    ELEMENT_NOT_FOUND = "element_not_found"
    BOT_DETECTION = "bot_detection"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class PriorityTier(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class Stage(str, Enum):
    """States of the per-field extraction machine."""

    TRY_LEARNED = "learned"
    TRY_SEED = "seed"
    TRY_DISCOVERED = "discovered"
    EXHAUSTED = "exhausted"


class FieldStatus(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    OK = "ok"
    BLOCKED = "blocked"
    NAVIGATION_FAILED = "navigation_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExtractionContext:
    """The (site template, field type) slot strategy performance is tracked under."""

    site_template: str
    field_type: str

    @property
    def key(self: "ExtractionContext") -> str:
        return f"{self.site_template}|{self.field_type}"

    @classmethod
    def from_key(cls: type["ExtractionContext"], key: str) -> "ExtractionContext":
        site_template, _, field_type = key.rpartition("|")
        return cls(site_template=site_template, field_type=field_type)


@dataclass
class Candidate:
    """One extraction strategy tracked for success and failure."""

    key: str
    discovered_at: float
    sequence: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_success: float | None = None
    last_failure: float | None = None
    priority_tier: PriorityTier = PriorityTier.NORMAL
    source: str = "learned"
    error_counts: dict[str, int] = field(default_factory=dict)

    @property
    def attempts(self: "Candidate") -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self: "Candidate") -> float:
        if self.attempts == 0:
            return 0.0
        return self.success_count / self.attempts

    @property
    def last_activity(self: "Candidate") -> float:
        """Most recent success or failure, falling back to discovery time."""
        return max(self.last_success or 0.0, self.last_failure or 0.0) or self.discovered_at

    def to_dict(self: "Candidate") -> dict[str, Any]:
        data = asdict(self)
        data["priority_tier"] = self.priority_tier.value
        return data

    @classmethod
    def from_dict(cls: type["Candidate"], data: dict[str, Any]) -> "Candidate":
        return cls(
            key=data["key"],
            discovered_at=data.get("discovered_at", 0.0),
            sequence=data.get("sequence", 0),
            success_count=data.get("success_count", 0),
            failure_count=data.get("failure_count", 0),
            last_success=data.get("last_success"),
            last_failure=data.get("last_failure"),
            priority_tier=PriorityTier(data.get("priority_tier", PriorityTier.NORMAL.value)),
            source=data.get("source", "learned"),
            error_counts=dict(data.get("error_counts", {})),
        )


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of executing one candidate once. Folded into the candidate's counters."""

    context: ExtractionContext
    candidate_key: str
    success: bool
    timestamp: float = field(default_factory=time.time)
    error_class: ErrorClass | None = None
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class BlockEvent:
    domain: str
    timestamp: float
    signature: str


@dataclass
class ExtractionResult:
    field: str
    value: str
    strategy_used: str
    stage: Stage
    quality_contribution: float = 0.0


@dataclass
class FieldOutcome:
    """Per-field status returned at the extractor boundary.

    Not-found is reported here, never raised.
    """

    field: str
    status: FieldStatus
    result: ExtractionResult | None = None
    attempts: int = 0
    error_class: ErrorClass | None = None
    trace: list[dict[str, Any]] = field(default_factory=list)
    block_diagnostics: dict[str, Any] | None = None

    @property
    def succeeded(self: "FieldOutcome") -> bool:
        return self.status == FieldStatus.SUCCESS

    @property
    def blocked(self: "FieldOutcome") -> bool:
        """Whether the page turned into a block page that remediation could not clear."""
        return self.block_diagnostics is not None


@dataclass
class EntityExtraction:
    url: str
    status: SessionStatus
    fields: dict[str, FieldOutcome] = field(default_factory=dict)
    quality_score: float = 0.0
    strategy_trace: list[dict[str, Any]] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)
    item: Any = None

    def values(self: "EntityExtraction") -> dict[str, str | None]:
        """Extracted values keyed by field, None where the field failed."""
        return {name: (outcome.result.value if outcome.result else None) for name, outcome in self.fields.items()}
