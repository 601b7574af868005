"""Step tree produced by the parser. Every story line maps to one step node."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class SourceLoc:
    line: int
    column: int
    path: Optional[str] = None


@dataclass(frozen=True)
class StabilityRequirement:
    """Decoded form of an event token like ``stabilized_latency_under_200ms_10min``."""
    metric: str
    comparator: str  # "<" or ">"
    comparator_word: str  # under / below / over / above, as written
    threshold: float
    threshold_unit: str
    duration_minutes: float
    duration_ms: int


class Step:
    """Base for step nodes; subclasses are frozen dataclasses with loc last."""


@dataclass(frozen=True)
class UserTask(Step):
    prompt: str
    assignee: Optional[str] = None
    loc: Optional[SourceLoc] = None


@dataclass(frozen=True)
class ServiceTask(Step):
    action: str
    loc: Optional[SourceLoc] = None


@dataclass(frozen=True)
class SendTask(Step):
    channel: str
    to: str
    message: str = ""
    loc: Optional[SourceLoc] = None


@dataclass(frozen=True)
class StopStep(Step):
    reason: Optional[str] = None
    loc: Optional[SourceLoc] = None


@dataclass(frozen=True)
class WaitStep(Step):
    spec: str  # text after "Wait", kept for naming
    delay_ms: Optional[int] = None
    until: Optional[str] = None
    label: Optional[str] = None  # "for <label>" or the remainder after a duration
    loc: Optional[SourceLoc] = None

    @property
    def open_ended(self) -> bool:
        return self.delay_ms is None and self.until is None


@dataclass(frozen=True)
class EventStep(Step):
    event: str
    body: tuple[Step, ...] = ()
    stability: Optional[StabilityRequirement] = None
    loc: Optional[SourceLoc] = None


@dataclass(frozen=True)
class Conditional(Step):
    condition: str
    then: tuple[Step, ...] = ()
    otherwise: Optional[tuple[Step, ...]] = None
    loc: Optional[SourceLoc] = None


# --- Story ---

@dataclass(frozen=True)
class Story:
    name: str
    steps: tuple[Step, ...] = field(default_factory=tuple)
    path: Optional[str] = None
