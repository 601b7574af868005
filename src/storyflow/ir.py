"""IR (Intermediate Representation) definitions. Steps compile to a flat, id-linked, JSON-serializable state graph."""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

from storyflow.errors import GraphError
from storyflow.forms import FormDefinition


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None; absent optionals are omitted from IR JSON."""
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class Retry:
    max: int
    backoff_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({"max": self.max, "backoffMs": self.backoff_ms})


@dataclass(frozen=True)
class ChoiceBranch:
    cond: str
    next: str


@dataclass(frozen=True)
class CaseBranch:
    value: str
    next: str


@dataclass(frozen=True)
class TaskState:
    id: str
    action: str
    next: Optional[str] = None
    retry: Optional[Retry] = None
    timeout: Optional[int] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "task"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "action": self.action,
            "retry": self.retry.to_dict() if self.retry else None,
            "timeout": self.timeout,
            "next": self.next,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        return [("next", self.next)] if self.next else []


@dataclass(frozen=True)
class UserTaskState:
    id: str
    prompt: str
    assignee: Optional[str] = None
    form: Optional[FormDefinition] = None
    next: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "userTask"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "prompt": self.prompt,
            "assignee": self.assignee,
            "form": self.form.to_dict() if self.form else None,
            "next": self.next,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        return [("next", self.next)] if self.next else []


@dataclass(frozen=True)
class SendState:
    id: str
    channel: str
    to: str = ""
    message: str = ""
    next: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "send"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "channel": self.channel,
            "to": self.to,
            "message": self.message,
            "next": self.next,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        return [("next", self.next)] if self.next else []


@dataclass(frozen=True)
class ReceiveState:
    id: str
    event: str
    next: Optional[str] = None
    plain: bool = False  # a wait on a named condition, no message definition
    lane: Optional[str] = None
    kind: ClassVar[str] = "receive"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "event": self.event,
            "plain": True if self.plain else None,
            "next": self.next,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        return [("next", self.next)] if self.next else []


@dataclass(frozen=True)
class ChoiceState:
    id: str
    branches: tuple[ChoiceBranch, ...] = ()
    otherwise: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "choice"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "branches": [{"cond": b.cond, "next": b.next} for b in self.branches],
            "otherwise": self.otherwise,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        refs = [("branch target", b.next) for b in self.branches]
        if self.otherwise:
            refs.append(("otherwise", self.otherwise))
        return refs


@dataclass(frozen=True)
class CaseState:
    id: str
    expression: str
    cases: tuple[CaseBranch, ...] = ()
    default: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "case"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "expression": self.expression,
            "cases": [{"value": c.value, "next": c.next} for c in self.cases],
            "default": self.default,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        refs = [("case target", c.next) for c in self.cases]
        if self.default:
            refs.append(("default", self.default))
        return refs


@dataclass(frozen=True)
class ParallelState:
    id: str
    branches: tuple[str, ...]
    join: str
    lane: Optional[str] = None
    kind: ClassVar[str] = "parallel"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "branches": list(self.branches),
            "join": self.join,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        # join is checked separately so its error names both ends
        return [("branch target", b) for b in self.branches]


@dataclass(frozen=True)
class WaitState:
    id: str
    name: Optional[str] = None
    until: Optional[str] = None
    delay_ms: Optional[int] = None
    attached_to: Optional[str] = None
    interrupting: Optional[bool] = None
    next: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "wait"

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "until": self.until,
            "delayMs": self.delay_ms,
            "attachedTo": self.attached_to,
            "interrupting": self.interrupting,
            "next": self.next,
            "lane": self.lane,
        })

    def references(self) -> list[tuple[str, str]]:
        refs = []
        if self.next:
            refs.append(("next", self.next))
        if self.attached_to:
            refs.append(("attachment host", self.attached_to))
        return refs


@dataclass(frozen=True)
class StopState:
    id: str
    reason: Optional[str] = None
    lane: Optional[str] = None
    kind: ClassVar[str] = "stop"

    def to_dict(self) -> dict[str, Any]:
        return _compact({"id": self.id, "kind": self.kind, "reason": self.reason, "lane": self.lane})

    def references(self) -> list[tuple[str, str]]:
        return []


IRState = Union[
    TaskState,
    UserTaskState,
    SendState,
    ReceiveState,
    ChoiceState,
    CaseState,
    ParallelState,
    WaitState,
    StopState,
]


@dataclass(frozen=True)
class LaneHint:
    id: str
    name: str
    kind: Optional[str] = None  # human | external | system | control

    def to_dict(self) -> dict[str, Any]:
        return _compact({"id": self.id, "name": self.name, "kind": self.kind})


@dataclass(frozen=True)
class IRMetadata:
    executable: Optional[bool] = None
    lanes: tuple[LaneHint, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "executable": self.executable,
            "lanes": [lane.to_dict() for lane in self.lanes] if self.lanes else None,
        })


@dataclass(frozen=True)
class IR:
    name: str
    start: str
    states: tuple[IRState, ...] = field(default_factory=tuple)
    vars: tuple[str, ...] = ()
    metadata: Optional[IRMetadata] = None

    def state_map(self) -> dict[str, IRState]:
        return {s.id: s for s in self.states}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "start": self.start,
            "states": [s.to_dict() for s in self.states],
        }
        if self.vars:
            out["vars"] = list(self.vars)
        if self.metadata is not None:
            out["metadata"] = self.metadata.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IR":
        """Load an IR document. Raises GraphError when the document is malformed."""
        if not isinstance(data, dict):
            raise GraphError("IR document must be a JSON object")
        try:
            raw_states = data["states"]
            name = data.get("name") or "Untitled"
            start = data["start"]
        except KeyError as e:
            raise GraphError(f"IR document is missing {e.args[0]!r}") from e
        if not isinstance(raw_states, list):
            raise GraphError(f"IR document 'states' must be a list, got {type(raw_states).__name__}")
        if not isinstance(start, str):
            raise GraphError(f"IR document 'start' must be a string, got {type(start).__name__}")
        states = tuple(_state_from_dict(s) for s in raw_states)
        raw_vars = data.get("vars") or ()
        if not isinstance(raw_vars, (list, tuple, dict)):
            raise GraphError(f"IR document 'vars' must be a list, got {type(raw_vars).__name__}")
        meta = data.get("metadata")
        if meta is not None and not isinstance(meta, dict):
            raise GraphError(f"IR document 'metadata' must be an object, got {type(meta).__name__}")
        return cls(
            name=str(name),
            start=start,
            states=states,
            vars=tuple(str(v) for v in (raw_vars.keys() if isinstance(raw_vars, dict) else raw_vars)),
            metadata=_metadata_from_dict(meta) if meta is not None else None,
        )


def _metadata_from_dict(data: dict[str, Any]) -> IRMetadata:
    try:
        lanes = tuple(
            LaneHint(id=lane["id"], name=lane.get("name", lane["id"]), kind=lane.get("kind"))
            for lane in data.get("lanes") or ()
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise GraphError(f"IR metadata has a malformed lane: {e}") from e
    return IRMetadata(executable=data.get("executable"), lanes=lanes)


def _number(data: dict[str, Any], key: str, state_id: str) -> Optional[Union[int, float]]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GraphError(
            f'State "{state_id}" field {key!r} must be a number, got {type(value).__name__}',
            state_id=state_id,
        )
    return value


def _mapping(data: dict[str, Any], key: str, state_id: str) -> Optional[dict[str, Any]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise GraphError(
            f'State "{state_id}" field {key!r} must be an object, got {type(value).__name__}',
            state_id=state_id,
        )
    return value


def _state_from_dict(data: dict[str, Any]) -> IRState:
    if not isinstance(data, dict):
        raise GraphError(f"IR state must be an object, got {type(data).__name__}")
    state_id = data.get("id")
    if not state_id:
        raise GraphError("IR state is missing an id")
    if not isinstance(state_id, str):
        raise GraphError(f"IR state id must be a string, got {type(state_id).__name__}")
    kind = data.get("kind")
    lane = data.get("lane")
    try:
        if kind == "task":
            retry = _mapping(data, "retry", state_id)
            return TaskState(
                id=state_id,
                action=data["action"],
                next=data.get("next"),
                retry=Retry(max=retry["max"], backoff_ms=_number(retry, "backoffMs", state_id)) if retry else None,
                timeout=_number(data, "timeout", state_id),
                lane=lane,
            )
        if kind == "userTask":
            form = _mapping(data, "form", state_id)
            return UserTaskState(
                id=state_id,
                prompt=data["prompt"],
                assignee=data.get("assignee"),
                form=FormDefinition.from_dict(form) if form else None,
                next=data.get("next"),
                lane=lane,
            )
        if kind == "send":
            return SendState(
                id=state_id,
                channel=data["channel"],
                to=data.get("to", ""),
                message=data.get("message", ""),
                next=data.get("next"),
                lane=lane,
            )
        if kind == "receive":
            return ReceiveState(
                id=state_id,
                event=data["event"],
                next=data.get("next"),
                plain=bool(data.get("plain", False)),
                lane=lane,
            )
        if kind == "choice":
            return ChoiceState(
                id=state_id,
                branches=tuple(ChoiceBranch(cond=b["cond"], next=b["next"]) for b in data.get("branches", [])),
                otherwise=data.get("otherwise"),
                lane=lane,
            )
        if kind == "case":
            return CaseState(
                id=state_id,
                expression=data["expression"],
                cases=tuple(CaseBranch(value=str(c["value"]), next=c["next"]) for c in data.get("cases", [])),
                default=data.get("default"),
                lane=lane,
            )
        if kind == "parallel":
            if not isinstance(data["branches"], list):
                raise TypeError(f"branches must be a list, got {type(data['branches']).__name__}")
            return ParallelState(
                id=state_id,
                branches=tuple(data["branches"]),
                join=data["join"],
                lane=lane,
            )
        if kind == "wait":
            return WaitState(
                id=state_id,
                name=data.get("name"),
                until=data.get("until"),
                delay_ms=_number(data, "delayMs", state_id),
                attached_to=data.get("attachedTo"),
                interrupting=data.get("interrupting"),
                next=data.get("next"),
                lane=lane,
            )
        if kind == "stop":
            return StopState(id=state_id, reason=data.get("reason"), lane=lane)
    except KeyError as e:
        raise GraphError(f'State "{state_id}" is missing {e.args[0]!r}', state_id=state_id) from e
    except (TypeError, ValueError, AttributeError) as e:
        raise GraphError(f'State "{state_id}" is malformed: {e}', state_id=state_id) from e
    raise GraphError(f'State "{state_id}" has unknown kind {kind!r}', state_id=state_id)


def validate_ir(ir: IR) -> None:
    """Check structural invariants. Raises GraphError on the first violation."""
    if not ir.states:
        raise GraphError("Cannot render BPMN without IR states")

    by_id: dict[str, IRState] = {}
    for state in ir.states:
        if state.id in by_id:
            raise GraphError(f'Duplicate state id "{state.id}"', state_id=state.id)
        by_id[state.id] = state

    if ir.start not in by_id:
        raise GraphError(f'Start state "{ir.start}" does not exist', state_id=ir.start)

    for state in ir.states:
        if isinstance(state, ChoiceState) and not state.branches and not state.otherwise:
            raise GraphError(f'Choice state "{state.id}" has no branches and no otherwise', state_id=state.id)
        if isinstance(state, CaseState) and not state.expression.strip():
            raise GraphError(f'Case state "{state.id}" has no expression', state_id=state.id)
        if isinstance(state, ParallelState):
            if not state.branches:
                raise GraphError(f'Parallel state "{state.id}" has no branches', state_id=state.id)
            if state.join not in by_id:
                raise GraphError(
                    f'Parallel state "{state.id}" references missing join state "{state.join}"',
                    state_id=state.id,
                )
        if isinstance(state, WaitState) and not state.until and not _positive(state.delay_ms):
            raise GraphError(
                f'Wait state "{state.id}" must specify either "until" or a positive "delayMs"',
                state_id=state.id,
            )
        for context, target in state.references():
            if target not in by_id:
                raise GraphError(
                    f'State "{state.id}" references unknown {context} "{target}"',
                    state_id=state.id,
                )
        if isinstance(state, WaitState) and state.attached_to:
            _check_attachment(state, by_id[state.attached_to])


def _check_attachment(wait: WaitState, host: IRState) -> None:
    """Boundary timers sit on an activity; never on themselves, an event or a gateway."""
    if host.id == wait.id:
        raise GraphError(f'Wait state "{wait.id}" is attached to itself', state_id=wait.id)
    if not isinstance(host, (TaskState, UserTaskState, SendState)):
        raise GraphError(
            f'Wait state "{wait.id}" is attached to "{host.id}", a {host.kind} state; '
            "only task, userTask and send states can host a boundary timer",
            state_id=wait.id,
        )


def _positive(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
