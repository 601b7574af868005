"""Deterministic simulator: walk IR states from a FIFO agenda, producing a trace and a status."""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from storyflow.errors import SimulationError
from storyflow.ir import (
    IR,
    CaseState,
    ChoiceState,
    IRState,
    ParallelState,
    ReceiveState,
    SendState,
    StopState,
    TaskState,
    UserTaskState,
    WaitState,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 1000

COMPLETED = "completed"
WAITING = "waiting"
STOPPED = "stopped"


@dataclass
class SimulationOptions:
    choices: dict[str, str] = field(default_factory=dict)  # state id -> branch target, condition or case value
    events: Iterable[str] = ()
    auto_advance_waits: bool = False
    max_steps: int = DEFAULT_MAX_STEPS


@dataclass
class SimulationResult:
    visited: list[str]
    log: list[dict[str, Any]]
    messages: list[dict[str, Any]]
    status: str
    waiting_for: Optional[dict[str, str]] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "visited": self.visited,
            "log": self.log,
            "messages": self.messages,
        }
        if self.waiting_for is not None:
            out["waitingFor"] = self.waiting_for
        return out


@dataclass
class SimulationState:
    """Working state of one walk. Built fresh per call, never shared."""
    events: set[str]
    agenda: deque = field(default_factory=deque)
    scheduled: set[str] = field(default_factory=set)
    visited: list[str] = field(default_factory=list)
    log: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    status: str = COMPLETED
    waiting_for: Optional[dict[str, str]] = None

    def enqueue(self, state_id: Optional[str]) -> None:
        """Queue ``state_id`` unless it is already pending."""
        if state_id and state_id not in self.scheduled:
            self.scheduled.add(state_id)
            self.agenda.append(state_id)

    def dequeue(self) -> str:
        state_id = self.agenda.popleft()
        self.scheduled.discard(state_id)
        return state_id

    def halt(self, kind: str, state_id: str) -> None:
        self.status = WAITING
        self.waiting_for = {"type": kind, "stateId": state_id}

    def result(self) -> SimulationResult:
        return SimulationResult(
            visited=self.visited,
            log=self.log,
            messages=self.messages,
            status=self.status,
            waiting_for=self.waiting_for,
        )


def resolve_choice(state: ChoiceState, hint: Optional[str]) -> str:
    """Hint (branch target, condition text, otherwise target or "otherwise") -> first branch -> otherwise."""
    if hint is not None:
        for branch in state.branches:
            if hint == branch.next or hint == branch.cond:
                return branch.next
        if state.otherwise and (hint == state.otherwise or hint.lower() == "otherwise"):
            return state.otherwise
    if state.branches:
        return state.branches[0].next
    if state.otherwise:
        return state.otherwise
    raise SimulationError(f'Choice state "{state.id}" has no branch to follow', state_id=state.id)


def resolve_case(state: CaseState, hint: Optional[str]) -> str:
    """Hint (case value or target, default target or "default") -> first case -> default."""
    if hint is not None:
        for case in state.cases:
            if hint == case.value or hint == case.next:
                return case.next
        if state.default and (hint == state.default or hint.lower() == "default"):
            return state.default
    if state.cases:
        return state.cases[0].next
    if state.default:
        return state.default
    raise SimulationError(f'Case state "{state.id}" has no case to follow', state_id=state.id)


def _run_one_state(state: IRState, sim: SimulationState, options: SimulationOptions) -> bool:
    """Handle one dequeued state. Returns True when the walk must halt."""
    if isinstance(state, TaskState):
        sim.log.append({"type": "task", "id": state.id, "action": state.action})
        sim.enqueue(state.next)
        return False

    if isinstance(state, UserTaskState):
        sim.log.append({"type": "userTask", "id": state.id, "prompt": state.prompt, "assignee": state.assignee})
        sim.enqueue(state.next)
        return False

    if isinstance(state, SendState):
        message = {"id": state.id, "channel": state.channel, "to": state.to, "message": state.message}
        sim.messages.append(message)
        sim.log.append({"type": "send", **message})
        sim.enqueue(state.next)
        return False

    if isinstance(state, ReceiveState):
        if state.event in sim.events:
            sim.events.discard(state.event)
            sim.log.append({"type": "receive", "id": state.id, "event": state.event})
            sim.enqueue(state.next)
            return False
        sim.halt("receive", state.id)
        sim.enqueue(state.id)
        return True

    if isinstance(state, WaitState):
        sim.log.append({"type": "wait", "id": state.id, "delayMs": state.delay_ms, "until": state.until})
        if options.auto_advance_waits:
            sim.enqueue(state.next)
            return False
        sim.halt("wait", state.id)
        return True

    if isinstance(state, ChoiceState):
        hint = options.choices.get(state.id)
        target = resolve_choice(state, hint)
        sim.log.append({"type": "choice", "id": state.id, "hint": hint, "next": target})
        sim.enqueue(target)
        return False

    if isinstance(state, CaseState):
        hint = options.choices.get(state.id)
        target = resolve_case(state, hint)
        sim.log.append({"type": "case", "id": state.id, "expression": state.expression, "hint": hint, "next": target})
        sim.enqueue(target)
        return False

    if isinstance(state, ParallelState):
        sim.log.append({"type": "parallel", "id": state.id, "branches": list(state.branches), "join": state.join})
        for branch in state.branches:
            sim.enqueue(branch)
        sim.enqueue(state.join)
        return False

    if isinstance(state, StopState):
        sim.log.append({"type": "stop", "id": state.id, "reason": state.reason})
        sim.status = STOPPED
        sim.agenda.clear()
        sim.scheduled.clear()
        return True

    raise SimulationError(f"Unsupported IR state kind: {type(state).__name__}", state_id=state.id)


def simulate(ir: IR, options: Optional[SimulationOptions] = None) -> SimulationResult:
    """Walk ``ir`` from its start state. Pure over its inputs; each call starts from scratch."""
    options = options or SimulationOptions()
    states = ir.state_map()
    if ir.start not in states:
        raise SimulationError(f'Unknown start state "{ir.start}"', state_id=ir.start)

    sim = SimulationState(events=set(options.events))
    sim.enqueue(ir.start)
    steps = 0

    while sim.agenda:
        if steps >= options.max_steps:
            sim.halt("maxSteps", sim.agenda[0])
            logger.debug("Simulation of %r hit max_steps=%d", ir.name, options.max_steps)
            break
        state_id = sim.dequeue()
        state = states.get(state_id)
        if state is None:
            raise SimulationError(f'State "{state_id}" does not exist', state_id=state_id)
        steps += 1
        sim.visited.append(state_id)
        logger.debug("step %d: %s (%s)", steps, state_id, state.kind)
        if _run_one_state(state, sim, options):
            break

    # An agenda that ran dry without reaching a stop is reported as waiting.
    if sim.status == COMPLETED:
        sim.status = WAITING

    logger.debug("Simulation of %r ended %s after %d steps", ir.name, sim.status, steps)
    return sim.result()


def write_trace(result: SimulationResult, trace_path: Path) -> None:
    """One JSON object per log entry, then a closing status line."""
    with open(trace_path, "w") as f:
        for entry in result.log:
            f.write(json.dumps(entry, default=str) + "\n")
        summary = {"type": "status", "status": result.status}
        if result.waiting_for is not None:
            summary["waitingFor"] = result.waiting_for
        f.write(json.dumps(summary) + "\n")
