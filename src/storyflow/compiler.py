"""Compile a parsed story into IR by continuation passing.

Each step sequence is walked last-to-first so every step knows the id of the
state that follows it. Ids are allocated up front in reading order by a
counter owned by the compiling pass, so identical text always yields
identical ids.
"""

import logging
import re
from typing import Callable, Optional, Union

from storyflow.durations import format_number
from storyflow.errors import CompileError
from storyflow.forms import FormDefinition, extract_variables, infer_form as default_infer_form
from storyflow.ir import (
    IR,
    ChoiceBranch,
    ChoiceState,
    IRMetadata,
    IRState,
    ReceiveState,
    SendState,
    StopState,
    TaskState,
    UserTaskState,
    WaitState,
    validate_ir,
)
from storyflow.parser import parse
from storyflow.steps import (
    Conditional,
    EventStep,
    SendTask,
    ServiceTask,
    StabilityRequirement,
    Step,
    StopStep,
    Story,
    UserTask,
    WaitStep,
)

logger = logging.getLogger(__name__)

FormInference = Callable[[str, str], FormDefinition]
StepPath = tuple[Union[int, str], ...]

MAX_HINT_LENGTH = 48

_BARE_EQUALS_RE = re.compile(r"(?<![=!<>])=(?!=)")


def sanitize_hint(text: str) -> str:
    """Reduce free text to an id fragment: [A-Za-z0-9_], runs collapsed, at most 48 chars."""
    hint = re.sub(r"[^A-Za-z0-9_]+", "_", text)
    hint = re.sub(r"_+", "_", hint).strip("_")
    hint = hint[:MAX_HINT_LENGTH].rstrip("_")
    return hint or "step"


def normalize_condition(condition: str) -> str:
    """Turn a bare ``=`` into ``==``; ``==``, ``!=``, ``<=`` and ``>=`` are left alone."""
    return _BARE_EQUALS_RE.sub("==", condition.strip())


def _title(metric: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in metric.split("_") if word)


def monitor_action(req: StabilityRequirement) -> str:
    """"Monitor Latency under 200ms for 10 minutes"."""
    minutes = format_number(req.duration_minutes)
    unit = "minute" if minutes == "1" else "minutes"
    threshold = f"{format_number(req.threshold)}{req.threshold_unit}"
    return f"Monitor {_title(req.metric)} {req.comparator_word} {threshold} for {minutes} {unit}"


def guard_condition(req: StabilityRequirement) -> str:
    return f"{req.metric} {req.comparator} {format_number(req.threshold)}"


class Compiler:
    """One compiling pass. Owns its id counters; never reuse an instance across stories."""

    def __init__(self, infer_form: Optional[FormInference] = None):
        self.infer_form = infer_form or default_infer_form
        self._counts: dict[str, int] = {}
        self._order: list[str] = []
        # keyed by tree path so a step object reused in two places gets two states
        self._step_ids: dict[StepPath, str] = {}
        self._derived_ids: dict[StepPath, dict[str, str]] = {}
        self._states: dict[str, IRState] = {}
        self._shared_stop: Optional[str] = None

    def allocate(self, prefix: str, hint: str) -> str:
        """First use of ``{prefix}_{hint}`` returns it bare; later uses get ``_2``, ``_3``, ..."""
        key = f"{prefix}_{sanitize_hint(hint)}"
        count = self._counts.get(key, 0)
        while True:
            count += 1
            state_id = key if count == 1 else f"{key}_{count}"
            if state_id not in self._order:
                break
        self._counts[key] = count
        self._order.append(state_id)
        return state_id

    def compile(self, story: Story, executable: Optional[bool] = None) -> IR:
        if not story.steps:
            raise CompileError("Story has no steps to compile", path=story.path)
        self._assign_ids(story.steps)
        start = self.compile_sequence(story.steps, None)
        states = tuple(self._states[state_id] for state_id in self._order)
        ir = IR(
            name=story.name,
            start=start,
            states=states,
            vars=tuple(_collect_vars(story.steps)),
            metadata=IRMetadata(executable=executable) if executable is not None else None,
        )
        validate_ir(ir)
        logger.debug("Compiled %r into %d states (start=%s)", story.name, len(states), start)
        return ir

    # --- id pre-pass (reading order) ---

    def _assign_ids(self, steps: tuple[Step, ...], path: StepPath = ()) -> None:
        for index, step in enumerate(steps):
            key = path + (index,)
            if isinstance(step, UserTask):
                self._step_ids[key] = self.allocate("UserTask", step.prompt)
            elif isinstance(step, ServiceTask):
                self._step_ids[key] = self.allocate("ServiceTask", step.action)
            elif isinstance(step, SendTask):
                self._step_ids[key] = self.allocate("SendTask", f"{step.channel} {step.to}")
            elif isinstance(step, WaitStep):
                if step.open_ended:
                    self._step_ids[key] = self.allocate("Receive", step.label or step.spec)
                else:
                    self._step_ids[key] = self.allocate("Wait", step.spec)
            elif isinstance(step, StopStep):
                self._step_ids[key] = self.allocate("Stop", step.reason or "end")
            elif isinstance(step, Conditional):
                self._step_ids[key] = self.allocate("Choice", step.condition)
                self._assign_ids(step.then, key + ("then",))
                self._assign_ids(step.otherwise or (), key + ("otherwise",))
            elif isinstance(step, EventStep):
                self._step_ids[key] = self.allocate("Receive", step.event)
                if step.stability is not None:
                    metric = step.stability.metric
                    self._derived_ids[key] = {
                        "failure": self.allocate("Stop", f"{metric}_stability_failed"),
                        "monitor": self.allocate("ServiceTask", f"{metric}_stability_monitor"),
                        "wait": self.allocate("Wait", f"{metric}_stability_window"),
                        "guard": self.allocate("Choice", f"{metric}_stability_guard"),
                    }
                self._assign_ids(step.body, key + ("body",))
            else:
                raise self._unsupported(step)

    # --- continuation threading (last step first) ---

    def compile_sequence(
        self, steps: tuple[Step, ...], continuation: Optional[str], path: StepPath = ()
    ) -> Optional[str]:
        """Compile ``steps`` so the last one flows into ``continuation``. Returns the entry id."""
        entry = continuation
        for index in reversed(range(len(steps))):
            entry = self.compile_step(steps[index], entry, path + (index,))
        return entry

    def compile_step(self, step: Step, continuation: Optional[str], key: StepPath) -> str:
        state_id = self._step_ids[key]

        if isinstance(step, UserTask):
            form = self.infer_form(step.prompt, state_id)
            self._add(UserTaskState(
                id=state_id,
                prompt=step.prompt,
                assignee=step.assignee,
                form=form if form is not None and form.fields else None,
                next=continuation,
            ))
        elif isinstance(step, ServiceTask):
            self._add(TaskState(id=state_id, action=step.action, next=continuation))
        elif isinstance(step, SendTask):
            self._add(SendState(
                id=state_id,
                channel=step.channel,
                to=step.to,
                message=step.message,
                next=continuation,
            ))
        elif isinstance(step, WaitStep):
            if step.open_ended:
                self._add(ReceiveState(id=state_id, event=step.label or step.spec, next=continuation, plain=True))
            else:
                self._add(WaitState(
                    id=state_id,
                    name=f"Wait {step.spec}",
                    until=step.until,
                    delay_ms=step.delay_ms,
                    next=continuation,
                ))
        elif isinstance(step, StopStep):
            self._add(StopState(id=state_id, reason=step.reason))
        elif isinstance(step, Conditional):
            then_entry = self.compile_sequence(step.then, continuation, key + ("then",))
            otherwise_entry = self.compile_sequence(step.otherwise or (), continuation, key + ("otherwise",))
            then_entry = then_entry or self._terminal()
            otherwise_entry = otherwise_entry or self._terminal()
            self._add(ChoiceState(
                id=state_id,
                branches=(ChoiceBranch(cond=normalize_condition(step.condition), next=then_entry),),
                otherwise=otherwise_entry,
            ))
        elif isinstance(step, EventStep):
            base = self.compile_sequence(step.body, continuation, key + ("body",))
            entry = base
            if step.stability is not None:
                entry = self._stability_guard(step, base, key)
            self._add(ReceiveState(id=state_id, event=step.event, next=entry))
        else:
            raise self._unsupported(step)
        return state_id

    def _stability_guard(self, step: EventStep, base: Optional[str], key: StepPath) -> str:
        """Expand a stability requirement into guard -> (monitor -> window -> base | failure)."""
        req = step.stability
        ids = self._derived_ids[key]
        title = _title(req.metric)
        self._add(StopState(id=ids["failure"], reason=f"{title} did not stabilize"))
        self._add(TaskState(id=ids["monitor"], action=monitor_action(req), next=ids["wait"]))
        self._add(WaitState(
            id=ids["wait"],
            name=f"{title} stability window",
            delay_ms=req.duration_ms,
            attached_to=ids["monitor"],
            next=base,
        ))
        self._add(ChoiceState(
            id=ids["guard"],
            branches=(ChoiceBranch(cond=guard_condition(req), next=ids["monitor"]),),
            otherwise=ids["failure"],
        ))
        logger.debug("Expanded stability event %s around %s", step.event, ids["monitor"])
        return ids["guard"]

    def _terminal(self) -> str:
        """Shared stop for branches that have nowhere else to go; created on first use."""
        if self._shared_stop is None:
            self._shared_stop = self.allocate("Stop", "end")
            self._add(StopState(id=self._shared_stop, reason="End"))
        return self._shared_stop

    def _add(self, state: IRState) -> None:
        self._states[state.id] = state

    def _unsupported(self, step: Step) -> CompileError:
        loc = getattr(step, "loc", None)
        return CompileError(
            f"Unsupported step kind: {type(step).__name__}",
            line=loc.line if loc else None,
            column=loc.column if loc else None,
            path=loc.path if loc else None,
        )


def _collect_vars(steps: tuple[Step, ...]) -> list[str]:
    """Every ``{var}`` token in the story, first appearance first."""
    found: list[str] = []

    def add(text: Optional[str]) -> None:
        for name in extract_variables(text or ""):
            if name not in found:
                found.append(name)

    def walk(seq: tuple[Step, ...]) -> None:
        for step in seq:
            if isinstance(step, UserTask):
                add(step.prompt)
            elif isinstance(step, ServiceTask):
                add(step.action)
            elif isinstance(step, SendTask):
                add(step.to)
                add(step.message)
            elif isinstance(step, StopStep):
                add(step.reason)
            elif isinstance(step, Conditional):
                add(step.condition)
                walk(step.then)
                walk(step.otherwise or ())
            elif isinstance(step, EventStep):
                walk(step.body)

    walk(steps)
    return found


def compile_story(
    story: Story,
    infer_form: Optional[FormInference] = None,
    executable: Optional[bool] = None,
) -> IR:
    """Produce IR from a parsed story. The simulator and BPMN emitter consume IR only."""
    return Compiler(infer_form=infer_form).compile(story, executable=executable)


def compile_source(source: str, path: Optional[str] = None, **kwargs) -> IR:
    """Parse and compile StoryFlow text in one call."""
    return compile_story(parse(source, path=path), **kwargs)
