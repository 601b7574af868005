"""Indentation parser: classified lines -> nested step tree, driven by an explicit frame stack."""

import re
from dataclasses import dataclass, field
from typing import Optional

from storyflow.durations import parse_stability_event, parse_wait_spec
from storyflow.errors import ParseError
from storyflow.lexer import Line, LineKind, tokenize
from storyflow.steps import (
    Conditional,
    EventStep,
    SendTask,
    ServiceTask,
    SourceLoc,
    Step,
    StopStep,
    Story,
    UserTask,
    WaitStep,
)

DEFAULT_NAME = "Untitled"

_SEND_HEAD_RE = re.compile(r"^(?P<head>[^:]+?)(?:\s*:\s*(?P<message>.*))?$")
_SEND_TO_RE = re.compile(r"\s+to\s+", re.IGNORECASE)


@dataclass
class _Frame:
    """One open block. ``level`` is the indentation level its own lines sit at."""
    kind: str  # root | then | otherwise | event
    level: int
    header: Optional[Line] = None
    steps: list[Step] = field(default_factory=list)
    then_steps: tuple[Step, ...] = ()


class Parser:
    def __init__(self, lines: list[Line], path: Optional[str] = None):
        self.lines = lines
        self.path = path

    def loc(self, line: Line) -> SourceLoc:
        return SourceLoc(line.number, line.column, self.path)

    def parse_story(self) -> Story:
        name: Optional[str] = None
        stack = [_Frame(kind="root", level=0)]

        for line in self.lines:
            if line.kind == LineKind.FLOW:
                name = line.groups.get("name") or name
                continue

            if line.kind == LineKind.OTHERWISE:
                self._switch_to_otherwise(stack, line)
                continue

            self._close_deeper(stack, line.level)
            if line.kind == LineKind.IF:
                stack.append(_Frame(kind="then", level=line.level + 1, header=line))
            elif line.kind == LineKind.EVENT:
                stack.append(_Frame(kind="event", level=line.level + 1, header=line))
            else:
                stack[-1].steps.append(self.parse_step(line))

        self._close_deeper(stack, 0)
        return Story(name=name or DEFAULT_NAME, steps=tuple(stack[0].steps), path=self.path)

    def _switch_to_otherwise(self, stack: list[_Frame], line: Line) -> None:
        self._close_deeper(stack, line.level + 1)
        top = stack[-1]
        if top.kind != "then" or top.level != line.level + 1:
            raise ParseError("Otherwise without a matching If", line.number, line.column, self.path)
        top.kind = "otherwise"
        top.then_steps = tuple(top.steps)
        top.steps = []

    def _close_deeper(self, stack: list[_Frame], level: int) -> None:
        """Close every frame nested deeper than ``level``, attaching each node to its parent."""
        while len(stack) > 1 and stack[-1].level > level:
            frame = stack.pop()
            stack[-1].steps.append(self._close(frame))

    def _close(self, frame: _Frame) -> Step:
        header = frame.header
        if frame.kind == "then":
            return Conditional(
                condition=header.groups["condition"],
                then=tuple(frame.steps),
                loc=self.loc(header),
            )
        if frame.kind == "otherwise":
            return Conditional(
                condition=header.groups["condition"],
                then=frame.then_steps,
                otherwise=tuple(frame.steps),
                loc=self.loc(header),
            )
        if frame.kind == "event":
            token = header.groups["event"]
            return EventStep(
                event=token,
                body=tuple(frame.steps),
                stability=parse_stability_event(token),
                loc=self.loc(header),
            )
        raise ParseError(f"Cannot close block of kind {frame.kind!r}", header.number, header.column, self.path)

    def parse_step(self, line: Line) -> Step:
        if line.kind == LineKind.ASK:
            return self.parse_ask(line)
        if line.kind == LineKind.SEND:
            return self.parse_send(line)
        if line.kind == LineKind.DO:
            return ServiceTask(action=line.groups["action"], loc=self.loc(line))
        if line.kind == LineKind.WAIT:
            return self.parse_wait(line)
        if line.kind == LineKind.STOP:
            return StopStep(reason=line.groups.get("reason") or None, loc=self.loc(line))
        raise ParseError(f"Unexpected line: {line.text!r}", line.number, line.column, self.path)

    def parse_ask(self, line: Line) -> UserTask:
        rest = line.groups["rest"]
        first = rest.split()[0]
        assignee = None if first.startswith("{") else first.rstrip(",:;.")
        return UserTask(prompt=rest, assignee=assignee or None, loc=self.loc(line))

    def parse_send(self, line: Line) -> SendTask:
        m = _SEND_HEAD_RE.match(line.groups["rest"])
        head = m.group("head").strip()
        message = _strip_quotes(m.group("message") or "")
        parts = _SEND_TO_RE.split(head, maxsplit=1)
        channel = parts[0].strip()
        to = parts[1].strip() if len(parts) > 1 else ""
        return SendTask(channel=channel, to=to, message=message, loc=self.loc(line))

    def parse_wait(self, line: Line) -> WaitStep:
        spec = line.groups["spec"]
        decoded = parse_wait_spec(spec)
        if decoded is None:
            raise ParseError(
                f"Cannot read wait duration {spec!r}; expected '<number> <unit>', 'for <label>' or 'until <date>'",
                line.number, line.column, self.path,
            )
        return WaitStep(
            spec=spec,
            delay_ms=decoded.delay_ms,
            until=decoded.until,
            label=decoded.label,
            loc=self.loc(line),
        )


def _strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def parse(source: str, path: Optional[str] = None) -> Story:
    """Parse StoryFlow text into a Story step tree."""
    lines = tokenize(source, path)
    parser = Parser(lines, path)
    return parser.parse_story()
