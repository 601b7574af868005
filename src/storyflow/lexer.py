"""Line scanner for StoryFlow: story text -> classified lines with indentation levels."""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from storyflow.errors import ParseError

INDENT_WIDTH = 2
TAB_WIDTH = 2  # a tab counts as one nesting level


class LineKind:
    FLOW = "FLOW"
    EVENT = "EVENT"
    IF = "IF"
    OTHERWISE = "OTHERWISE"
    ASK = "ASK"
    SEND = "SEND"
    DO = "DO"
    WAIT = "WAIT"
    STOP = "STOP"


# Order matters: "If system receives" must win over the generic "If".
_PATTERNS: list[tuple[str, re.Pattern]] = [
    (LineKind.FLOW, re.compile(r"^flow\s*:\s*(?P<name>.*)$", re.IGNORECASE)),
    (
        LineKind.EVENT,
        re.compile(r"^if\s+system\s+receives\s+(?P<event>\S+?)(?:\s+event)?\s*\.?$", re.IGNORECASE),
    ),
    (LineKind.IF, re.compile(r"^if\s+(?P<condition>.+?):?$", re.IGNORECASE)),
    (LineKind.OTHERWISE, re.compile(r"^otherwise\s*:?$", re.IGNORECASE)),
    (LineKind.ASK, re.compile(r"^ask\s+(?P<rest>.+)$", re.IGNORECASE)),
    (LineKind.SEND, re.compile(r"^send\s+(?P<rest>.+)$", re.IGNORECASE)),
    (LineKind.DO, re.compile(r"^do(?:\s*:\s*|\s+)(?P<action>.+)$", re.IGNORECASE)),
    (LineKind.WAIT, re.compile(r"^wait\s+(?P<spec>.+)$", re.IGNORECASE)),
    (LineKind.STOP, re.compile(r"^stop\.?(?:\s*:\s*(?P<reason>.*))?$", re.IGNORECASE)),
]


@dataclass
class Line:
    kind: str
    text: str
    number: int
    level: int
    column: int
    groups: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Line({self.kind}, {self.text!r}, L{self.number}, level={self.level})"


def _leading_width(raw: str) -> int:
    width = 0
    for ch in raw:
        if ch == " ":
            width += 1
        elif ch == "\t":
            width += TAB_WIDTH
        else:
            break
    return width


def classify(text: str) -> Optional[tuple[str, dict[str, Any]]]:
    """Match one stripped line against the verb table. None when no verb applies."""
    for kind, pattern in _PATTERNS:
        m = pattern.match(text)
        if m:
            return kind, {k: (v.strip() if isinstance(v, str) else v) for k, v in m.groupdict().items()}
    return None


def tokenize(source: str, path: Optional[str] = None) -> list[Line]:
    """Produce classified lines. Blank lines and ``--``/``#`` comments are skipped."""
    lines: list[Line] = []
    for number, raw in enumerate(source.splitlines(), start=1):
        text = raw.strip()
        if not text or text.startswith("--") or text.startswith("#"):
            continue
        width = _leading_width(raw)
        matched = classify(text)
        if matched is None:
            raise ParseError(f"Unrecognised story line: {text!r}", number, width + 1, path)
        kind, groups = matched
        lines.append(Line(kind, text, number, width // INDENT_WIDTH, width + 1, groups))
    return lines
