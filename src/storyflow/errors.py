"""Structured errors for StoryFlow (parse, compile, graph, simulation)."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class StoryFlowError(Exception):
    """Base for all StoryFlow errors."""
    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    path: Optional[str] = None
    state_id: Optional[str] = None

    def __str__(self) -> str:
        loc = ""
        if self.path:
            loc = f"{self.path}:"
        if self.line is not None:
            loc += f"{self.line}"
            if self.column is not None:
                loc += f":{self.column}"
            loc += ": "
        elif loc:
            loc += " "
        return f"{loc}{self.message}"


class ParseError(StoryFlowError):
    """Story text did not match the line grammar (bad verb, orphan Otherwise, bad duration)."""
    pass


class CompileError(StoryFlowError):
    """Step tree could not be turned into IR."""
    pass


class GraphError(StoryFlowError):
    """IR is structurally invalid: dangling reference, missing start, incomplete wait."""
    pass


class SimulationError(StoryFlowError):
    """Simulation could not continue (unknown state, unresolvable choice)."""
    pass


class ConfigError(StoryFlowError):
    """Settings file or STORYFLOW_* environment value could not be read."""
    pass
