"""CLI entry point: parse, compile, explain, bpmn, simulate, trace."""

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from storyflow import __version__
from storyflow.bpmn import to_bpmn_xml
from storyflow.compiler import compile_story
from storyflow.config import Settings
from storyflow.errors import StoryFlowError
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
from storyflow.parser import parse
from storyflow.runtime.simulator import SimulationOptions, simulate, write_trace
from storyflow.steps import Conditional, EventStep, Step

app = typer.Typer(
    name="storyflow",
    help="StoryFlow: compile process stories to IR and BPMN, and simulate them.",
)


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _load_source(path: Path) -> str:
    if not path.exists():
        typer.echo(f"Error: file not found: {path}", err=True)
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8")


def _fail(error: object) -> None:
    typer.echo(str(error), err=True)
    raise typer.Exit(1)


def _parse_and_catch(path: Path):
    source = _load_source(path)
    try:
        return parse(source, path=str(path))
    except StoryFlowError as e:
        _fail(e)


def _load_ir(path: Path, settings: Settings) -> IR:
    """A .json file is read as an IR document; anything else is compiled as a story."""
    if path.suffix.lower() == ".json":
        source = _load_source(path)
        try:
            return IR.from_dict(json.loads(source))
        except json.JSONDecodeError as e:
            _fail(f"{path}: invalid JSON: {e}")
        except StoryFlowError as e:
            _fail(e)
    story = _parse_and_catch(path)
    try:
        return compile_story(story, executable=settings.executable or None)
    except StoryFlowError as e:
        _fail(e)


def _write_or_echo(text: str, output: Optional[Path]) -> None:
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    typer.echo(f"Wrote {output}")


def _outline(steps: tuple[Step, ...], depth: int = 1) -> list[str]:
    lines = []
    for s in steps:
        lines.append(f"{'  ' * depth}- {type(s).__name__}")
        if isinstance(s, Conditional):
            lines.extend(_outline(s.then, depth + 1))
            if s.otherwise is not None:
                lines.append(f"{'  ' * depth}  otherwise:")
                lines.extend(_outline(s.otherwise, depth + 1))
        elif isinstance(s, EventStep):
            lines.extend(_outline(s.body, depth + 1))
    return lines


def describe_state(state: IRState) -> str:
    """One plain-English line per state."""
    if isinstance(state, TaskState):
        return f"do '{state.action}'"
    if isinstance(state, UserTaskState):
        who = state.assignee or "someone"
        fields = f" (form: {len(state.form.fields)} fields)" if state.form else ""
        return f"ask {who}: '{state.prompt}'{fields}"
    if isinstance(state, SendState):
        to = f" to {state.to}" if state.to else ""
        return f"send {state.channel}{to}"
    if isinstance(state, ReceiveState):
        return f"wait for {'condition' if state.plain else 'event'} '{state.event}'"
    if isinstance(state, WaitState):
        when = f"until {state.until}" if state.until else f"{state.delay_ms}ms"
        host = f" while {state.attached_to} runs" if state.attached_to else ""
        return f"wait {when}{host}"
    if isinstance(state, ChoiceState):
        branches = ", ".join(f"if {b.cond} -> {b.next}" for b in state.branches)
        return f"choose: {branches}; otherwise -> {state.otherwise}"
    if isinstance(state, CaseState):
        cases = ", ".join(f"{c.value} -> {c.next}" for c in state.cases)
        return f"switch on {state.expression}: {cases}; default -> {state.default}"
    if isinstance(state, ParallelState):
        return f"run {', '.join(state.branches)} in parallel, join at {state.join}"
    if isinstance(state, StopState):
        return f"stop ({state.reason or 'end'})"
    return state.kind


def _parse_choices(values: list[str]) -> dict[str, str]:
    choices = {}
    for item in values:
        state_id, sep, value = item.partition("=")
        if not sep or not state_id.strip():
            raise typer.BadParameter(f"expected STATE=VALUE, got {item!r}", param_hint="--choice")
        choices[state_id.strip()] = value.strip()
    return choices


@app.command("parse")
def parse_cmd(file: Path = typer.Argument(..., help=".story file")):
    """Parse file and print the step tree (debug)."""
    story = _parse_and_catch(file)
    typer.echo(f"Parsed {len(story.steps)} steps from '{story.name}'.")
    for line in _outline(story.steps):
        typer.echo(line)


@app.command("compile")
def compile_cmd(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help=".story file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write IR JSON here instead of stdout"),
):
    """Compile a story and emit IR JSON."""
    ir = _load_ir(file, _settings(ctx))
    _write_or_echo(json.dumps(ir.to_dict(), indent=2), output)


@app.command("explain")
def explain_cmd(ctx: typer.Context, file: Path = typer.Argument(..., help=".story or IR .json file")):
    """Print plain-English summary of what the flow does (from IR)."""
    ir = _load_ir(file, _settings(ctx))
    typer.echo(f"Flow: {ir.name}")
    typer.echo(f"Starts at: {ir.start}")
    typer.echo("States:")
    for s in ir.states:
        typer.echo(f"  - {s.id}: {describe_state(s)}")
    if ir.vars:
        typer.echo(f"Variables: {', '.join(ir.vars)}")


@app.command("bpmn")
def bpmn_cmd(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help=".story or IR .json file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write BPMN XML here instead of stdout"),
):
    """Emit BPMN 2.0 XML."""
    ir = _load_ir(file, _settings(ctx))
    try:
        xml = to_bpmn_xml(ir)
    except StoryFlowError as e:
        _fail(e)
    _write_or_echo(xml, output)


@app.command("simulate")
def simulate_cmd(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help=".story or IR .json file"),
    choice: Optional[list[str]] = typer.Option(None, "--choice", "-c", help="Branch hint as STATE=VALUE (repeatable)"),
    event: Optional[list[str]] = typer.Option(None, "--event", "-e", help="Event available to receive states (repeatable)"),
    auto_advance_waits: bool = typer.Option(False, "--auto-advance-waits", help="Let timer waits pass instead of halting"),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=1, help="Upper bound on simulated states"),
    trace: Optional[Path] = typer.Option(None, "--trace", help="Trace file (default: FILE.trace.jsonl)"),
):
    """Walk the flow and report visited states and the final status."""
    settings = _settings(ctx)
    ir = _load_ir(file, settings)
    options = SimulationOptions(
        choices=_parse_choices(choice or []),
        events=event or [],
        auto_advance_waits=auto_advance_waits or settings.auto_advance_waits,
        max_steps=max_steps or settings.max_steps,
    )
    try:
        result = simulate(ir, options)
    except StoryFlowError as e:
        _fail(e)
    trace_path = trace or file.with_suffix(file.suffix + ".trace.jsonl")
    write_trace(result, trace_path)

    typer.echo(f"Status: {result.status}")
    typer.echo(f"Visited: {' -> '.join(result.visited)}")
    for m in result.messages:
        typer.echo(f"Message via {m['channel']} to {m['to'] or '-'}: {m['message']}")
    if result.waiting_for:
        typer.echo(f"Waiting for {result.waiting_for['type']} at {result.waiting_for['stateId']}")
    typer.echo(f"Trace: {trace_path}")


@app.command("trace")
def trace_cmd(file: Path = typer.Argument(..., help=".story or IR .json file")):
    """Show last simulation trace for this flow."""
    trace_path = file.with_suffix(file.suffix + ".trace.jsonl")
    if not trace_path.exists():
        typer.echo(f"No trace found: {trace_path}", err=True)
        raise typer.Exit(1)
    for line in trace_path.read_text().strip().split("\n"):
        if line:
            typer.echo(line)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"storyflow {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file (default: ./storyflow.yaml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
):
    """StoryFlow: verb-based process stories compiled to IR, BPMN 2.0 and simulation traces."""
    try:
        settings = Settings.load(config)
    except StoryFlowError as e:
        _fail(e)
    logging.basicConfig(
        level="DEBUG" if verbose else settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


if __name__ == "__main__":
    app()
