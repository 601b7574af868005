"""
StoryFlow editor backend. Serves API for check, compile, BPMN export, simulation and story templates.
Run from repo root: python -m editor.backend.main  (or uvicorn editor.backend.main:app --reload)
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from storyflow import __version__
from storyflow.bpmn import to_bpmn_xml
from storyflow.compiler import compile_story
from storyflow.config import Settings
from storyflow.errors import StoryFlowError
from storyflow.ir import IR
from storyflow.parser import parse
from storyflow.runtime.simulator import SimulationOptions, simulate

_repo_root = Path(__file__).resolve().parent.parent.parent
_editor_dir = Path(__file__).resolve().parent.parent

# Load .env from repo root or editor/ so STORYFLOW_* settings can be set there
for d in (_repo_root, _editor_dir):
    load_dotenv(d / ".env")

logger = logging.getLogger(__name__)
settings = Settings.load(environ=os.environ)

app = FastAPI(title="StoryFlow Editor API", version=__version__)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


# --- Request/response models ---

class SourceRequest(BaseModel):
    source: str


class FlowRequest(BaseModel):
    """Either story text or an IR document; IR wins when both are given."""
    source: Optional[str] = None
    ir: Optional[dict[str, Any]] = None


class SimulateRequest(FlowRequest):
    choices: dict[str, str] = Field(default_factory=dict)
    events: list[str] = Field(default_factory=list)
    auto_advance_waits: Optional[bool] = None
    max_steps: Optional[int] = Field(default=None, ge=1)


class CheckResponse(BaseModel):
    ok: bool
    name: Optional[str] = None
    steps: Optional[int] = None
    error: Optional[str] = None


class CompileResponse(BaseModel):
    ok: bool
    ir: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class BpmnResponse(BaseModel):
    ok: bool
    xml: Optional[str] = None
    error: Optional[str] = None


class SimulateResponse(BaseModel):
    ok: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class TemplatesResponse(BaseModel):
    templates: dict


# --- Helpers ---

def _load_ir(req: FlowRequest) -> IR:
    if req.ir is not None:
        return IR.from_dict(req.ir)
    if req.source is None:
        raise StoryFlowError("Request needs either 'source' or 'ir'")
    story = parse(req.source, path="editor")
    return compile_story(story, executable=settings.executable or None)


def _load_templates() -> dict:
    path = _repo_root / "grammar" / "story_templates.yaml"
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# --- API routes ---

@app.get("/api/health")
def api_health() -> dict:
    return {"ok": True, "version": __version__}


@app.post("/api/check", response_model=CheckResponse)
def api_check(req: SourceRequest) -> CheckResponse:
    """Parse source. Returns ok or the parse error with its line."""
    try:
        story = parse(req.source, path="editor")
        return CheckResponse(ok=True, name=story.name, steps=len(story.steps))
    except StoryFlowError as e:
        return CheckResponse(ok=False, error=str(e))


@app.post("/api/compile", response_model=CompileResponse)
def api_compile(req: SourceRequest) -> CompileResponse:
    """Parse and compile source to IR JSON."""
    try:
        ir = _load_ir(FlowRequest(source=req.source))
        return CompileResponse(ok=True, ir=ir.to_dict())
    except StoryFlowError as e:
        return CompileResponse(ok=False, error=str(e))


@app.post("/api/bpmn", response_model=BpmnResponse)
def api_bpmn(req: FlowRequest) -> BpmnResponse:
    """Emit BPMN 2.0 XML for a story or an IR document."""
    try:
        xml = to_bpmn_xml(_load_ir(req))
        return BpmnResponse(ok=True, xml=xml)
    except StoryFlowError as e:
        return BpmnResponse(ok=False, error=str(e))


@app.post("/api/simulate", response_model=SimulateResponse)
def api_simulate(req: SimulateRequest) -> SimulateResponse:
    """Simulate a story or IR document with the given hints and events."""
    try:
        ir = _load_ir(req)
        options = SimulationOptions(
            choices=req.choices,
            events=req.events,
            auto_advance_waits=settings.auto_advance_waits if req.auto_advance_waits is None else req.auto_advance_waits,
            max_steps=req.max_steps or settings.max_steps,
        )
        result = simulate(ir, options)
        logger.info("Simulated %r: %s", ir.name, result.status)
        return SimulateResponse(ok=True, result=result.to_dict())
    except StoryFlowError as e:
        return SimulateResponse(ok=False, error=str(e))


@app.get("/api/templates", response_model=TemplatesResponse)
def api_templates() -> TemplatesResponse:
    """Return verb templates and sample stories for the editor."""
    return TemplatesResponse(templates=_load_templates())


# --- Static frontend ---

frontend_path = _editor_dir / "frontend"
if frontend_path.exists():
    app.mount("/", StaticFiles(directory=str(frontend_path), html=True), name="frontend")


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
