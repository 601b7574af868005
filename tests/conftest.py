"""Shared pytest fixtures."""

import pytest
from pathlib import Path

from storyflow.compiler import compile_source
from storyflow.ir import IR, ParallelState, StopState, TaskState


@pytest.fixture
def examples_dir():
    """Path to tests/examples/ containing .story files."""
    return Path(__file__).parent / "examples"


@pytest.fixture(params=["expense_approval.story", "incident_response.story", "order_fulfilment.story"])
def example_file(examples_dir, request):
    """Parametrized: one of the three example stories."""
    return examples_dir / request.param


@pytest.fixture
def incident_ir(examples_dir):
    path = examples_dir / "incident_response.story"
    return compile_source(path.read_text(), path=str(path))


@pytest.fixture
def parallel_ir():
    """Fan-out to two tasks that both continue into the join state."""
    return IR(
        name="Parallel Flow",
        start="kickoff",
        states=(
            TaskState("kickoff", "Start work", next="fanOut"),
            ParallelState("fanOut", branches=("taskA", "taskB"), join="merge"),
            TaskState("taskA", "Do task A", next="merge"),
            TaskState("taskB", "Do task B", next="merge"),
            TaskState("merge", "Combine results", next="wrap"),
            StopState("wrap", reason="Done"),
        ),
    )
