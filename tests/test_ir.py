"""Tests for IR structure, JSON shape and validation."""

import json

import pytest

from storyflow.compiler import compile_source
from storyflow.errors import GraphError
from storyflow.ir import (
    IR,
    CaseBranch,
    CaseState,
    ChoiceBranch,
    ChoiceState,
    IRMetadata,
    LaneHint,
    ParallelState,
    ReceiveState,
    Retry,
    StopState,
    TaskState,
    WaitState,
    validate_ir,
)


def test_to_dict_omits_absent_optionals():
    data = TaskState("a", "do it").to_dict()
    assert data == {"id": "a", "kind": "task", "action": "do it"}


def test_wait_uses_camel_case_keys():
    data = WaitState("w", delay_ms=1000, attached_to="t", next="n").to_dict()
    assert data["delayMs"] == 1000
    assert data["attachedTo"] == "t"
    assert "until" not in data


def test_ir_json_round_trips_through_from_dict(incident_ir):
    text = json.dumps(incident_ir.to_dict())
    loaded = IR.from_dict(json.loads(text))
    assert loaded == incident_ir


def test_from_dict_reads_extended_kinds():
    ir = IR.from_dict({
        "name": "Extended",
        "start": "t",
        "states": [
            {"id": "t", "kind": "task", "action": "call", "retry": {"max": 3, "backoffMs": 500}, "next": "c"},
            {"id": "c", "kind": "case", "expression": "{tier}",
             "cases": [{"value": "gold", "next": "s"}], "default": "s"},
            {"id": "s", "kind": "stop", "lane": "ops"},
        ],
        "vars": {"tier": "string"},
        "metadata": {"executable": True, "lanes": [{"id": "ops", "name": "Operations"}]},
    })
    states = ir.state_map()
    assert states["t"].retry == Retry(max=3, backoff_ms=500)
    assert states["c"].cases == (CaseBranch("gold", "s"),)
    assert ir.vars == ("tier",)
    assert ir.metadata == IRMetadata(executable=True, lanes=(LaneHint("ops", "Operations"),))


@pytest.mark.parametrize("doc,fragment", [
    ([], "JSON object"),
    ({"start": "a"}, "'states'"),
    ({"states": [{"id": "a", "kind": "stop"}]}, "'start'"),
    ({"start": "a", "states": [{"id": "a", "kind": "teleport"}]}, "unknown kind"),
    ({"start": "a", "states": [{"id": "a", "kind": "task"}]}, "'action'"),
    ({"start": "a", "states": [{"kind": "stop"}]}, "missing an id"),
    ({"start": "a", "states": None}, "'states' must be a list"),
    ({"start": 5, "states": [{"id": "a", "kind": "stop"}]}, "'start' must be a string"),
    ({"start": "w", "states": [{"id": "w", "kind": "wait", "delayMs": "5000"}]}, "'delayMs' must be a number"),
    ({"start": "t", "states": [{"id": "t", "kind": "task", "action": "go", "retry": 3}]}, "'retry' must be an object"),
    ({"start": "c", "states": [{"id": "c", "kind": "choice", "branches": ["yes"]}]}, 'State "c" is malformed'),
    ({"start": "p", "states": [{"id": "p", "kind": "parallel", "branches": "ab", "join": "p"}]}, 'State "p" is malformed'),
    ({"start": "a", "states": [{"id": "a", "kind": "stop"}], "metadata": {"lanes": [{"name": "x"}]}}, "malformed lane"),
])
def test_from_dict_rejects_malformed(doc, fragment):
    with pytest.raises(GraphError) as exc:
        IR.from_dict(doc)
    assert fragment in str(exc.value)


def test_validate_accepts_compiled_examples(example_file):
    validate_ir(compile_source(example_file.read_text()))


def test_validate_empty():
    with pytest.raises(GraphError, match="without IR states"):
        validate_ir(IR(name="x", start="a"))


def test_validate_missing_start():
    with pytest.raises(GraphError, match='Start state "nope" does not exist'):
        validate_ir(IR(name="x", start="nope", states=(StopState("a"),)))


def test_validate_duplicate_ids():
    with pytest.raises(GraphError, match="Duplicate"):
        validate_ir(IR(name="x", start="a", states=(StopState("a"), StopState("a"))))


def test_validate_dangling_next():
    ir = IR(name="x", start="a", states=(TaskState("a", "go", next="ghost"),))
    with pytest.raises(GraphError) as exc:
        validate_ir(ir)
    assert exc.value.state_id == "a"
    assert '"ghost"' in str(exc.value)


def test_validate_dangling_branch_target():
    ir = IR(name="x", start="c", states=(
        ChoiceState("c", branches=(ChoiceBranch("x", "missing"),), otherwise="s"),
        StopState("s"),
    ))
    with pytest.raises(GraphError, match='unknown branch target "missing"'):
        validate_ir(ir)


def test_validate_parallel_join_names_both_ends():
    ir = IR(name="x", start="p", states=(
        ParallelState("p", branches=("a",), join="J"),
        TaskState("a", "work"),
    ))
    with pytest.raises(GraphError) as exc:
        validate_ir(ir)
    assert '"p"' in str(exc.value)
    assert '"J"' in str(exc.value)


def test_validate_wait_needs_until_or_delay():
    ir = IR(name="x", start="w", states=(WaitState("w", delay_ms=0),))
    with pytest.raises(GraphError, match='Wait state "w" must specify'):
        validate_ir(ir)


def test_validate_choice_and_case_shape():
    with pytest.raises(GraphError):
        validate_ir(IR(name="x", start="c", states=(ChoiceState("c"),)))
    with pytest.raises(GraphError):
        validate_ir(IR(name="x", start="c", states=(CaseState("c", expression=" ", default="s"), StopState("s"))))


def test_validate_rejects_wait_attached_to_itself():
    ir = IR(name="x", start="w", states=(WaitState("w", delay_ms=5000, attached_to="w", next="s"), StopState("s")))
    with pytest.raises(GraphError, match='Wait state "w" is attached to itself'):
        validate_ir(ir)


def test_validate_rejects_waits_attached_to_each_other():
    ir = IR(name="x", start="a", states=(
        WaitState("a", delay_ms=1000, attached_to="b"),
        WaitState("b", delay_ms=1000, attached_to="a"),
    ))
    with pytest.raises(GraphError) as exc:
        validate_ir(ir)
    assert '"a"' in str(exc.value) and '"b"' in str(exc.value)
    assert exc.value.state_id == "a"


@pytest.mark.parametrize("host", [
    ReceiveState("h", "ping"),
    ChoiceState("h", otherwise="s"),
    StopState("h"),
])
def test_validate_boundary_host_must_be_an_activity(host):
    ir = IR(name="x", start="h", states=(host, WaitState("w", delay_ms=1000, attached_to="h"), StopState("s")))
    with pytest.raises(GraphError, match='attached to "h"'):
        validate_ir(ir)


def test_validate_accepts_timer_on_task():
    ir = IR(name="x", start="t", states=(
        TaskState("t", "work", next="s"),
        WaitState("w", delay_ms=1000, attached_to="t", next="s"),
        StopState("s"),
    ))
    validate_ir(ir)


def test_receive_plain_flag_serialized_only_when_set():
    assert "plain" not in ReceiveState("r", "paid").to_dict()
    assert ReceiveState("r", "pickup", plain=True).to_dict()["plain"] is True


def test_parallel_fixture_is_valid(parallel_ir):
    validate_ir(parallel_ir)
    assert parallel_ir.state_map()["fanOut"].to_dict()["branches"] == ["taskA", "taskB"]
