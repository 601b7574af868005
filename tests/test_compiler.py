"""Tests for the story -> IR compiler."""

import pytest

from storyflow.compiler import (
    Compiler,
    compile_source,
    compile_story,
    guard_condition,
    monitor_action,
    normalize_condition,
    sanitize_hint,
)
from storyflow.durations import parse_stability_event
from storyflow.errors import CompileError
from storyflow.forms import FormDefinition
from storyflow.ir import (
    ChoiceState,
    ReceiveState,
    SendState,
    StopState,
    TaskState,
    UserTaskState,
    WaitState,
)
from storyflow.steps import Conditional, ServiceTask, Story, StopStep


def _compile_example(examples_dir, name):
    path = examples_dir / name
    return compile_source(path.read_text(), path=str(path))


def test_sanitize_hint():
    assert sanitize_hint("auto-approve expense") == "auto_approve_expense"
    assert sanitize_hint("{amount} > 1000") == "amount_1000"
    assert sanitize_hint("!!!") == "step"
    assert len(sanitize_hint("x" * 100)) == 48


@pytest.mark.parametrize("raw,normalized", [
    ('{decision} = "rejected"', '{decision} == "rejected"'),
    ("{a} == 1", "{a} == 1"),
    ("{a} != 1", "{a} != 1"),
    ("{a} >= 1", "{a} >= 1"),
    ("{a} <= 1", "{a} <= 1"),
    ("{a} > 1", "{a} > 1"),
])
def test_normalize_condition(raw, normalized):
    assert normalize_condition(raw) == normalized


def test_allocate_suffixes_repeats():
    c = Compiler()
    assert c.allocate("Stop", "end") == "Stop_end"
    assert c.allocate("Stop", "end") == "Stop_end_2"
    assert c.allocate("Stop", "end") == "Stop_end_3"
    assert c.allocate("Stop", "other") == "Stop_other"


def test_fresh_compile_restarts_ids():
    source = "Do: a\nStop"
    first = compile_source(source)
    second = compile_source(source)
    assert [s.id for s in first.states] == [s.id for s in second.states]


def test_sequence_threads_next():
    ir = compile_source("Do: first\nDo: second\nStop")
    states = ir.state_map()
    assert ir.start == "ServiceTask_first"
    assert states["ServiceTask_first"].next == "ServiceTask_second"
    assert states["ServiceTask_second"].next == "Stop_end"
    assert isinstance(states["Stop_end"], StopState)


def test_last_step_without_stop_has_no_next():
    ir = compile_source("Do: only")
    assert ir.states[0].next is None


def test_empty_story_is_error():
    with pytest.raises(CompileError):
        compile_story(Story(name="Empty", steps=()))


def test_expense_ids_and_wiring(examples_dir):
    ir = _compile_example(examples_dir, "expense_approval.story")
    states = ir.state_map()
    assert ir.name == "Expense Approval"
    assert ir.start == "UserTask_employee_for_description_amount_and_date"
    assert list(ir.vars) == ["description", "amount", "date", "decision"]

    amount = states["Choice_amount_1000"]
    assert isinstance(amount, ChoiceState)
    assert amount.branches[0].cond == "{amount} > 1000"
    assert amount.branches[0].next == "UserTask_finance_manager_to_approve_amount"
    assert amount.otherwise == "ServiceTask_auto_approve_expense"

    decision = states["Choice_decision_rejected"]
    assert decision.branches[0].cond == '{decision} == "rejected"'
    assert decision.branches[0].next == "SendTask_email_employee"
    # no Otherwise: falls through to the step after the outer block
    assert decision.otherwise == "SendTask_email_employee_2"

    assert states["SendTask_email_employee"].next == "Stop_Rejected"
    assert states["ServiceTask_auto_approve_expense"].next == "SendTask_email_employee_2"
    assert states["SendTask_email_employee_2"].next == "Stop_end"


def test_ids_follow_reading_order(examples_dir):
    ir = _compile_example(examples_dir, "expense_approval.story")
    assert [s.id for s in ir.states] == [
        "UserTask_employee_for_description_amount_and_date",
        "Choice_amount_1000",
        "UserTask_finance_manager_to_approve_amount",
        "Choice_decision_rejected",
        "SendTask_email_employee",
        "Stop_Rejected",
        "ServiceTask_auto_approve_expense",
        "SendTask_email_employee_2",
        "Stop_end",
    ]


def test_user_task_gets_inferred_form(examples_dir):
    ir = _compile_example(examples_dir, "expense_approval.story")
    first = ir.state_map()[ir.start]
    assert isinstance(first, UserTaskState)
    assert first.assignee == "employee"
    assert [f.name for f in first.form.fields] == ["description", "amount", "date"]
    assert first.form.id == f"form-{first.id}"


def test_user_task_without_variables_has_no_form():
    ir = compile_source("Ask manager to sign off")
    assert ir.states[0].form is None


def test_custom_form_inference_is_used():
    calls = []

    def infer(prompt, task_id):
        calls.append((prompt, task_id))
        return FormDefinition(id="custom", title="Custom")

    ir = compile_source("Ask bob for {x}", infer_form=infer)
    assert calls == [("bob for {x}", "UserTask_bob_for_x")]
    # a form without fields is dropped
    assert ir.states[0].form is None


def test_order_fulfilment_waits(examples_dir):
    ir = _compile_example(examples_dir, "order_fulfilment.story")
    states = ir.state_map()
    receive = states["Receive_carrier_pickup"]
    assert isinstance(receive, ReceiveState)
    assert receive.plain
    assert receive.event == "carrier pickup"
    send = states["SendTask_shipping_notification_with_tracking_number"]
    assert isinstance(send, SendState)
    assert send.to == ""
    wait = states["Wait_2_days_for_delivery"]
    assert isinstance(wait, WaitState)
    assert wait.delay_ms == 172_800_000
    assert wait.name == "Wait 2 days for delivery"
    assert wait.next == "Stop_Delivered"


def test_wait_until_keeps_date():
    ir = compile_source("Wait until 2025-06-01\nStop")
    wait = ir.states[0]
    assert wait.until == "2025-06-01"
    assert wait.delay_ms is None


def test_if_without_any_continuation_uses_shared_stop():
    ir = compile_source("If {ok}\n  Do: ship")
    states = ir.state_map()
    choice = states["Choice_ok"]
    assert choice.otherwise == "Stop_end"
    assert states["ServiceTask_ship"].next is None
    assert states["Stop_end"].reason == "End"


def test_reused_step_object_gets_a_state_per_place():
    notify = ServiceTask("notify")
    story = Story("Shared", steps=(Conditional("{ok}", then=(notify,), otherwise=(notify,)), StopStep()))
    ir = compile_story(story)
    assert [s.id for s in ir.states] == ["Choice_ok", "ServiceTask_notify", "ServiceTask_notify_2", "Stop_end"]
    choice = ir.state_map()["Choice_ok"]
    assert choice.branches[0].next == "ServiceTask_notify"
    assert choice.otherwise == "ServiceTask_notify_2"
    assert ir.state_map()["ServiceTask_notify_2"].next == "Stop_end"


def test_monitor_and_guard_text():
    req = parse_stability_event("stabilized_latency_under_200ms_10min")
    assert monitor_action(req) == "Monitor Latency under 200ms for 10 minutes"
    assert guard_condition(req) == "latency < 200"
    one = parse_stability_event("queue_depth_above_50_1min")
    assert monitor_action(one) == "Monitor Queue Depth above 50 for 1 minute"


def test_stability_event_expands_to_guard(incident_ir):
    states = incident_ir.state_map()
    assert incident_ir.start == "Receive_sustained_latency_above_400ms_5min"
    assert states[incident_ir.start].next == "Choice_latency_stability_guard"

    guard = states["Choice_latency_stability_guard"]
    assert guard.branches[0].cond == "latency > 400"
    assert guard.branches[0].next == "ServiceTask_latency_stability_monitor"
    assert guard.otherwise == "Stop_latency_stability_failed"

    monitor = states["ServiceTask_latency_stability_monitor"]
    assert isinstance(monitor, TaskState)
    assert monitor.next == "Wait_latency_stability_window"

    window = states["Wait_latency_stability_window"]
    assert window.attached_to == "ServiceTask_latency_stability_monitor"
    assert window.delay_ms == 300_000
    assert window.next == "UserTask_monitoring_platform_for_affected_services_custom"


def test_second_stability_event_gets_suffixed_ids(incident_ir):
    states = incident_ir.state_map()
    second = states["Receive_stabilized_latency_under_200ms_10min"]
    assert second.next == "Choice_latency_stability_guard_2"
    assert states["Wait_latency_stability_window_2"].delay_ms == 600_000
    assert states["ServiceTask_latency_stability_monitor_2"].action == "Monitor Latency under 200ms for 10 minutes"


def test_first_event_body_continues_into_second(incident_ir):
    states = incident_ir.state_map()
    last = states["ServiceTask_queue_status_page_update_pending_approval_for_in"]
    assert last.next == "Receive_stabilized_latency_under_200ms_10min"


def test_incident_stop_states(incident_ir):
    stops = sorted(s.id for s in incident_ir.states if isinstance(s, StopState))
    assert stops == [
        "Stop_end",
        "Stop_end_2",
        "Stop_latency_stability_failed",
        "Stop_latency_stability_failed_2",
    ]


def test_all_examples_compile(example_file):
    ir = compile_source(example_file.read_text(), path=str(example_file))
    ids = [s.id for s in ir.states]
    assert len(ids) == len(set(ids))
    assert ir.start in ids


def test_executable_flag_lands_in_metadata():
    ir = compile_source("Do: a", executable=True)
    assert ir.metadata.executable is True
    assert compile_source("Do: a").metadata is None
