"""Tests for wait-spec and stability-event decoding."""

import pytest

from storyflow.durations import (
    format_duration,
    format_number,
    minutes_to_ms,
    parse_stability_event,
    parse_wait_spec,
    round_half_up,
    to_minutes,
)


@pytest.mark.parametrize("spec,ms", [
    ("5 minutes", 300_000),
    ("30 seconds", 30_000),
    ("2 hours", 7_200_000),
    ("2 days", 172_800_000),
    ("1 week", 604_800_000),
    ("250 ms", 250),
    ("1.5 hours", 5_400_000),
    ("10min", 600_000),
])
def test_duration_to_ms(spec, ms):
    assert parse_wait_spec(spec).delay_ms == ms


def test_duration_with_label():
    decoded = parse_wait_spec("2 days for delivery")
    assert decoded.delay_ms == 172_800_000
    assert decoded.label == "delivery"
    assert decoded.until is None


def test_open_ended_for():
    decoded = parse_wait_spec("for manager approval")
    assert decoded.delay_ms is None
    assert decoded.label == "manager approval"


def test_until_date():
    decoded = parse_wait_spec("until 2025-03-01T09:00:00Z")
    assert decoded.until == "2025-03-01T09:00:00Z"
    assert decoded.delay_ms is None


@pytest.mark.parametrize("spec", ["a while", "5 fortnights", "", "soon"])
def test_unreadable_specs(spec):
    assert parse_wait_spec(spec) is None


def test_unknown_unit():
    assert to_minutes(3, "lightyears") is None
    assert to_minutes(120, "seconds") == 2


def test_stability_under():
    req = parse_stability_event("stabilized_latency_under_200ms_10min")
    assert req.metric == "latency"
    assert req.comparator == "<"
    assert req.comparator_word == "under"
    assert req.threshold == 200
    assert req.threshold_unit == "ms"
    assert req.duration_minutes == 10
    assert req.duration_ms == 600_000


def test_stability_above_strips_qualifier():
    req = parse_stability_event("sustained_latency_above_400ms_5min")
    assert req.metric == "latency"
    assert req.comparator == ">"
    assert req.threshold == 400
    assert req.duration_ms == 300_000


def test_stability_multiword_metric_and_percent():
    req = parse_stability_event("error_rate_below_2%_1h")
    assert req.metric == "error_rate"
    assert req.threshold_unit == "%"
    assert req.duration_minutes == 60


@pytest.mark.parametrize("token", ["payment_received", "latency_under_fast_10min", "cpu_under_80_5parsecs"])
def test_opaque_events(token):
    assert parse_stability_event(token) is None


@pytest.mark.parametrize("ms,text", [
    (600_000, "PT10M0S"),
    (300_000, "PT5M0S"),
    (30_000, "PT30S"),
    (172_800_000, "PT48H0S"),
    (5_430_000, "PT1H30M30S"),
    (2_500, "PT3S"),
    (1_499, "PT1S"),
    (0, "PT0S"),
    (-5, "PT0S"),
    (None, "PT0S"),
])
def test_format_duration(ms, text):
    assert format_duration(ms) == text


def test_format_number():
    assert format_number(200.0) == "200"
    assert format_number(0.5) == "0.5"


def test_rounding_is_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(1.49) == 1
    assert minutes_to_ms(0.5) == 30_000
