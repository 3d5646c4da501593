import json
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.triggers.combining import OrTrigger

from service import scheduler
from service.scheduler import _build_trigger, _make_job_spec, _preview_trigger

UTC = timezone.utc


def _at(*args):
    return datetime(*args, tzinfo=UTC)


def test_interval_fires_every_period():
    trig = _build_trigger({"interval": {"minutes": 30}}, "UTC")
    assert trig.interval.total_seconds() == 1800

    start = _at(2099, 1, 1, 0, 0, 0)
    assert _preview_trigger(trig, UTC, count=3, start=start) == [
        start + timedelta(minutes=30),
        start + timedelta(minutes=60),
        start + timedelta(minutes=90),
    ]


def test_cron_object_defaults_seconds_and_minutes_to_zero():
    trig = _build_trigger({"cron": {"hour": "6,18", "day_of_week": "mon-fri"}}, "UTC")
    # 2096-01-02 is a Monday
    times = _preview_trigger(trig, UTC, count=3, start=_at(2096, 1, 2, 0, 0, 0))
    assert times == [_at(2096, 1, 2, 6, 0, 0), _at(2096, 1, 2, 18, 0, 0), _at(2096, 1, 3, 6, 0, 0)]


def test_cron_string_is_crontab():
    trig = _build_trigger({"cron": "*/20 8 * * *"}, "UTC")
    times = _preview_trigger(trig, UTC, count=4, start=_at(2099, 1, 5, 7, 59, 0))
    assert [(t.hour, t.minute) for t in times] == [(8, 0), (8, 20), (8, 40), (8, 0)]


@pytest.mark.parametrize(
    "spec",
    [
        "2099-01-01T00:00:00Z",
        {"run_at": "2099-01-01T00:00:00+00:00"},
        {"run_at": int(_at(2099, 1, 1, 0, 0, 0).timestamp())},
    ],
)
def test_date_trigger_forms(spec):
    trig = _build_trigger({"date": spec}, "UTC")
    assert trig.run_date == _at(2099, 1, 1, 0, 0, 0)


def test_naive_date_uses_scheduler_tz_unless_block_overrides():
    local = _build_trigger({"date": {"run_at": "2099-07-01T12:00:00"}}, "America/Chicago")
    assert local.run_date.utcoffset() == timedelta(hours=-5)

    override = _build_trigger({"date": {"run_at": "2099-07-01T12:00:00", "timezone": "UTC"}}, "America/Chicago")
    assert override.run_date.utcoffset() == timedelta(0)


def test_daily_time_multiple_entries_are_exact_and_deduped():
    trig = _build_trigger(
        {"daily_time": {"time": ["07:30", "19:00:30", "07:30"], "day_of_week": "sun"}},
        "UTC",
    )
    assert isinstance(trig, OrTrigger)
    # 2099-01-04 is a Sunday
    times = _preview_trigger(trig, UTC, count=3, start=_at(2099, 1, 4, 0, 0, 0))
    assert times == [_at(2099, 1, 4, 7, 30, 0), _at(2099, 1, 4, 19, 0, 30), _at(2099, 1, 11, 7, 30, 0)]


def test_daily_time_single_entry_is_plain_cron():
    trig = _build_trigger({"daily_time": {"time": "03:15"}}, "UTC")
    assert not isinstance(trig, OrTrigger)
    assert _preview_trigger(trig, UTC, count=1, start=_at(2099, 1, 1, 3, 14, 59)) == [_at(2099, 1, 1, 3, 15, 0)]


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"date": {}},
        {"date": "not a date"},
        {"daily_time": {}},
        {"daily_time": {"time": "99:99"}},
        {"daily_time": {"time": "7"}},
        {"cron": "*/15 * *"},
        {"cron": {"minutes": 5}},
        {"interval": {"minutes": -5}},
        {"interval": {"minutes": 0}},
        {"interval": {"fortnights": 1}},
        {"interval": {"minutes": 5}, "cron": "* * * * *"},
    ],
)
def test_invalid_triggers_raise(payload):
    with pytest.raises(ValueError):
        _build_trigger(payload, "UTC")


def test_job_spec_accepts_top_level_trigger_and_defaults():
    spec = _make_job_spec(
        {"module": "modules.group_watch", "interval": {"hours": 1}, "kwargs": {"action": "digest"}, "timeout_sec": "90"},
        default_job_defaults={"coalesce": True, "max_instances": 1},
        tz="UTC",
    )
    assert spec.id == "modules.group_watch"
    assert spec.trigger.interval == timedelta(hours=1)
    assert spec.kwargs == {"action": "digest"}
    assert (spec.timeout_sec, spec.max_instances, spec.coalesce) == (90, 1, True)


def test_start_registers_valid_jobs_and_skips_broken_ones(tmp_path):
    cfg = {
        "timezone": "UTC",
        "jobs": [
            {"id": "gw-digest", "module": "modules.group_watch", "trigger": {"date": "2099-01-01T00:00:00Z"}},
            {"id": "broken", "module": "modules.group_watch", "trigger": {"cron": "nope"}},
        ],
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(cfg), encoding="utf-8")

    controller = scheduler.start(str(path))
    try:
        assert list(controller.get_job_ids()) == ["gw-digest"]
    finally:
        controller.stop()
    assert controller.join(timeout=1.0)
