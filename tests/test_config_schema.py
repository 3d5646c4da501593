import pytest

from service import config_schema
from service.config_schema import ConfigError


def _job(**overrides):
    job = {
        "id": "gw",
        "module": "modules.group_watch",
        "trigger": {"cron": "*/30 * * * *"},
        "kwargs": {"action": "auto", "cron_key_env": "CRON_SECRET_KEY"},
    }
    job.update(overrides)
    return job


def test_load_and_validate_min_config(write_min_config):
    cfg = config_schema.load_config()  # CONFIG_PATH set by fixture
    jobs = cfg.get("jobs", [])
    assert isinstance(jobs, list) and jobs, "expected at least one job"
    assert cfg["timezone"]
    config_schema.validate(cfg)


def test_missing_config_path_gives_empty_default():
    assert config_schema.load_config()["jobs"] == []


def test_yaml_config_and_email_env_resolution(tmp_path, monkeypatch):
    monkeypatch.setenv("DIGEST_ADMINS", "a@example.com, b@example.com")
    p = tmp_path / "config.yaml"
    p.write_text(
        """
timezone: America/Chicago
jobs:
  - name: nightly-digest
    module: modules.group_watch
    daily_time: {time: ["07:30", "19:00:30"]}
    kwargs: {action: digest}
    email_to_env: DIGEST_ADMINS
    send_email: "false"
    timeout_sec: "120"
""",
        encoding="utf-8",
    )
    cfg = config_schema.load_config(str(p))
    [job] = cfg["jobs"]
    assert cfg["timezone"] == "America/Chicago"
    assert job["id"] == "nightly-digest"
    assert job["email_to"] == ["a@example.com", "b@example.com"] and "email_to_env" not in job
    assert job["send_email"] is False and job["timeout_sec"] == 120
    config_schema.validate(cfg)


@pytest.mark.parametrize(
    "trigger",
    [
        {"interval": {"minutes": 15}},
        {"cron": {"minute": "*/5"}},
        {"date": "2099-01-01T00:00:00Z"},
        {"date": 4070908800},
        {"date": {"run_at": "2099-01-01T00:00:00", "timezone": "UTC"}},
        {"daily_time": {"time": "03:15", "day_of_week": "mon-fri"}},
    ],
)
def test_trigger_shapes_accepted_by_scheduler_validate(trigger):
    config_schema.validate({"jobs": [_job(trigger=trigger)]})


@pytest.mark.parametrize(
    ("job", "message"),
    [
        (_job(trigger={"cron": "*/15 * *"}), "5 or 6 fields"),
        (_job(trigger={"daily_time": "03:15"}), "daily_time"),
        (_job(trigger={"daily_time": {"time": "25:00"}}), "out of range"),
        (_job(trigger={"date": {}}), "date"),
        (_job(trigger={"interval": {"minutes": -1}}), "interval.minutes"),
        (_job(trigger={}), "exactly one trigger"),
        (_job(cron="0 * * * *"), "do not mix"),
        (_job(kwargs={"action": "scrape-everything"}), "kwargs.action"),
        (_job(kwargs={"action": "auto"}), "cron_key"),
        (_job(kwargs={"action": "subscribe"}), "email"),
        (_job(kwargs={"action": "unsubscribe"}), "email"),
        (_job(kwargs={"action": "deactivate_group"}), "source_urls"),
        (_job(kwargs={"action": "manual", "source_urls": "https://www.facebook.com/groups/a"}), "source_urls"),
        (_job(max_instances=0), "max_instances"),
        (_job(send_email="sometimes"), "send_email"),
    ],
)
def test_invalid_jobs_are_rejected(job, message):
    with pytest.raises(ConfigError, match=message):
        config_schema.validate({"jobs": [job]})


def test_duplicate_job_ids_are_rejected():
    with pytest.raises(ConfigError, match="Duplicate"):
        config_schema.validate({"jobs": [_job(), _job()]})


def test_unreadable_or_malformed_files(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        config_schema.load_config(str(tmp_path / "missing.json"))

    bad_yaml = tmp_path / "bad.yml"
    bad_yaml.write_text("jobs: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        config_schema.load_config(str(bad_yaml))

    listy = tmp_path / "list.json"
    listy.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigError, match="must be an object"):
        config_schema.load_config(str(listy))
