"""Tests for cron/jobs.py -- schedule parsing, job CRUD, and due-job detection."""

import json
from datetime import datetime, timedelta

import pytest

from cron import jobs as cron_jobs
from cron.jobs import (
    compute_next_run,
    create_job,
    enable_job,
    get_due_jobs,
    get_job,
    list_jobs,
    mark_job_run,
    parse_duration,
    parse_schedule,
    remove_job,
    save_job_output,
    update_job,
)

NOW = datetime(2026, 10, 19, 12, 0, 0)


# =========================================================================
# parse_duration / parse_schedule
# =========================================================================

class TestParseDuration:
    @pytest.mark.parametrize("text,seconds", [
        ("30s", 30), ("15m", 900), ("15 min", 900), ("2h", 7200), ("2hrs", 7200), ("1d", 86400), ("3 days", 259200),
    ])
    def test_units(self, text, seconds):
        assert parse_duration(text) == seconds

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_duration("soon")


class TestParseSchedule:
    def test_every(self):
        assert parse_schedule("every 30m") == {"kind": "every", "every_seconds": 1800, "display": "every 30m"}
        assert parse_schedule("2h")["every_seconds"] == 7200

    def test_interval_floor(self):
        with pytest.raises(ValueError, match="at least"):
            parse_schedule("every 30s")

    def test_relative_one_shot(self):
        schedule = parse_schedule("in 45m", now=NOW)
        assert schedule["kind"] == "at"
        assert schedule["at"] == "2026-10-19T12:45:00"

    def test_iso_one_shot(self):
        schedule = parse_schedule("2026-11-01T09:00")
        assert schedule == {"kind": "at", "at": "2026-11-01T09:00:00", "display": "once at 2026-11-01 09:00"}

    def test_cron_expressions_rejected(self):
        with pytest.raises(ValueError, match="not supported"):
            parse_schedule("*/5 * * * *")

    @pytest.mark.parametrize("text", ["", "whenever", "every blue moon"])
    def test_garbage(self, text):
        with pytest.raises(ValueError):
            parse_schedule(text)


def test_compute_next_run():
    assert compute_next_run({"kind": "every", "every_seconds": 60}, NOW) == "2026-10-19T12:01:00"
    assert compute_next_run({"kind": "at", "at": "2026-11-01T09:00:00"}, NOW) == "2026-11-01T09:00:00"


# =========================================================================
# CRUD
# =========================================================================

class TestJobCrud:
    def test_create_persists(self):
        job = create_job("Check server status", "every 1h", deliver=True, channel="telegram", to="7")
        assert job["name"] == "Check server status"
        assert job["delete_after_run"] is False
        stored = json.loads(cron_jobs.JOBS_FILE.read_text(encoding="utf-8"))
        assert stored["version"] == 1
        assert stored["jobs"][0]["id"] == job["id"]
        assert get_job(job["id"])["channel"] == "telegram"

    def test_create_rejects_bad_schedule(self):
        with pytest.raises(ValueError):
            create_job("x", "never")
        assert list_jobs() == []

    def test_one_shot_is_deleted_after_run(self):
        job = create_job("Remind me", "in 1h")
        assert job["delete_after_run"] is True

    def test_list_sorted_by_next_run_and_filters_disabled(self):
        later = create_job("later", "every 2h")
        sooner = create_job("sooner", "every 1h")
        disabled = create_job("off", "every 1h")
        enable_job(disabled["id"], False)

        assert [j["id"] for j in list_jobs()] == [sooner["id"], later["id"]]
        assert len(list_jobs(include_disabled=True)) == 3

    def test_update_and_remove(self):
        job = create_job("x", "every 1h")
        assert update_job(job["id"], {"name": "renamed"})["name"] == "renamed"
        assert update_job("missing", {"name": "y"}) is None
        assert remove_job(job["id"]) is True
        assert remove_job(job["id"]) is False
        assert get_job(job["id"]) is None

    def test_corrupt_file_reads_as_empty(self):
        cron_jobs.JOBS_FILE.parent.mkdir(parents=True, exist_ok=True)
        cron_jobs.JOBS_FILE.write_text("{not json", encoding="utf-8")
        assert list_jobs() == []


# =========================================================================
# Scheduler support
# =========================================================================

class TestDueJobs:
    def test_due_detection(self):
        job = create_job("tick", "every 1h")
        now = datetime.now()
        assert get_due_jobs(now) == []
        assert [j["id"] for j in get_due_jobs(now + timedelta(hours=2))] == [job["id"]]

    def test_disabled_jobs_never_due(self):
        job = create_job("tick", "every 1h")
        enable_job(job["id"], False)
        assert get_due_jobs(datetime.now() + timedelta(days=1)) == []

    def test_mark_run_reschedules_recurring(self):
        job = create_job("tick", "every 1h")
        mark_job_run(job["id"], True, now=NOW)
        updated = get_job(job["id"])
        assert updated["next_run_at"] == "2026-10-19T13:00:00"
        assert updated["last_status"] == "ok"
        assert updated["run_count"] == 1

    def test_mark_run_records_error(self):
        job = create_job("tick", "every 1h")
        mark_job_run(job["id"], False, "error", now=NOW)
        assert get_job(job["id"])["last_error"] == "error"

    def test_mark_run_retires_one_shot(self):
        job = create_job("once", "in 5m")
        mark_job_run(job["id"], True)
        assert get_job(job["id"]) is None

    def test_mark_unknown_job_is_noop(self):
        mark_job_run("missing", True)
        assert not cron_jobs.JOBS_FILE.exists()


def test_save_job_output():
    path = save_job_output("abc", "# output")
    assert path.parent == cron_jobs.OUTPUT_DIR / "abc"
    assert path.read_text(encoding="utf-8") == "# output"
