"""
Scheduled job storage.

Jobs live in a single JSON file (``$NANOBOT_HOME/cron/jobs.json``). Two
schedule kinds are supported:

    every   repeat at a fixed interval        "every 30m", "2h", "1d"
    at      run once at a point in time       "2026-11-01T09:00", "in 45m"

A job's ``prompt`` becomes a synthetic user message when it fires. With
``deliver`` set, the response is also sent to ``channel``/``to``.
"""

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from nanobot_constants import get_nanobot_home

logger = logging.getLogger(__name__)

CRON_DIR = get_nanobot_home() / "cron"
JOBS_FILE = CRON_DIR / "jobs.json"
OUTPUT_DIR = CRON_DIR / "output"

MIN_INTERVAL_SECONDS = 60

_DURATION_RE = re.compile(r"^(\d+)\s*(s|sec|secs|m|min|mins|h|hr|hrs|d|day|days)$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_lock = threading.RLock()


# ---------------------------------------------------------------------------
# Schedule parsing
# ---------------------------------------------------------------------------

def parse_duration(text: str) -> int:
    """'30m' -> 1800. Raises ValueError."""
    match = _DURATION_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid duration: {text!r} (use e.g. 30s, 15m, 2h, 1d)")
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)[0].lower()]


def parse_schedule(text: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Turn a human schedule string into a schedule dict.

    Raises:
        ValueError: unparseable, a cron expression, or an interval below
            one minute.
    """
    now = now or datetime.now()
    raw = (text or "").strip()
    lower = raw.lower()

    if lower.startswith("in "):
        seconds = parse_duration(raw[3:])
        run_at = now + timedelta(seconds=seconds)
        return {"kind": "at", "at": run_at.isoformat(timespec="seconds"), "display": f"once at {run_at:%Y-%m-%d %H:%M}"}

    if lower.startswith("every "):
        raw = raw[6:]
    if _DURATION_RE.match(raw):
        seconds = parse_duration(raw)
        if seconds < MIN_INTERVAL_SECONDS:
            raise ValueError(f"Interval must be at least {MIN_INTERVAL_SECONDS} seconds")
        return {"kind": "every", "every_seconds": seconds, "display": f"every {raw}"}

    if len(raw.split()) == 5:
        raise ValueError("Cron expressions are not supported; use 'every <duration>' or an ISO time")

    try:
        run_at = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(
            f"Could not parse schedule {text!r}. Use 'every 30m', '2h', 'in 45m' "
            "or an ISO time like 2026-11-01T09:00"
        ) from None
    if run_at.tzinfo is not None:
        run_at = run_at.astimezone().replace(tzinfo=None)
    return {"kind": "at", "at": run_at.isoformat(timespec="seconds"), "display": f"once at {run_at:%Y-%m-%d %H:%M}"}


def compute_next_run(schedule: Dict[str, Any], after: Optional[datetime] = None) -> Optional[str]:
    after = after or datetime.now()
    if schedule["kind"] == "every":
        return (after + timedelta(seconds=schedule["every_seconds"])).isoformat(timespec="seconds")
    if schedule["kind"] == "at":
        return schedule["at"]
    return None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load_jobs() -> List[Dict[str, Any]]:
    with _lock:
        if not JOBS_FILE.exists():
            return []
        try:
            data = json.loads(JOBS_FILE.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Could not read %s: %s", JOBS_FILE, e)
            return []
        return list(data.get("jobs", []))


def save_jobs(jobs: List[Dict[str, Any]]) -> None:
    with _lock:
        JOBS_FILE.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(JOBS_FILE.parent), prefix=".jobs_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"version": 1, "jobs": jobs}, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, JOBS_FILE)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def create_job(
    prompt: str,
    schedule: str,
    name: Optional[str] = None,
    *,
    deliver: bool = False,
    channel: Optional[str] = None,
    to: Optional[str] = None,
) -> Dict[str, Any]:
    """Create and persist a job. Raises ValueError for a bad schedule."""
    parsed = parse_schedule(schedule)
    now = datetime.now()
    job = {
        "id": uuid.uuid4().hex[:12],
        "name": name or prompt[:40],
        "prompt": prompt,
        "schedule": {k: v for k, v in parsed.items() if k != "display"},
        "schedule_display": parsed["display"],
        "enabled": True,
        "deliver": deliver,
        "channel": channel,
        "to": to,
        "delete_after_run": parsed["kind"] == "at",
        "created_at": now.isoformat(timespec="seconds"),
        "next_run_at": compute_next_run(parsed, now),
        "last_run_at": None,
        "last_status": None,
        "last_error": None,
        "run_count": 0,
    }
    with _lock:
        jobs = load_jobs()
        jobs.append(job)
        save_jobs(jobs)
    logger.info("Created job %s (%s)", job["id"], job["schedule_display"])
    return job


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    for job in load_jobs():
        if job["id"] == job_id:
            return job
    return None


def list_jobs(include_disabled: bool = False) -> List[Dict[str, Any]]:
    jobs = load_jobs()
    if not include_disabled:
        jobs = [j for j in jobs if j.get("enabled", True)]
    return sorted(jobs, key=lambda j: j.get("next_run_at") or "")


def update_job(job_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    with _lock:
        jobs = load_jobs()
        for job in jobs:
            if job["id"] == job_id:
                job.update(updates)
                save_jobs(jobs)
                return job
    return None


def enable_job(job_id: str, enabled: bool = True) -> Optional[Dict[str, Any]]:
    updates: Dict[str, Any] = {"enabled": enabled}
    if enabled:
        job = get_job(job_id)
        if job is not None and job["schedule"]["kind"] == "every":
            updates["next_run_at"] = compute_next_run(job["schedule"])
    return update_job(job_id, updates)


def remove_job(job_id: str) -> bool:
    with _lock:
        jobs = load_jobs()
        remaining = [j for j in jobs if j["id"] != job_id]
        if len(remaining) == len(jobs):
            return False
        save_jobs(remaining)
    logger.info("Removed job %s", job_id)
    return True


# ---------------------------------------------------------------------------
# Scheduler support
# ---------------------------------------------------------------------------

def get_due_jobs(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now_iso = (now or datetime.now()).isoformat(timespec="seconds")
    return [
        job for job in load_jobs()
        if job.get("enabled", True) and job.get("next_run_at") and job["next_run_at"] <= now_iso
    ]


def mark_job_run(job_id: str, success: bool, error: Optional[str] = None,
                 now: Optional[datetime] = None) -> None:
    """Record a run; reschedule ``every`` jobs, retire one-shot jobs."""
    now = now or datetime.now()
    with _lock:
        jobs = load_jobs()
        for job in jobs:
            if job["id"] != job_id:
                continue
            job["last_run_at"] = now.isoformat(timespec="seconds")
            job["last_status"] = "ok" if success else "error"
            job["last_error"] = error
            job["run_count"] = job.get("run_count", 0) + 1
            if job["schedule"]["kind"] == "every":
                job["next_run_at"] = compute_next_run(job["schedule"], now)
            else:
                job["next_run_at"] = None
                job["enabled"] = False
            break
        else:
            return
        if job.get("delete_after_run") and job["schedule"]["kind"] == "at":
            jobs = [j for j in jobs if j["id"] != job_id]
        save_jobs(jobs)


def save_job_output(job_id: str, output: str) -> Path:
    job_dir = OUTPUT_DIR / job_id
    job_dir.mkdir(parents=True, exist_ok=True)
    path = job_dir / f"{datetime.now():%Y%m%d_%H%M%S}.md"
    path.write_text(output, encoding="utf-8")
    return path
