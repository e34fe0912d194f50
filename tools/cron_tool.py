"""
Scheduling tools: schedule_task, list_tasks, remove_task.

Lets the model set reminders and recurring tasks for itself. By default a
task's response is delivered back to the chat that scheduled it.
"""

import json
import logging

from agent.errors import InvalidToolInput, ToolFailed
from cron import jobs as cron_jobs
from tools.registry import ToolContext

logger = logging.getLogger(__name__)


def schedule_task(args: dict, context: ToolContext = None, **kwargs) -> str:
    deliver = args.get("deliver", True)
    channel = args.get("channel") or (context.channel if context else None)
    to = args.get("to") or (context.chat_id if context else None)
    # Responses to jobs created from a cron run have nowhere to go.
    if channel == "cron":
        deliver, channel, to = False, None, None
    try:
        job = cron_jobs.create_job(
            args["prompt"],
            args["schedule"],
            args.get("name"),
            deliver=deliver,
            channel=channel,
            to=to,
        )
    except ValueError as e:
        raise InvalidToolInput(str(e)) from e
    return json.dumps({
        "success": True,
        "job_id": job["id"],
        "name": job["name"],
        "schedule": job["schedule_display"],
        "next_run_at": job["next_run_at"],
    })


def list_tasks(args: dict, **kwargs) -> str:
    jobs = cron_jobs.list_jobs(include_disabled=bool(args.get("include_disabled")))
    return json.dumps({
        "success": True,
        "count": len(jobs),
        "jobs": [
            {
                "job_id": j["id"],
                "name": j["name"],
                "prompt": j["prompt"][:100],
                "schedule": j.get("schedule_display"),
                "enabled": j.get("enabled", True),
                "next_run_at": j.get("next_run_at"),
                "last_status": j.get("last_status"),
            }
            for j in jobs
        ],
    }, ensure_ascii=False)


def remove_task(args: dict, **kwargs) -> str:
    if not cron_jobs.remove_job(args["job_id"]):
        raise ToolFailed(f"No scheduled task with id {args['job_id']!r}")
    return json.dumps({"success": True, "message": f"Removed task {args['job_id']}"})


def register(registry):
    """Register scheduling tools with the tool registry."""
    registry.register(
        name="schedule_task",
        capability="scheduling",
        description=(
            "Schedule a task for later. The prompt is sent to you as a message "
            "when it fires. Schedules: 'every 30m', '2h' (recurring), 'in 45m' or "
            "an ISO time like '2026-11-01T09:00' (one-shot)."
        ),
        schema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "What to do when the task fires"},
                "schedule": {"type": "string", "description": "When to run (see description)"},
                "name": {"type": "string", "description": "Optional short name"},
                "deliver": {
                    "type": "boolean",
                    "description": "Send the response to this chat (default true)",
                },
                "channel": {"type": "string", "description": "Optional: deliver to another channel"},
                "to": {"type": "string", "description": "Optional: deliver to another chat id"},
            },
            "required": ["prompt", "schedule"],
        },
        handler=schedule_task,
    )

    registry.register(
        name="list_tasks",
        capability="scheduling",
        description="List scheduled tasks with their next run time.",
        schema={
            "type": "object",
            "properties": {
                "include_disabled": {"type": "boolean", "description": "Include finished/disabled tasks"},
            },
        },
        handler=list_tasks,
    )

    registry.register(
        name="remove_task",
        capability="scheduling",
        description="Remove a scheduled task by id.",
        schema={
            "type": "object",
            "properties": {
                "job_id": {"type": "string", "description": "The job_id from list_tasks"},
            },
            "required": ["job_id"],
        },
        handler=remove_task,
    )
