"""
Cron job scheduler - turns due jobs into synthetic user messages.

This module provides:
- run_job(): submit one job as an InboundMessage (channel "cron")
- tick(): run all due jobs once
- run_daemon(): tick every ``check_interval`` seconds until stopped

Jobs run in their own conversation (``cron:<job_id>``), so a recurring job
keeps its history between runs without touching any chat's session.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Tuple

from cron.jobs import get_due_jobs, mark_job_run, save_job_output
from gateway.events import STATUS_OK, InboundMessage, OutboundMessage

logger = logging.getLogger(__name__)

Submit = Callable[[InboundMessage], Awaitable[OutboundMessage]]
Deliver = Callable[[OutboundMessage], Awaitable[None]]


def job_envelope(job: Dict) -> InboundMessage:
    return InboundMessage(
        conversation_id=f"cron:{job['id']}",
        text=job["prompt"],
        channel="cron",
        sender="scheduler",
        metadata={"job_id": job["id"], "job_name": job.get("name", "")},
    )


def _format_output(job: Dict, response: OutboundMessage) -> str:
    return (
        f"# Cron Job: {job.get('name', job['id'])}\n\n"
        f"**Job ID:** {job['id']}\n"
        f"**Run Time:** {datetime.now():%Y-%m-%d %H:%M:%S}\n"
        f"**Schedule:** {job.get('schedule_display', 'N/A')}\n"
        f"**Status:** {response.status}\n\n"
        f"## Prompt\n\n{job['prompt']}\n\n"
        f"## Response\n\n{response.text or '(No response generated)'}\n"
    )


async def run_job(job: Dict, submit: Submit, deliver: Optional[Deliver] = None) -> Tuple[bool, OutboundMessage]:
    """Submit one job and optionally deliver its response. Returns (success, response)."""
    logger.info("Running job '%s' (ID: %s)", job.get("name"), job["id"])
    response = await submit(job_envelope(job))
    success = response.status == STATUS_OK

    if deliver is not None and job.get("deliver") and job.get("channel") and job.get("to"):
        outbound = OutboundMessage(
            conversation_id=response.conversation_id,
            text=response.text,
            status=response.status,
            channel=job["channel"],
            chat_id=job["to"],
        )
        try:
            await deliver(outbound)
        except Exception as e:
            logger.warning("Delivery of job %s to %s:%s failed: %s", job["id"], job["channel"], job["to"], e)
    return success, response


async def tick(submit: Submit, deliver: Optional[Deliver] = None, now: Optional[datetime] = None) -> int:
    """Run every due job once. Returns the number of jobs executed."""
    due_jobs = get_due_jobs(now)
    if not due_jobs:
        logger.debug("No jobs due")
        return 0
    logger.info("%d job(s) due", len(due_jobs))

    executed = 0
    for job in due_jobs:
        try:
            success, response = await run_job(job, submit, deliver)
            output_file = save_job_output(job["id"], _format_output(job, response))
            logger.debug("Output saved to %s", output_file)
            mark_job_run(job["id"], success, None if success else response.status)
            executed += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error processing job %s: %s", job["id"], e)
            mark_job_run(job["id"], False, f"{type(e).__name__}: {e}")
    return executed


async def run_daemon(submit: Submit, deliver: Optional[Deliver] = None, check_interval: float = 60,
                     stop_event: Optional[asyncio.Event] = None) -> None:
    """Tick until ``stop_event`` is set (or forever)."""
    stop_event = stop_event or asyncio.Event()
    logger.info("Starting scheduler (checking every %ss)", check_interval)
    while not stop_event.is_set():
        try:
            await tick(submit, deliver)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Tick error: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=check_interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Scheduler stopped")


async def _main(mode: str, interval: int) -> None:
    from nanobot_cli.runtime import build_runtime

    runtime = build_runtime()
    try:
        if mode == "daemon":
            await run_daemon(runtime.gateway.submit, runtime.gateway.deliver, check_interval=interval)
        else:
            await tick(runtime.gateway.submit, runtime.gateway.deliver)
    finally:
        await runtime.aclose()


if __name__ == "__main__":
    # python -m cron.scheduler [daemon|tick]
    import argparse

    from gateway.run import configure_logging

    parser = argparse.ArgumentParser(description="nanobot scheduler")
    parser.add_argument("mode", choices=["daemon", "tick"], default="tick", nargs="?",
                        help="Mode: 'tick' to run once, 'daemon' to run continuously")
    parser.add_argument("--interval", type=int, default=60,
                        help="Check interval in seconds for daemon mode")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()
    configure_logging(verbose=args.verbose)
    try:
        asyncio.run(_main(args.mode, args.interval))
    except KeyboardInterrupt:
        pass
