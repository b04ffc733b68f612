#file: airquality/scheduler.py

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable

import schedule


def make_job(trigger: Callable[[], Awaitable[object]], loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
    """Wrap an async trigger so the scheduler thread runs it on the application loop and waits for it."""

    def job() -> None:
        try:
            future = asyncio.run_coroutine_threadsafe(trigger(), loop)
            future.result()
        except Exception as e:
            logging.error(f"Scheduled job failed: {e}")

    return job


def run_schedule(trigger: Callable[[], Awaitable[object]], loop: asyncio.AbstractEventLoop,
                 every_minutes: int = 30, poll_seconds: int = 30) -> schedule.Job:
    """Schedule map generation every every_minutes in a background thread."""
    # the job blocks the scheduler thread until the run finishes, so runs never overlap
    scheduled = schedule.every(every_minutes).minutes.do(make_job(trigger, loop))

    def run_continuously():
        while True:
            schedule.run_pending()
            time.sleep(poll_seconds)  # Use time.sleep for synchronous thread

    thread = threading.Thread(target=run_continuously, daemon=True)
    thread.start()
    logging.info(f"Scheduler started in background thread (every {every_minutes} minutes)")
    return scheduled
