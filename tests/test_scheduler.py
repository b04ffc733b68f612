"""
Tests for the background map scheduler.
"""

import asyncio
import logging
import threading
from unittest.mock import AsyncMock, patch

import pytest
import schedule

from airquality.scheduler import make_job, run_schedule


@pytest.fixture
def loop_in_thread():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


def test_job_runs_trigger_on_the_loop(loop_in_thread):
    trigger = AsyncMock(return_value="/maps/files/latest.html")
    make_job(trigger, loop_in_thread)()
    trigger.assert_awaited_once()


def test_job_failure_is_logged_not_raised(loop_in_thread, caplog):
    trigger = AsyncMock(side_effect=RuntimeError("influx down"))
    with caplog.at_level(logging.ERROR):
        make_job(trigger, loop_in_thread)()
    assert "influx down" in caplog.text


def test_run_schedule_registers_job():
    loop = asyncio.new_event_loop()
    try:
        with patch("airquality.scheduler.threading.Thread") as thread:
            job = run_schedule(AsyncMock(), loop, every_minutes=30)
        try:
            assert job in schedule.get_jobs()
            assert job.interval == 30
            assert job.unit == "minutes"
            thread.return_value.start.assert_called_once()
            assert thread.call_args.kwargs["daemon"] is True
        finally:
            schedule.cancel_job(job)
    finally:
        loop.close()
