from __future__ import annotations

import io
import sys
import textwrap

import pytest

from runner import protocol
from runner.local_entry import local_runner_script_entry
from runner.worker_runtime import JobContext, execute, main


def _execute(tmp_path, source=None, job=None, script=None):
    if script is None:
        script = tmp_path / "job_script.py"
        script.write_text(textwrap.dedent(source), encoding="utf-8")
    job = job or {"jobId": 1, "jobType": "test", "payload": {}}
    channel = io.StringIO()
    execute(script, job, JobContext(job, channel))
    return [protocol.decode(line) for line in channel.getvalue().splitlines()]


def test_sync_script_result_is_reported(tmp_path):
    messages = _execute(
        tmp_path,
        """
        def run(job, ctx):
            ctx.info("hello")
            ctx.update(progress=0.5)
            return {"answer": 42}
        """,
    )
    assert messages[0]["type"] == "log" and messages[0]["message"] == "hello"
    assert messages[1] == {"type": "update", "done": False, "failedReason": None, "fields": {"progress": 0.5}}
    assert messages[-1] == {"type": "update", "done": True, "failedReason": None, "fields": {"result": {"answer": 42}}}


def test_async_script(tmp_path):
    messages = _execute(
        tmp_path,
        """
        import asyncio

        async def run(job, ctx):
            await asyncio.sleep(0)
            ctx.warn("careful")
        """,
    )
    assert messages[0]["level"] == "warn"
    assert messages[-1]["done"] is True
    assert messages[-1]["fields"] == {}


def test_script_exception_becomes_failed_reason(tmp_path):
    messages = _execute(
        tmp_path,
        """
        def run(job, ctx):
            raise RuntimeError("boom")
        """,
    )
    error_line, done = messages
    assert error_line["level"] == "error"
    assert error_line["message"].startswith("job failed [type=test]")
    assert "RuntimeError: boom" in error_line["message"]
    assert done["done"] is True
    assert done["failedReason"] == "RuntimeError: boom"


def test_script_without_run(tmp_path):
    messages = _execute(tmp_path, "VALUE = 1\n")
    assert messages[-1]["failedReason"].startswith("AttributeError")


def test_finish_is_reported_once(tmp_path):
    messages = _execute(
        tmp_path,
        """
        def run(job, ctx):
            ctx.finish(failed_reason="gave up")
            return {"ignored": True}
        """,
    )
    dones = [m for m in messages if m["type"] == "update" and m["done"]]
    assert len(dones) == 1
    assert dones[0]["failedReason"] == "gave up"


def test_echo_script():
    job = {"jobId": 1, "jobType": "echo", "payload": {"message": "hi there"}}
    messages = _execute(None, job=job, script=local_runner_script_entry("echo"))
    assert messages[0]["message"] == "hi there"
    assert messages[-1]["fields"] == {"result": {"echoed": "hi there"}}


def test_sleep_script_reports_progress():
    job = {"jobId": 1, "jobType": "sleep", "payload": {"seconds": 0.02, "step": 0.01}}
    messages = _execute(None, job=job, script=local_runner_script_entry("sleep"))
    progress = [m["fields"]["progress"] for m in messages if m["type"] == "update" and not m["done"]]
    assert progress[-1] == 1.0
    assert messages[-1]["done"] is True


def test_command_script_streams_output():
    job = {"jobId": 1, "jobType": "command", "payload": {"argv": [sys.executable, "-c", "print('from child')"]}}
    messages = _execute(None, job=job, script=local_runner_script_entry("command"))
    logged = [m["message"] for m in messages if m["type"] == "log"]
    assert "from child" in logged
    assert messages[-1]["fields"] == {"result": {"returncode": 0}}


def test_command_script_nonzero_exit_fails():
    job = {"jobId": 1, "jobType": "command", "payload": {"argv": [sys.executable, "-c", "raise SystemExit(4)"]}}
    messages = _execute(None, job=job, script=local_runner_script_entry("command"))
    assert messages[-1]["failedReason"] == "RuntimeError: command exited with code 4"


def test_main_usage_error():
    assert main([]) == 2


@pytest.mark.parametrize("line", ["not json", '{"type": "other"}', "[1, 2]"])
def test_protocol_rejects_foreign_lines(line):
    with pytest.raises(ValueError):
        protocol.decode(line)
