from __future__ import annotations

import pytest

from domain.models import JobState
from runner.registry import InvalidTransition, RunningJobRegistry

from conftest import make_job


class _Worker:
    async def start(self):
        pass

    async def terminate(self, reason):
        pass


def test_add_and_lifecycle():
    registry = RunningJobRegistry()
    job = make_job(1)
    entry = registry.add(job, _Worker())
    assert entry.state is JobState.ACCEPTED
    assert len(registry) == 1 and 1 in registry

    registry.mark_executing(1)
    assert registry.snapshot()[0]["state"] == "executing"

    assert registry.finish(1, JobState.COMPLETED) is True
    assert len(registry) == 0
    assert 1 not in registry
    assert registry.snapshot() == []


def test_duplicate_job_id_rejected():
    registry = RunningJobRegistry()
    registry.add(make_job("x"), _Worker())
    with pytest.raises(KeyError):
        registry.add(make_job("x"), _Worker())


def test_second_terminal_signal_is_ignored():
    registry = RunningJobRegistry()
    registry.add(make_job(2), _Worker())
    registry.mark_executing(2)
    assert registry.finish(2, JobState.FAILED) is True
    assert registry.finish(2, JobState.COMPLETED) is False
    assert len(registry) == 0


def test_accepted_job_can_fail_before_executing():
    registry = RunningJobRegistry()
    registry.add(make_job(3), _Worker())
    assert registry.finish(3, JobState.FAILED) is True
    # late mark_executing after settlement is a no-op
    registry.mark_executing(3)
    assert 3 not in registry


def test_accepted_job_cannot_complete_without_executing():
    registry = RunningJobRegistry()
    registry.add(make_job(4), _Worker())
    with pytest.raises(InvalidTransition):
        registry.finish(4, JobState.COMPLETED)


def test_finish_requires_terminal_state():
    registry = RunningJobRegistry()
    registry.add(make_job(5), _Worker())
    with pytest.raises(InvalidTransition):
        registry.finish(5, JobState.EXECUTING)


def test_snapshot_lists_running_jobs():
    registry = RunningJobRegistry()
    registry.add(make_job(6, "sleep"), _Worker())
    registry.mark_executing(6)
    (snap,) = registry.snapshot()
    assert snap["job_id"] == 6
    assert snap["job_type"] == "sleep"
    assert snap["state"] == "executing"
    assert snap["running_seconds"] >= 0
