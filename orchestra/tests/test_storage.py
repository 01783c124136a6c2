import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

from orchestra.models.jobs import PersistedJob
from orchestra.models.orchestrator import ParsedQuery, TargetSite
from orchestra.services.storage import (
    fetch_job,
    init_db,
    job_record_from_state,
    list_jobs,
    load_job_state,
    persist_job,
    remove_job,
)
from orchestra.workflows.state_machine import (
    ExecutionStarted,
    ParseSucceeded,
    QuerySubmitted,
    initial_state,
    transition,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _job(index: int, status: str = "complete") -> PersistedJob:
    return PersistedJob(
        id=f"job-{index}",
        query=f"query {index}",
        status=status,
        created_at=T0 + timedelta(minutes=index),
        total=3,
        completed=2,
        failed=1,
    )


def _running_state():
    site = TargetSite(id="amazon", name="Amazon", domain="amazon.com", selected=True)
    parsed = ParsedQuery(
        original_query="price for widget",
        intent="price_comparison",
        subject="widget",
        goal="find best price",
        suggested_sites=[site],
    )
    state = transition(initial_state("q1"), QuerySubmitted(query="price for widget"))
    state = transition(state, ParseSucceeded(parsed=parsed))
    return transition(state, ExecutionStarted(run_token="r1", at=T0))


def test_persist_and_fetch_job_round_trips_state(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"
    state = _running_state()
    job = job_record_from_state(state)

    assert job.id == "q1"
    assert job.status == "running"
    assert job.created_at == T0
    assert job.completed_at is None
    assert job.total == 1

    async def _run() -> None:
        await init_db(db_path)
        await persist_job(db_path, job)
        fetched = await fetch_job(db_path, "q1")
        assert fetched is not None
        assert fetched.query == "price for widget"
        assert fetched.created_at == T0
        restored = load_job_state(fetched)
        assert restored.model_dump() == state.model_dump()

    asyncio.run(_run())


def test_persist_job_updates_in_place(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"

    async def _run() -> None:
        await init_db(db_path)
        await persist_job(db_path, _job(1, status="running"))
        updated = _job(1).model_copy(
            update={"created_at": T0 + timedelta(days=1), "completed_at": T0 + timedelta(hours=1)}
        )
        await persist_job(db_path, updated)

        jobs = await list_jobs(db_path)
        assert len(jobs) == 1
        assert jobs[0].status == "complete"
        assert jobs[0].created_at == T0 + timedelta(minutes=1)
        assert jobs[0].completed_at == T0 + timedelta(hours=1)

    asyncio.run(_run())


def test_persist_job_trims_to_newest(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"

    async def _run() -> None:
        await init_db(db_path)
        for index in range(5):
            await persist_job(db_path, _job(index), max_jobs=3)

        jobs = await list_jobs(db_path)
        assert [job.id for job in jobs] == ["job-4", "job-3", "job-2"]
        assert await fetch_job(db_path, "job-0") is None

    asyncio.run(_run())


def test_remove_job(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"

    async def _run() -> None:
        await init_db(db_path)
        await persist_job(db_path, _job(1))
        assert await remove_job(db_path, "job-1") is True
        assert await remove_job(db_path, "job-1") is False
        assert await fetch_job(db_path, "job-1") is None

    asyncio.run(_run())


def test_job_record_for_configuring_state_uses_now() -> None:
    state = transition(initial_state("q2"), QuerySubmitted(query="hello"))
    now = T0 + timedelta(hours=2)

    job = job_record_from_state(state, now)

    assert job.status == "configuring"
    assert job.created_at == now
    assert job.state_json is not None
