import os
import sys
import asyncio
import sqlite3
import pytest
from loguru import logger

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from novel.events import RunEvent
from utils.errors import ConcurrentRunConflict, PersistenceError
from utils.file import text_file_read
from utils.models import RunInput
from tests.fakes import FakeClient, Hang, arc_for_prompt, critic_review, default_continuity


PROJECT = "p-run"


def run_input(target_chapters: int = 4, chapters_per_arc: int = 2, **kwargs) -> RunInput:
    return RunInput(
        project_id=PROJECT,
        premise="A fallen heir regains his power.",
        genre="xianxia",
        target_chapters=target_chapters,
        chapters_per_arc=chapters_per_arc,
        **kwargs,
    )


def record_events(orchestrator) -> list:
    events = []

    def handler(event: RunEvent):
        events.append(event)

    orchestrator.subscribe(handler)
    return events


def fail_chapter(chapter_number: int):
    def respond(user_prompt: str):
        if f"# Chapter {chapter_number}:" in user_prompt:
            return critic_review(3)
        return critic_review(8)
    return respond


@pytest.mark.asyncio
async def test_full_run_plans_and_writes_every_chapter(make_orchestrator, project_db, store, tmp_path):
    client = FakeClient()
    orchestrator = make_orchestrator(client)

    result = await orchestrator.run(run_input())
    logger.info(f"run finished: {result.status}, {result.chapters_written} chapters")

    assert result.status == "completed"
    assert result.chapters_written == 4
    assert result.chapters_failed == 0
    assert [r.chapter_number for r in result.results] == [1, 2, 3, 4]
    assert all(r.state == "ACCEPTED" for r in result.results)

    project = project_db.get_project(PROJECT)
    assert project.current_chapter == 4
    assert project.status == "completed"
    assert len(project_db.get_arcs(PROJECT)) == 2
    assert project_db.get_checkpoint(PROJECT).current_chapter == 4
    assert [r.chapter_number for r in await store.get_chapter_results(PROJECT)] == [1, 2, 3, 4]

    text = text_file_read(str(tmp_path / "output" / f"{PROJECT}.txt"))
    assert text.count("Chapter ") >= 4
    assert text.index("Chapter 1:") < text.index("Chapter 4:")

    state = orchestrator.get_state()
    assert state.status == "completed"
    assert state.chapters_written == 4
    assert state.total_arcs == 2
    assert orchestrator.get_story_outline().title == "Heir of Ashes"
    assert len(orchestrator.get_arc_outlines()) == 2
    assert result.cost_report.calls_by_task["write"] == 4
    assert orchestrator.get_cost_report().total_calls == result.cost_report.total_calls
    assert orchestrator.estimate_remaining_cost()["remaining_chapters"] == 0


@pytest.mark.asyncio
async def test_event_order(make_orchestrator):
    orchestrator = make_orchestrator(FakeClient())
    events = record_events(orchestrator)
    await orchestrator.run(run_input())

    chapter_events = ["chapter_started", "chapter_completed", "progress"]
    expected = (
        ["status_change", "story_planned", "status_change", "arc_planned", "arc_planned", "status_change"]
        + ["arc_started"] + chapter_events * 2 + ["arc_completed"]
        + ["arc_started"] + chapter_events * 2 + ["arc_completed"]
        + ["status_change", "completed"]
    )
    assert [e.name for e in events] == expected
    assert [e.seq for e in events] == list(range(len(events)))
    statuses = [e.payload["status"] for e in events if e.name == "status_change"]
    assert statuses == ["planning_story", "planning_arcs", "writing", "completed"]
    completed = events[-1].payload
    assert completed["novel_finished"] is True
    assert completed["chapters_written"] == 4
    progress = [e.payload["percent"] for e in events if e.name == "progress"]
    assert progress == [25.0, 50.0, 75.0, 100.0]


@pytest.mark.asyncio
async def test_session_limit_then_resume(make_orchestrator, project_db):
    first_client = FakeClient()
    first = await make_orchestrator(first_client).run(run_input(chapters_to_write=2))
    assert first.status == "completed"
    assert first.chapters_written == 2
    project = project_db.get_project(PROJECT)
    assert project.current_chapter == 2
    assert project.status == "active"

    second_client = FakeClient()
    orchestrator = make_orchestrator(second_client)
    events = record_events(orchestrator)
    second = await orchestrator.run(run_input())
    assert second.status == "completed"
    assert [r.chapter_number for r in second.results] == [3, 4]
    assert second.chapters_written == 2
    assert second.final_state.chapters_written == 4
    assert second_client.calls_to("plan_story") == []
    assert second_client.calls_to("plan_arc") == []
    assert "story_planned" not in [e.name for e in events]
    assert project_db.get_project(PROJECT).current_chapter == 4


@pytest.mark.asyncio
async def test_planned_project_cannot_be_resized(make_orchestrator, project_db):
    await make_orchestrator(FakeClient()).run(run_input(chapters_to_write=1))

    client = FakeClient()
    orchestrator = make_orchestrator(client)
    events = record_events(orchestrator)
    resized = await orchestrator.run(run_input(target_chapters=6))

    assert resized.status == "error"
    assert "cannot resize" in resized.error
    assert resized.results == []
    assert client.calls == []
    assert events[-1].name == "error"
    project = project_db.get_project(PROJECT)
    assert (project.target_chapters, project.chapters_per_arc) == (4, 2)
    assert project.status == "active"
    assert project.current_chapter == 1

    resumed = await make_orchestrator(FakeClient()).run(run_input())
    assert [r.chapter_number for r in resumed.results] == [2, 3, 4]


@pytest.mark.asyncio
async def test_arc_planning_failure_then_resume(make_orchestrator, project_db):
    """Arc 3 of 5 fails; the next run plans arcs 3-5 only and writes the novel."""
    def arc_three_fails(user_prompt: str):
        if "# Arc 3 of" in user_prompt:
            return None
        return arc_for_prompt(user_prompt)

    orchestrator = make_orchestrator(FakeClient({"plan_arc": arc_three_fails}))
    events = record_events(orchestrator)
    failed = await orchestrator.run(run_input(target_chapters=10, chapters_per_arc=2))

    assert failed.status == "error"
    assert "arc 3" in failed.error
    assert failed.results == []
    assert [a.arc_number for a in project_db.get_arcs(PROJECT)] == [1, 2]
    assert project_db.get_project(PROJECT).status == "error"
    assert project_db.get_project(PROJECT).current_chapter == 0
    assert [e.name for e in events][-2:] == ["status_change", "error"]

    retry_client = FakeClient()
    resumed = await make_orchestrator(retry_client).run(run_input(target_chapters=10, chapters_per_arc=2))
    assert resumed.status == "completed"
    assert resumed.chapters_written == 10
    assert retry_client.calls_to("plan_story") == []
    assert len(retry_client.calls_to("plan_arc")) == 3
    assert [a.arc_number for a in project_db.get_arcs(PROJECT)] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_story_planning_failure_returns_error(make_orchestrator, registry):
    result = await make_orchestrator(FakeClient({"plan_story": [None]})).run(run_input())
    assert result.status == "error"
    assert "story planning failed" in result.error
    assert not registry.is_active(PROJECT)


@pytest.mark.asyncio
async def test_rejected_chapter_pauses_then_retries(make_orchestrator, project_db, store):
    orchestrator = make_orchestrator(FakeClient({"critic": fail_chapter(2)}))
    events = record_events(orchestrator)
    paused = await orchestrator.run(run_input())

    assert paused.status == "paused"
    assert paused.chapters_written == 1
    assert paused.chapters_failed == 1
    assert paused.skipped_chapters == []
    assert [r.state for r in paused.results] == ["ACCEPTED", "REJECTED"]
    project = project_db.get_project(PROJECT)
    assert project.current_chapter == 1
    assert project.status == "paused"
    assert [d.chapter_number for d in await store.get_rejected_drafts(PROJECT)] == [2]
    failed_event = next(e for e in events if e.name == "chapter_failed")
    assert failed_event.payload["chapter_number"] == 2
    assert failed_event.payload["skipped"] is False

    retried = await make_orchestrator(FakeClient()).run(run_input())
    assert retried.status == "completed"
    assert [r.chapter_number for r in retried.results] == [2, 3, 4]
    assert retried.final_state.chapters_failed == 1
    assert project_db.get_project(PROJECT).current_chapter == 4


@pytest.mark.asyncio
async def test_rejected_chapter_becomes_gap_without_pause(make_orchestrator, project_db):
    orchestrator = make_orchestrator(FakeClient({"critic": fail_chapter(2)}), pause_on_error=False)
    result = await orchestrator.run(run_input())

    assert result.status == "completed"
    assert result.skipped_chapters == [2]
    assert [r.chapter_number for r in result.results] == [1, 2, 3, 4]
    assert result.chapters_written == 3
    assert result.chapters_failed == 1
    project = project_db.get_project(PROJECT)
    assert project.current_chapter == 3
    assert project.skipped_chapters == [2]
    assert project.position == 4
    assert project.status == "completed"


@pytest.mark.asyncio
async def test_writer_timeouts_fail_the_chapter(make_orchestrator, project_db):
    orchestrator = make_orchestrator(
        FakeClient({"writer": Hang(5)}),
        provider_timeout=0.05,
        provider_retries=3,
    )
    result = await orchestrator.run(run_input(target_chapters=2, chapters_per_arc=2))

    assert result.status == "paused"
    assert result.chapters_failed == 1
    assert result.results[0].state == "REJECTED"
    assert project_db.get_project(PROJECT).current_chapter == 0
    assert orchestrator.get_state().last_error.startswith("writer failed")


@pytest.mark.asyncio
async def test_concurrent_run_is_refused(make_orchestrator, registry, project_db):
    registry.try_acquire(PROJECT, "someone-else")
    orchestrator = make_orchestrator(FakeClient())
    with pytest.raises(ConcurrentRunConflict) as exc_info:
        await orchestrator.run(run_input())
    assert exc_info.value.owner == "someone-else"
    assert project_db.get_project(PROJECT) is None
    assert registry.owner_of(PROJECT) == "someone-else"


@pytest.mark.asyncio
async def test_two_simultaneous_runs_one_wins(make_orchestrator, registry):
    first = make_orchestrator(FakeClient(), owner="first")
    second = make_orchestrator(FakeClient(), owner="second")
    results = await asyncio.gather(first.run(run_input()), second.run(run_input()), return_exceptions=True)

    conflicts = [r for r in results if isinstance(r, ConcurrentRunConflict)]
    finished = [r for r in results if not isinstance(r, BaseException)]
    assert len(conflicts) == 1
    assert len(finished) == 1
    assert finished[0].chapters_written == 4
    assert registry.active_projects() == []


@pytest.mark.asyncio
async def test_persistence_failure_stops_the_run(make_orchestrator, project_db, registry, monkeypatch):
    async def broken_cursor(project_id, expected):
        raise PersistenceError("disk full")

    monkeypatch.setattr(project_db, "aadvance_cursor", broken_cursor)
    orchestrator = make_orchestrator(FakeClient())
    events = record_events(orchestrator)

    with pytest.raises(PersistenceError):
        await orchestrator.run(run_input())

    assert orchestrator.get_state().status == "error"
    assert project_db.get_project(PROJECT).status == "error"
    assert "chapter_completed" not in [e.name for e in events]
    assert events[-1].name == "error"
    assert "disk full" in events[-1].payload["message"]
    assert not registry.is_active(PROJECT)


@pytest.mark.asyncio
async def test_failed_chapter_commit_leaves_no_continuity(make_orchestrator, project_db, store, monkeypatch):
    """Chapter 1 resolves a thread; its record cannot be written, so none of its effects may stay."""
    resolving = dict(default_continuity(), threads=[{"name": "The Usurpation", "status": "resolved"}])
    script = {
        "continuity": lambda prompt: resolving,
        "critic": lambda prompt: critic_review(8, threads_advanced=["The Usurpation"]),
    }
    disk_full = [True]
    insert_chapter_result = store._insert_chapter_result

    def flaky_insert(result):
        if disk_full:
            raise sqlite3.OperationalError("database or disk is full")
        insert_chapter_result(result)

    monkeypatch.setattr(store, "_insert_chapter_result", flaky_insert)
    with pytest.raises(PersistenceError):
        await make_orchestrator(FakeClient(script)).run(run_input())

    assert project_db.get_project(PROJECT).current_chapter == 0
    assert await store.get_chapter_results(PROJECT) == []
    assert await store.get_chapter_summaries(PROJECT, 1, 4) == []
    assert await store.get_character_states(PROJECT) == []
    assert {t.name: t.status for t in await store.get_all_threads(PROJECT)} == {
        "The Usurpation": "open",
        "The Hidden Master": "open",
    }

    disk_full.clear()
    result = await make_orchestrator(FakeClient(script)).run(run_input(chapters_to_write=1))
    assert [r.state for r in result.results] == ["ACCEPTED"]
    assert result.results[0].contradictions == []
    characters = await store.get_character_states(PROJECT)
    assert [c.growth_score for c in characters] == [10]
    assert {t.name: t.status for t in await store.get_all_threads(PROJECT)}["The Usurpation"] == "resolved"


@pytest.mark.asyncio
async def test_stop_from_handler_ends_before_next_chapter(make_orchestrator, project_db):
    orchestrator = make_orchestrator(FakeClient())

    def stop_after_first(event: RunEvent):
        if event.payload["chapter_number"] == 1:
            orchestrator.stop()

    orchestrator.on("chapter_completed", stop_after_first)
    result = await orchestrator.run(run_input())

    assert result.status == "paused"
    assert [r.chapter_number for r in result.results] == [1]
    project = project_db.get_project(PROJECT)
    assert project.status == "paused"
    assert project.current_chapter == 1
    assert project_db.get_checkpoint(PROJECT).current_chapter == 1


@pytest.mark.asyncio
async def test_pause_and_resume(make_orchestrator):
    orchestrator = make_orchestrator(FakeClient())
    events = record_events(orchestrator)

    def pause_after_first(event: RunEvent):
        if event.payload["chapter_number"] == 1:
            orchestrator.pause()
            asyncio.get_running_loop().call_later(0.05, orchestrator.resume)

    orchestrator.on("chapter_completed", pause_after_first)
    result = await orchestrator.run(run_input())

    assert result.status == "completed"
    assert result.chapters_written == 4
    statuses = [e.payload["status"] for e in events if e.name == "status_change"]
    assert statuses == ["planning_story", "planning_arcs", "writing", "paused", "writing", "completed"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_the_run(make_orchestrator):
    orchestrator = make_orchestrator(FakeClient())

    async def broken(event: RunEvent):
        raise RuntimeError("subscriber bug")

    orchestrator.subscribe(broken)
    result = await orchestrator.run(run_input())
    assert result.status == "completed"
    assert result.chapters_written == 4


@pytest.mark.asyncio
async def test_autosave_every_interval(make_orchestrator, project_db, monkeypatch):
    orchestrator = make_orchestrator(FakeClient(), auto_save_interval=3)
    saved = []
    original = project_db.asave_checkpoint

    async def spy(checkpoint):
        saved.append(checkpoint.current_chapter)
        await original(checkpoint)

    monkeypatch.setattr(project_db, "asave_checkpoint", spy)
    await orchestrator.run(run_input(target_chapters=7, chapters_per_arc=7))

    assert saved == [3, 6, 7]
    checkpoint = project_db.get_checkpoint(PROJECT)
    assert checkpoint.chapters_written == 7
    assert checkpoint.total_words > 0


@pytest.mark.asyncio
async def test_milestone_report_is_attached(make_orchestrator, milestone_db):
    orchestrator = make_orchestrator(FakeClient(), milestones=[2])
    result = await orchestrator.run(run_input())

    assert result.status == "completed"
    assert [r.milestone_chapter for r in result.milestone_reports] == [2]
    report = result.milestone_reports[0]
    assert len(report.validations) == 5
    assert report.summary.startswith("=== MILESTONE 2 VALIDATION ===")
    assert len(await milestone_db.get_validations(PROJECT, 2)) == 5


@pytest.mark.asyncio
async def test_current_chapter_override_and_cost_estimate(make_orchestrator):
    orchestrator = make_orchestrator(FakeClient())
    result = await orchestrator.run(run_input(target_chapters=6, chapters_per_arc=3, current_chapter=3, chapters_to_write=1))
    assert [r.chapter_number for r in result.results] == [4]
    estimate = orchestrator.estimate_remaining_cost()
    assert estimate["remaining_chapters"] == 2
    assert estimate["estimated_cost"] > 0
