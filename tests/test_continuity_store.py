import os
import sys
import pytest
from loguru import logger

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utils.errors import PersistenceError
from utils.models import (
    ChapterResult,
    ChapterSummary,
    CharacterDelta,
    Checkpoint,
    ContinuityDeltas,
    MilestoneValidation,
    PlotThread,
    PowerEventDelta,
    Project,
    ThreadDelta,
)
from utils.sqlite_continuity import make_id


PROJECT = "p-store"


def summary(n: int) -> ChapterSummary:
    return ChapterSummary(chapter_number=n, title=f"Chapter {n}", summary=f"Events of chapter {n}", word_count=100)


# --- continuity store ---

@pytest.mark.asyncio
async def test_seed_threads_is_idempotent(store):
    thread = PlotThread(thread_id=make_id("The Usurpation"), name="The Usurpation", priority="critical")
    await store.seed_threads(PROJECT, [thread])
    await store.seed_threads(PROJECT, [thread.model_copy(update={"description": "changed"})])
    threads = await store.get_all_threads(PROJECT)
    assert len(threads) == 1
    assert threads[0].priority == "critical"
    assert threads[0].description == ""


@pytest.mark.asyncio
async def test_thread_status_never_reopens(store):
    """open -> resolved is kept; a later 'open' for the same thread is ignored."""
    await store.upsert_chapter_continuity(PROJECT, 3, ContinuityDeltas(threads=[ThreadDelta(name="Hidden Master")]))
    await store.upsert_chapter_continuity(PROJECT, 8, ContinuityDeltas(threads=[ThreadDelta(name="Hidden Master", status="resolved")]))
    await store.upsert_chapter_continuity(PROJECT, 12, ContinuityDeltas(threads=[ThreadDelta(name="hidden master", status="open")]))

    threads = await store.get_all_threads(PROJECT)
    assert len(threads) == 1
    thread = threads[0]
    logger.info(f"thread after three chapters: {thread}")
    assert thread.status == "resolved"
    assert thread.resolved_chapter == 8
    assert thread.introduced_chapter == 3
    assert thread.last_active_chapter == 12
    assert await store.get_open_threads(PROJECT) == []


@pytest.mark.asyncio
async def test_foreshadowing_is_planted_and_paid_off(store):
    await store.upsert_chapter_continuity(PROJECT, 2, ContinuityDeltas(threads=[
        ThreadDelta(name="Ring", foreshadowing_planted=["the ring glows"], payoff_deadline=30),
    ]))
    await store.upsert_chapter_continuity(PROJECT, 9, ContinuityDeltas(threads=[
        ThreadDelta(name="Ring", foreshadowing_paid_off=["The ring glows"]),
    ]))
    thread = (await store.get_all_threads(PROJECT))[0]
    assert len(thread.foreshadowing) == 1
    hint = thread.foreshadowing[0]
    assert hint.planted_chapter == 2
    assert hint.payoff_deadline == 30
    assert hint.status == "paid_off"


@pytest.mark.asyncio
async def test_character_updates_ignore_older_chapters(store):
    await store.upsert_chapter_continuity(PROJECT, 5, ContinuityDeltas(characters=[
        CharacterDelta(name="Lin Feng", role="protagonist", realm="Qi Condensation", growth=2),
    ]))
    await store.upsert_chapter_continuity(PROJECT, 9, ContinuityDeltas(characters=[
        CharacterDelta(name="Lin Feng", realm="Foundation", growth=1),
    ]))
    await store.upsert_chapter_continuity(PROJECT, 7, ContinuityDeltas(characters=[
        CharacterDelta(name="Lin Feng", realm="Mortal", status="dead"),
    ]))
    characters = await store.get_character_states(PROJECT)
    assert len(characters) == 1
    lin = characters[0]
    assert lin.character_id == "lin_feng"
    assert lin.role == "protagonist"
    assert lin.realm == "Foundation"
    assert lin.status == "active"
    assert lin.growth_score == 30
    assert lin.last_updated_chapter == 9


@pytest.mark.asyncio
async def test_replaying_a_chapter_does_not_duplicate_power_events(store):
    deltas = ContinuityDeltas(
        power_events=[PowerEventDelta(character="Lin Feng", event_type="breakthrough", description="Foundation")],
        summary=summary(4),
    )
    await store.upsert_chapter_continuity(PROJECT, 4, deltas)
    await store.upsert_chapter_continuity(PROJECT, 4, deltas)
    events = await store.get_recent_power_events(PROJECT)
    assert len(events) == 1
    assert events[0].character_id == "lin_feng"
    assert len(await store.get_chapter_summaries(PROJECT, 1, 10)) == 1


@pytest.mark.asyncio
async def test_recent_summaries_window(store):
    for n in range(1, 7):
        await store.upsert_chapter_continuity(PROJECT, n, ContinuityDeltas(summary=summary(n)))
    recent = await store.get_recent_summaries(PROJECT, before_chapter=6, limit=3)
    assert [s.chapter_number for s in recent] == [3, 4, 5]
    assert await store.get_recent_summaries(PROJECT, before_chapter=1, limit=3) == []


@pytest.mark.asyncio
async def test_rejected_drafts_are_kept_apart_from_chapters(store):
    accepted = ChapterResult(project_id=PROJECT, chapter_number=1, content="text", state="ACCEPTED")
    rejected = ChapterResult(project_id=PROJECT, chapter_number=2, content="weak", state="REJECTED")
    await store.save_chapter_result(accepted)
    await store.save_rejected_draft(rejected)
    await store.save_rejected_draft(rejected)
    assert [r.chapter_number for r in await store.get_chapter_results(PROJECT)] == [1]
    assert len(await store.get_rejected_drafts(PROJECT)) == 2


@pytest.mark.asyncio
async def test_projects_are_isolated(store):
    await store.upsert_chapter_continuity("a", 1, ContinuityDeltas(threads=[ThreadDelta(name="X")]))
    assert await store.get_all_threads("b") == []


# --- project cursor ---

def test_cursor_advances_by_compare_and_set(project_db):
    project_db.add_project(Project(project_id=PROJECT, target_chapters=10, chapters_per_arc=5))
    assert project_db.advance_cursor(PROJECT, 0) == 1
    assert project_db.advance_cursor(PROJECT, 1) == 2
    with pytest.raises(PersistenceError):
        project_db.advance_cursor(PROJECT, 1)
    assert project_db.get_project(PROJECT).current_chapter == 2


def test_add_project_keeps_cursor_and_gaps(project_db):
    project_db.add_project(Project(project_id=PROJECT, target_chapters=10, chapters_per_arc=5))
    project_db.advance_cursor(PROJECT, 0)
    project_db.add_skipped_chapter(PROJECT, 2)
    project_db.add_skipped_chapter(PROJECT, 2)
    project_db.add_project(Project(project_id=PROJECT, title="Renamed", target_chapters=12, chapters_per_arc=5))
    project = project_db.get_project(PROJECT)
    assert project.title == "Renamed"
    assert project.target_chapters == 12
    assert project.current_chapter == 1
    assert project.skipped_chapters == [2]
    assert project.position == 2
    assert [p.project_id for p in project_db.get_all_projects()] == [PROJECT]


def test_checkpoint_round_trip(project_db):
    project_db.save_checkpoint(Checkpoint(project_id=PROJECT, current_chapter=4, chapters_written=3, chapters_failed=1, total_words=900))
    project_db.save_checkpoint(Checkpoint(project_id=PROJECT, current_chapter=6, chapters_written=5, chapters_failed=1, total_words=1500))
    checkpoint = project_db.get_checkpoint(PROJECT)
    assert checkpoint.current_chapter == 6
    assert checkpoint.total_words == 1500
    assert checkpoint.saved_at is not None


# --- milestone history ---

@pytest.mark.asyncio
async def test_milestone_history_is_append_only(milestone_db):
    validation = MilestoneValidation(project_id=PROJECT, milestone_chapter=100, validation_type="pacing_check", status="passed")
    first = await milestone_db.add_validations([validation])
    second = await milestone_db.add_validations([validation.model_copy(update={"status": "warning"})])
    assert second[0] > first[0]
    history = await milestone_db.get_validations(PROJECT, 100)
    assert [v.status for v in history] == ["passed", "warning"]
    assert await milestone_db.get_validations(PROJECT, 250) == []
