import os
import sys
import pytest
from loguru import logger

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from novel.models.plan import ArcOutlineOutput, ChapterOutlineOutput, StoryOutlineOutput
from novel.planner import (
    StoryPlanner,
    build_world_bible,
    generate_tension_curve,
    reconcile_chapter_outlines,
)
from utils.errors import GenerationFailure
from tests.fakes import FakeClient, arc_for_prompt, default_story_outline


async def planned_story(planner: StoryPlanner, target_chapters: int, chapters_per_arc: int):
    return await planner.plan("A fallen heir regains his power.", "xianxia", target_chapters, chapters_per_arc)


def fail_on_arc(arc_number: int):
    def respond(user_prompt: str):
        if f"# Arc {arc_number} of" in user_prompt:
            return None
        return arc_for_prompt(user_prompt)
    return respond


@pytest.mark.asyncio
async def test_plan_story_takes_sizes_from_the_caller(config):
    story = default_story_outline()
    story["major_plot_points"].append({"name": "Far Future", "target_arc": 9, "importance": "minor"})
    planner = StoryPlanner(FakeClient({"plan_story": story}), config)

    outline = await planned_story(planner, 5, 2)
    logger.info(f"outline: {outline.title}, {outline.target_arcs} arcs")
    assert outline.target_chapters == 5
    assert outline.target_arcs == 3
    assert outline.chapters_per_arc == 2
    assert outline.genre == "xianxia"
    assert outline.realms == ["Qi Condensation", "Foundation", "Core Formation"]
    assert [p.id for p in outline.major_plot_points] == ["pp1", "pp2", "pp3"]
    assert outline.major_plot_points[-1].target_arc == 3
    assert outline.arc_range(3) == (5, 5)


@pytest.mark.asyncio
async def test_plan_story_failure_raises_generation_failure(config):
    planner = StoryPlanner(FakeClient({"plan_story": [None]}), config)
    with pytest.raises(GenerationFailure):
        await planned_story(planner, 4, 2)


@pytest.mark.asyncio
async def test_plan_all_arcs_covers_every_chapter_once(config):
    client = FakeClient()
    planner = StoryPlanner(client, config)
    outline = await planned_story(planner, 4, 2)
    saved = []

    async def on_arc_planned(arc):
        saved.append(arc.arc_number)

    result = await planner.plan_all_arcs(outline, build_world_bible(outline), on_arc_planned=on_arc_planned)
    assert result.success
    assert saved == [1, 2]
    assert [(a.start_chapter, a.end_chapter) for a in result.arcs] == [(1, 2), (3, 4)]
    chapters = [c.chapter_number for a in result.arcs for c in a.chapter_outlines]
    assert chapters == [1, 2, 3, 4]

    prompts = client.calls_to("plan_arc")
    assert "This is the first arc." in prompts[0]
    assert "Arc 1: Arc 1 title" in prompts[1]
    assert "Suggested theme: finale" in prompts[1]
    assert result.arcs[0].theme == "growth"


@pytest.mark.asyncio
async def test_arc_failure_keeps_prefix_and_resumes(config):
    """Arc 3 of 5 fails: arcs 1-2 survive, a second call plans 3-5 only."""
    client = FakeClient({"plan_arc": fail_on_arc(3)})
    planner = StoryPlanner(client, config)
    outline = await planned_story(planner, 10, 2)
    world_bible = build_world_bible(outline)

    result = await planner.plan_all_arcs(outline, world_bible)
    assert not result.success
    assert result.failed_arc == 3
    assert [a.arc_number for a in result.arcs] == [1, 2]

    retry_client = FakeClient()
    retry_planner = StoryPlanner(retry_client, config)
    resumed = await retry_planner.plan_all_arcs(outline, world_bible, completed_arcs=result.arcs)
    assert resumed.success
    assert [a.arc_number for a in resumed.arcs] == [1, 2, 3, 4, 5]
    prompts = retry_client.calls_to("plan_arc")
    assert len(prompts) == 3
    assert "Arc 2: Arc 2 title" in prompts[0]


@pytest.mark.asyncio
async def test_completed_arcs_must_be_a_prefix(config):
    planner = StoryPlanner(FakeClient(), config)
    outline = await planned_story(planner, 6, 2)
    world_bible = build_world_bible(outline)
    second = await planner.plan_single_arc(outline, world_bible, 2)
    with pytest.raises(ValueError):
        await planner.plan_all_arcs(outline, world_bible, completed_arcs=[second])


# --- pure helpers ---

def test_world_bible_seeds_threads_from_plot_points():
    outline = StoryOutlineOutput(**default_story_outline()).to_story_outline("xianxia", 40, 2, 20)
    bible = build_world_bible(outline)
    assert bible.protagonist == "Lin Feng"
    assert bible.protagonist_realm == "Qi Condensation"
    threads = {t.name: t for t in bible.plot_threads}
    assert threads["The Usurpation"].priority == "critical"
    assert threads["The Usurpation"].thread_id == "the_usurpation"
    assert threads["The Hidden Master"].priority == "main"
    assert threads["The Hidden Master"].last_active_chapter == 20
    assert all(t.status == "open" for t in bible.plot_threads)


def test_tension_curve_peaks_at_climax():
    assert generate_tension_curve(5) == [30, 50, 70, 90, 50]
    assert generate_tension_curve(1) == [50]


def test_reconcile_fills_missing_chapters():
    output = ArcOutlineOutput(
        setup="arrive",
        chapter_outlines=[
            ChapterOutlineOutput(chapter_number=12, title="Twelve"),
            ChapterOutlineOutput(chapter_number=99, title="Out of range"),
        ],
    )
    outlines = reconcile_chapter_outlines(output, 11, 14)
    assert [o.chapter_number for o in outlines] == [11, 12, 13, 14]
    assert outlines[1].title == "Twelve"
    assert outlines[0].purpose == "Setup: arrive"
    assert outlines[0].dopamine_points


def test_reconcile_takes_unnumbered_outlines_in_order():
    output = ArcOutlineOutput(chapter_outlines=[ChapterOutlineOutput(title="a"), ChapterOutlineOutput(title="b")])
    outlines = reconcile_chapter_outlines(output, 21, 22)
    assert [(o.chapter_number, o.title) for o in outlines] == [(21, "a"), (22, "b")]
    assert [o.tension_level for o in outlines] == [30, 50]
