import json
import math
from typing import Awaitable, Callable, List, Optional
from loguru import logger
from pydantic import BaseModel, Field

from novel.cost import CostLedger
from novel.models.plan import ArcOutlineOutput, StoryOutlineOutput
from utils.call_llm import completion_json
from utils.config import FactoryConfig
from utils.errors import GenerationFailure, ParseError, ProviderError
from utils.llm import load_prompts, template_fill
from utils.llm_api import llm_temperatures
from utils.llm_client import CompletionParams, TextGenerationClient
from utils.models import ArcOutline, ChapterOutline, DopaminePoint, PlotThread, StoryOutline, WorldBible
from utils.sqlite_continuity import make_id


ARC_THEMES = [
    "foundation", "conflict", "growth", "tournament", "exploration",
    "betrayal", "revelation", "revenge", "war", "triumph",
]


DOPAMINE_TYPES = ["face_slap", "power_reveal", "treasure_gain", "breakthrough"]


CLIMAX_POSITION = 0.75


PLOT_POINT_PRIORITY = {"critical": "critical", "major": "main"}



def tension_for_position(index: int, total: int) -> int:
    """Rises from 30 to 90 at the climax (75% of the arc), then falls to 50."""
    if total <= 1:
        return 50
    position = index / (total - 1)
    if position < CLIMAX_POSITION:
        return round(30 + 60 * position / CLIMAX_POSITION)
    return round(90 - 40 * (position - CLIMAX_POSITION) / (1 - CLIMAX_POSITION))



def generate_tension_curve(length: int) -> List[int]:
    return [tension_for_position(i, length) for i in range(length)]



def default_chapter_outline(arc: ArcOutlineOutput, start_chapter: int, index: int, count: int) -> ChapterOutline:
    position = 0 if count <= 1 else index / (count - 1)
    if position < 0.25:
        purpose = f"Setup: {arc.setup or 'introduce the arc'}"
    elif position < CLIMAX_POSITION:
        purpose = f"Confrontation: {arc.confrontation or 'escalate the conflict'}"
    else:
        purpose = f"Resolution: {arc.resolution or 'resolve the arc'}"
    dopamine = DOPAMINE_TYPES[index % len(DOPAMINE_TYPES)]
    return ChapterOutline(
        chapter_number=start_chapter + index,
        title=f"Chapter {start_chapter + index}",
        purpose=purpose,
        scene_beats=[purpose],
        dopamine_points=[DopaminePoint(type=dopamine, description=dopamine.replace("_", " "))],
        tension_level=tension_for_position(index, count),
        cliffhanger_hint="Cliffhanger",
    )



def reconcile_chapter_outlines(output: ArcOutlineOutput, start_chapter: int, end_chapter: int) -> List[ChapterOutline]:
    """
    Exactly one outline per chapter of the arc, in order.
    Model outlines are matched by chapter number; when none of the numbers match but the count is
    right they are taken in order. Missing chapters get a default outline by position.
    """
    count = end_chapter - start_chapter + 1
    by_number = {o.chapter_number: o for o in output.chapter_outlines if start_chapter <= o.chapter_number <= end_chapter}
    if not by_number and len(output.chapter_outlines) == count:
        by_number = {start_chapter + i: o for i, o in enumerate(output.chapter_outlines)}

    if len(by_number) != count:
        logger.warning(
            f"arc chapters {start_chapter}-{end_chapter}: model returned {len(output.chapter_outlines)} outlines, "
            f"{count - len(by_number)} filled with defaults"
        )

    outlines = []
    for i in range(count):
        number = start_chapter + i
        planned = by_number.get(number)
        if planned is None:
            outlines.append(default_chapter_outline(output, start_chapter, i, count))
            continue
        outlines.append(ChapterOutline(
            chapter_number=number,
            title=planned.title or f"Chapter {number}",
            purpose=planned.purpose,
            scene_beats=planned.scene_beats,
            dopamine_points=planned.dopamine_points,
            tension_level=planned.tension_level if planned.tension_level is not None else tension_for_position(i, count),
            cliffhanger_hint=planned.cliffhanger_hint,
        ))
    return outlines



def build_world_bible(outline: StoryOutline) -> WorldBible:
    """Seeds one open thread per major plot point: critical -> critical, major -> main, anything else -> sub."""
    threads = []
    for point in outline.major_plot_points:
        start_chapter, _ = outline.arc_range(point.target_arc)
        threads.append(PlotThread(
            thread_id=make_id(point.name),
            name=point.name,
            description=point.description,
            priority=PLOT_POINT_PRIORITY.get(point.importance, "sub"),
            introduced_chapter=0,
            last_active_chapter=max(0, start_chapter - 1),
            characters=[outline.protagonist.name] if outline.protagonist.name else [],
        ))
    return WorldBible(
        story_title=outline.title,
        protagonist=outline.protagonist.name,
        protagonist_realm=outline.realms[0] if outline.realms else "",
        power_system=outline.power_system,
        realms=outline.realms,
        plot_threads=threads,
    )



###############################################################################



class ArcPlanResult(BaseModel):
    success: bool
    arcs: List[ArcOutline] = Field(default_factory=list)
    failed_arc: Optional[int] = None
    error: Optional[str] = None



ArcPlannedCallback = Callable[[ArcOutline], Awaitable[None]]



class StoryPlanner:
    def __init__(self, client: TextGenerationClient, config: FactoryConfig, ledger: Optional[CostLedger] = None):
        self.client = client
        self.config = config
        self.ledger = ledger
        self.params = CompletionParams(
            model=config.model,
            temperature=llm_temperatures["planning"],
            max_tokens=config.max_tokens,
        )

    async def plan(
        self,
        premise: str,
        genre: str,
        target_chapters: int,
        chapters_per_arc: int,
        title: str = "",
        protagonist_name: str = "",
    ) -> StoryOutline:
        """Top-level outline in one structured call. Raises GenerationFailure."""
        target_arcs = math.ceil(target_chapters / chapters_per_arc)
        system_prompt, user_prompt = load_prompts("planner", "story_system_prompt", "story_user_prompt")
        context = {
            "title": title or "(choose one)",
            "genre": genre,
            "protagonist": protagonist_name or "(choose one)",
            "premise": premise,
            "target_chapters": target_chapters,
            "target_arcs": target_arcs,
            "chapters_per_arc": chapters_per_arc,
            "midpoint_arc": max(1, (target_arcs + 1) // 2),
        }
        logger.info(f"planning story: {target_chapters} chapters, {target_arcs} arcs, genre={genre}")
        try:
            output = await completion_json(
                self.client,
                system_prompt,
                template_fill(user_prompt, context),
                StoryOutlineOutput,
                self.params,
                self.config,
                "plan_story",
                self.ledger,
            )
        except (ProviderError, ParseError) as e:
            logger.error(f"story planning failed: {e}")
            raise GenerationFailure(f"story planning failed: {e}") from e

        outline = output.to_story_outline(genre, target_chapters, target_arcs, chapters_per_arc, title=title)
        if protagonist_name and not outline.protagonist.name:
            outline.protagonist.name = protagonist_name
        logger.info(f"story planned: '{outline.title}' with {len(outline.major_plot_points)} plot points")
        return outline

    async def plan_all_arcs(
        self,
        outline: StoryOutline,
        world_bible: WorldBible,
        completed_arcs: Optional[List[ArcOutline]] = None,
        on_arc_planned: Optional[ArcPlannedCallback] = None,
    ) -> ArcPlanResult:
        """
        Plans the arcs one after another, each prompt carrying a condensed view of the arc before it.
        completed_arcs is a prefix from an earlier, partial attempt: it is kept as is and planning
        resumes after it. Stops at the first failure and returns what was planned before it.
        """
        arcs = sorted(completed_arcs or [], key=lambda a: a.arc_number)
        for i, arc in enumerate(arcs, 1):
            if arc.arc_number != i:
                raise ValueError(f"completed_arcs is not a prefix: expected arc {i}, got arc {arc.arc_number}")

        for arc_number in range(len(arcs) + 1, outline.target_arcs + 1):
            previous_arc = arcs[-1] if arcs else None
            try:
                arc = await self.plan_single_arc(outline, world_bible, arc_number, previous_arc)
            except GenerationFailure as e:
                logger.error(f"arc planning stopped at arc {arc_number}/{outline.target_arcs}: {e}")
                return ArcPlanResult(success=False, arcs=arcs, failed_arc=arc_number, error=str(e))
            arcs.append(arc)
            if on_arc_planned is not None:
                await on_arc_planned(arc)

        return ArcPlanResult(success=True, arcs=arcs)

    async def plan_single_arc(
        self,
        outline: StoryOutline,
        world_bible: WorldBible,
        arc_number: int,
        previous_arc: Optional[ArcOutline] = None,
    ) -> ArcOutline:
        start_chapter, end_chapter = outline.arc_range(arc_number)
        count = end_chapter - start_chapter + 1
        is_final = arc_number == outline.target_arcs
        theme = "finale" if is_final else ARC_THEMES[(arc_number - 1) % len(ARC_THEMES)]

        system_name = "arc_finale_system_prompt" if is_final else "arc_system_prompt"
        system_prompt, user_prompt = load_prompts("planner", system_name, "arc_user_prompt")
        plot_points = [p for p in outline.major_plot_points if p.target_arc == arc_number]
        open_threads = [t for t in world_bible.plot_threads if t.status == "open"]
        context = {
            "title": outline.title,
            "premise": outline.premise,
            "protagonist": outline.protagonist.name,
            "current_realm": previous_arc.ending_realm if previous_arc and previous_arc.ending_realm else world_bible.protagonist_realm,
            "power_system": world_bible.power_system,
            "arc_number": arc_number,
            "target_arcs": outline.target_arcs,
            "start_chapter": start_chapter,
            "end_chapter": end_chapter,
            "chapter_count": count,
            "theme": theme,
            "plot_points": json.dumps([p.model_dump() for p in plot_points], ensure_ascii=False) if plot_points else "none",
            "previous_arc": previous_arc.condensed() if previous_arc else "This is the first arc.",
            "open_threads": "\n".join(f"- {t.name} ({t.priority}): {t.description}" for t in open_threads) or "none",
        }

        logger.info(f"planning arc {arc_number}/{outline.target_arcs}: chapters {start_chapter}-{end_chapter}, theme={theme}")
        try:
            output = await completion_json(
                self.client,
                system_prompt,
                template_fill(user_prompt, context),
                ArcOutlineOutput,
                self.params,
                self.config,
                "plan_arc",
                self.ledger,
            )
        except (ProviderError, ParseError) as e:
            raise GenerationFailure(f"arc {arc_number} planning failed: {e}") from e

        chapter_outlines = reconcile_chapter_outlines(output, start_chapter, end_chapter)
        return output.to_arc_outline(
            arc_number, start_chapter, end_chapter, theme, chapter_outlines, generate_tension_curve(count)
        )
