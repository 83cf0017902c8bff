import asyncio
import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple
from loguru import logger

from novel.cost import CostLedger
from novel.events import EventBus, EventHandler, EventNameType
from novel.pipeline import ChapterPipeline
from novel.planner import StoryPlanner, build_world_bible
from novel.registry import RunRegistry, get_run_registry
from novel.validator import MilestoneValidator
from utils.config import FactoryConfig, load_config
from utils.errors import ConcurrentRunConflict, GenerationFailure, PersistenceError
from utils.file import get_text_file_path, text_file_append
from utils.llm_client import TextGenerationClient
from utils.log import ensure_run_logger
from utils.models import (
    ArcOutline,
    ChapterOutline,
    ChapterResult,
    Checkpoint,
    CostReport,
    MilestoneReport,
    Project,
    RunInput,
    RunnerState,
    RunResult,
    RunStatusType,
    StoryOutline,
)
from utils.sqlite_continuity import ContinuityStore, get_continuity_store
from utils.sqlite_milestone import MilestoneDB, get_milestone_db
from utils.sqlite_project import ProjectDB, get_project_db


SLOW_CHAPTER_DELAY = 0.5



class RunOrchestrator:
    """
    Drives one project from premise to chapters: plans what is missing, then writes the requested
    chapter range strictly in order through the ChapterPipeline.

    Per accepted chapter: continuity deltas and ChapterResult committed in one transaction ->
    cursor advanced by one -> chapter_completed. A rejected chapter either pauses the run
    (pause_on_error) or is recorded as a gap and the run moves on.
    """

    def __init__(
        self,
        client: TextGenerationClient,
        config: Optional[FactoryConfig] = None,
        registry: Optional[RunRegistry] = None,
        project_db: Optional[ProjectDB] = None,
        store: Optional[ContinuityStore] = None,
        milestone_db: Optional[MilestoneDB] = None,
        owner: Optional[str] = None,
    ):
        self.config = config or load_config()
        self.client = client
        self.registry = registry or get_run_registry()
        self.project_db = project_db or get_project_db(self.config.db_path)
        self.store = store or get_continuity_store(self.config.db_path)
        self.milestone_db = milestone_db or get_milestone_db(self.config.db_path)
        self.owner = owner or f"run-{uuid.uuid4().hex[:8]}"

        self.ledger = CostLedger(self.config.cost_per_1k_prompt_tokens, self.config.cost_per_1k_completion_tokens)
        self.planner = StoryPlanner(client, self.config, self.ledger)
        self.pipeline = ChapterPipeline(client, self.store, self.config, self.ledger)
        self.validator = MilestoneValidator(self.store, self.milestone_db, self.config.milestones)

        self.state: Optional[RunnerState] = None
        self.story_outline: Optional[StoryOutline] = None
        self.arc_outlines: List[ArcOutline] = []
        self.bus: Optional[EventBus] = None
        self._handlers: List[EventHandler] = []
        self._named_handlers: List[Tuple[EventNameType, EventHandler]] = []
        self._stop_requested = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._reset_session()

    def _reset_session(self):
        self._results: List[ChapterResult] = []
        self._reports: List[MilestoneReport] = []
        self._skipped: List[int] = []
        self._session_written = 0
        self._session_failed = 0
        self._cursor = 0
        self._position = 0
        self._target_chapters = 0

    ###########################################################################
    # subscriptions and controls

    def subscribe(self, handler: EventHandler):
        self._handlers.append(handler)
        if self.bus is not None:
            self.bus.subscribe(handler)

    def on(self, name: EventNameType, handler: EventHandler):
        self._named_handlers.append((name, handler))
        if self.bus is not None:
            self.bus.on(name, handler)

    def stop(self):
        """Ends the run before the next chapter starts. The chapter in progress is finished."""
        logger.info(f"stop requested for {self.state.project_id if self.state else 'idle orchestrator'}")
        self._stop_requested = True
        self._resume.set()

    def pause(self):
        logger.info("pause requested, the run halts before the next chapter")
        self._resume.clear()

    def resume(self):
        logger.info("resume requested")
        self._resume.set()

    def get_state(self) -> Optional[RunnerState]:
        return self.state.model_copy() if self.state else None

    def get_story_outline(self) -> Optional[StoryOutline]:
        return self.story_outline

    def get_arc_outlines(self) -> List[ArcOutline]:
        return list(self.arc_outlines)

    def get_cost_report(self) -> CostReport:
        return self.ledger.report()

    def estimate_remaining_cost(self) -> dict:
        remaining = self._target_chapters - self._position if self.state else 0
        return self.ledger.estimate_remaining_cost(remaining, self.config.target_word_count)

    ###########################################################################

    async def run(self, run_input: RunInput) -> RunResult:
        project_id = run_input.project_id
        if not self.registry.try_acquire(project_id, self.owner):
            raise ConcurrentRunConflict(project_id, self.registry.owner_of(project_id))

        ensure_run_logger(project_id)
        self._reset_session()
        self._stop_requested = False
        self.bus = EventBus(project_id, maxsize=self.config.event_queue_size)
        for handler in self._handlers:
            self.bus.subscribe(handler)
        for name, handler in self._named_handlers:
            self.bus.on(name, handler)
        self.bus.start()
        try:
            with logger.contextualize(run_id=project_id):
                return await self._run(run_input)
        finally:
            await self.bus.close()
            self.registry.release(project_id, self.owner)

    async def _run(self, run_input: RunInput) -> RunResult:
        project_id = run_input.project_id
        project = await self._load_project(run_input)
        self._cursor = project.current_chapter
        self._skipped = []
        self._target_chapters = project.target_chapters

        self.state = RunnerState(
            project_id=project_id,
            total_chapters=project.target_chapters,
            started_at=datetime.now(),
            last_activity_at=datetime.now(),
        )
        checkpoint = await asyncio.to_thread(self.project_db.get_checkpoint, project_id)
        if checkpoint:
            self.state.chapters_written = checkpoint.chapters_written
            self.state.chapters_failed = checkpoint.chapters_failed
            self.state.total_words = checkpoint.total_words
            if checkpoint.chapters_written:
                self.state.average_words_per_chapter = round(checkpoint.total_words / checkpoint.chapters_written, 1)
            logger.info(f"restored totals from checkpoint at chapter {checkpoint.current_chapter}")

        if (run_input.target_chapters, run_input.chapters_per_arc) != (project.target_chapters, project.chapters_per_arc):
            message = (
                f"{project_id} is planned for {project.target_chapters} chapters in arcs of {project.chapters_per_arc}, "
                f"cannot resize it to {run_input.target_chapters} in arcs of {run_input.chapters_per_arc}"
            )
            logger.error(message)
            self.state.last_error = message
            await self._set_status("error")
            await self.bus.emit("error", message=message)
            return self._result("error")
        if project.status != "active":
            await asyncio.to_thread(self.project_db.update_status, project_id, "active")

        if not await self._ensure_plan(project):
            return self._result("error")
        self.state.total_arcs = self.story_outline.target_arcs

        position = run_input.current_chapter if run_input.current_chapter is not None else project.position
        end = project.target_chapters
        if run_input.chapters_to_write:
            end = min(end, position + run_input.chapters_to_write)
        self._position = position
        if position >= project.target_chapters:
            logger.info(f"{project_id}: all {project.target_chapters} chapters already processed")
            return await self._finish()

        logger.info(f"{project_id}: writing chapters {position + 1}-{end} of {project.target_chapters}")
        await self._set_status("writing")
        halted = await self._write_range(position + 1, end)
        await self._save_checkpoint()
        if halted:
            return self._result(self.state.status)
        return await self._finish()

    async def _load_project(self, run_input: RunInput) -> Project:
        project = await asyncio.to_thread(self.project_db.get_project, run_input.project_id)
        fresh = Project(
            project_id=run_input.project_id,
            title=run_input.title,
            genre=run_input.genre,
            premise=run_input.premise,
            protagonist=run_input.protagonist,
            target_chapters=run_input.target_chapters,
            chapters_per_arc=run_input.chapters_per_arc,
        )
        if project is None:
            logger.info(f"new project {run_input.project_id}: {run_input.target_chapters} chapters")
        elif await asyncio.to_thread(self.project_db.get_story_outline, project.project_id) is not None:
            # arcs are already planned against the stored sizes
            fresh.target_chapters = project.target_chapters
            fresh.chapters_per_arc = project.chapters_per_arc
        await asyncio.to_thread(self.project_db.add_project, fresh)
        return await asyncio.to_thread(self.project_db.get_project, run_input.project_id)

    async def _ensure_plan(self, project: Project) -> bool:
        project_id = project.project_id
        outline = await asyncio.to_thread(self.project_db.get_story_outline, project_id)
        if outline is None:
            await self._set_status("planning_story")
            try:
                outline = await self.planner.plan(
                    project.premise,
                    project.genre,
                    project.target_chapters,
                    project.chapters_per_arc,
                    title=project.title,
                    protagonist_name=project.protagonist,
                )
            except GenerationFailure as e:
                await self._fail(f"story planning failed: {e}")
                return False
            await asyncio.to_thread(self.project_db.save_story_outline, project_id, outline)
            await self.bus.emit("story_planned", title=outline.title, target_arcs=outline.target_arcs)
        else:
            logger.info(f"{project_id}: reusing stored story outline '{outline.title}'")
        self.story_outline = outline

        world_bible = build_world_bible(outline)
        await self.store.seed_threads(project_id, world_bible.plot_threads)

        arcs = await asyncio.to_thread(self.project_db.get_arcs, project_id)
        if len(arcs) < outline.target_arcs:
            await self._set_status("planning_arcs")

            async def on_arc_planned(arc: ArcOutline):
                await asyncio.to_thread(self.project_db.save_arc, project_id, arc)
                await self.bus.emit(
                    "arc_planned",
                    arc_number=arc.arc_number,
                    title=arc.title,
                    start_chapter=arc.start_chapter,
                    end_chapter=arc.end_chapter,
                )

            result = await self.planner.plan_all_arcs(outline, world_bible, arcs, on_arc_planned)
            self.arc_outlines = result.arcs
            if not result.success:
                await self._fail(f"arc planning failed at arc {result.failed_arc}: {result.error}")
                return False
            arcs = result.arcs
        self.arc_outlines = arcs
        return True

    ###########################################################################

    async def _write_range(self, first: int, last: int) -> bool:
        """Writes chapters first..last in order. True when the run halted before the end of the range."""
        last_duration: Optional[float] = None
        started_any_arc = False
        for arc in self.arc_outlines:
            chapters = [n for n in range(first, last + 1) if arc.contains(n)]
            if not chapters:
                continue
            if started_any_arc and self.config.delay_between_arcs > 0:
                await asyncio.sleep(self.config.delay_between_arcs)
            started_any_arc = True

            self.state.current_arc = arc.arc_number
            await self.bus.emit("arc_started", arc_number=arc.arc_number, title=arc.title)
            for chapter_number in chapters:
                if last_duration is not None:
                    await self._chapter_delay(last_duration)
                if await self._halt_requested():
                    return True

                outline = arc.get_chapter_outline(chapter_number) or ChapterOutline(
                    chapter_number=chapter_number, title=f"Chapter {chapter_number}"
                )
                result = await self._write_one(arc, outline)
                last_duration = result.duration
                if result.state != "ACCEPTED" and self.config.pause_on_error:
                    await self._set_status("paused")
                    await asyncio.to_thread(self.project_db.update_status, self.state.project_id, "paused")
                    return True

            if chapters[-1] == arc.end_chapter:
                await self.bus.emit("arc_completed", arc_number=arc.arc_number, title=arc.title)
        return False

    async def _chapter_delay(self, last_duration: float):
        delay = self.config.delay_between_chapters
        if last_duration > self.config.slow_chapter_seconds:
            delay = min(delay, SLOW_CHAPTER_DELAY)
        # a zero delay still yields, so handlers see the previous chapter before the next one starts
        await asyncio.sleep(delay)

    async def _halt_requested(self) -> bool:
        if not self._resume.is_set() and not self._stop_requested:
            await self._set_status("paused")
            await self._resume.wait()
            if not self._stop_requested:
                await self._set_status("writing")
        if self._stop_requested:
            logger.info(f"{self.state.project_id}: stopped before chapter {self._position + 1}")
            await self._set_status("paused")
            await asyncio.to_thread(self.project_db.update_status, self.state.project_id, "paused")
            return True
        return False

    async def _write_one(self, arc: ArcOutline, outline: ChapterOutline) -> ChapterResult:
        project_id = self.state.project_id
        chapter_number = outline.chapter_number
        self.state.current_chapter = chapter_number
        self.state.last_activity_at = datetime.now()
        await self.bus.emit("chapter_started", chapter_number=chapter_number, arc_number=arc.arc_number, title=outline.title)

        try:
            result = await self.pipeline.write_chapter(project_id, outline, arc)
            if result.state == "ACCEPTED":
                await self.store.commit_accepted_chapter(result)
                self._cursor = await self.project_db.aadvance_cursor(project_id, self._cursor)
            else:
                await self.store.save_rejected_draft(result)
                if not self.config.pause_on_error:
                    await self.project_db.aadd_skipped_chapter(project_id, chapter_number)
                    self._skipped.append(chapter_number)
        except PersistenceError as e:
            await self._fail(f"chapter {chapter_number}: {e}")
            raise

        self._results.append(result)
        if result.state == "ACCEPTED" or not self.config.pause_on_error:
            self._position = chapter_number
        if result.state == "ACCEPTED":
            await self._on_accepted(result)
        else:
            self._session_failed += 1
            self.state.chapters_failed += 1
            self.state.last_error = result.error
            await self.bus.emit(
                "chapter_failed",
                chapter_number=chapter_number,
                error=result.error,
                quality_score=result.quality_score,
                skipped=not self.config.pause_on_error,
            )
        await self.bus.emit("progress", **self._progress())
        return result

    async def _on_accepted(self, result: ChapterResult):
        self._session_written += 1
        self.state.chapters_written += 1
        self.state.total_words += result.word_count
        self.state.rewrite_count += result.rewrites
        self.state.average_words_per_chapter = round(self.state.total_words / self.state.chapters_written, 1)
        self.state.last_activity_at = datetime.now()

        await asyncio.to_thread(
            text_file_append,
            get_text_file_path(result.project_id),
            f"Chapter {result.chapter_number}: {result.title}\n\n{result.content}",
        )
        await self.bus.emit(
            "chapter_completed",
            chapter_number=result.chapter_number,
            title=result.title,
            word_count=result.word_count,
            quality_score=result.quality_score,
            rewrites=result.rewrites,
            degraded_plan=result.degraded_plan,
        )

        if self._session_written % self.config.auto_save_interval == 0:
            await self._save_checkpoint()

        if self.validator.is_milestone(result.chapter_number):
            try:
                report = await self.validator.validate(result.project_id, result.chapter_number)
                self._reports.append(report)
            except Exception:
                logger.exception(f"milestone validation at chapter {result.chapter_number} failed, continuing")

    def _progress(self) -> dict:
        total = self.state.total_chapters
        return {
            "chapter_number": self.state.current_chapter,
            "total_chapters": total,
            "chapters_written": self.state.chapters_written,
            "chapters_failed": self.state.chapters_failed,
            "percent": round(self._position / total * 100, 1) if total else 0,
            "estimated_cost": round(self.ledger.report().estimated_cost, 4),
        }

    ###########################################################################

    async def _save_checkpoint(self):
        checkpoint = Checkpoint(
            project_id=self.state.project_id,
            current_chapter=self._position,
            chapters_written=self.state.chapters_written,
            chapters_failed=self.state.chapters_failed,
            total_words=self.state.total_words,
            saved_at=datetime.now(),
        )
        await self.project_db.asave_checkpoint(checkpoint)

    async def _set_status(self, status: RunStatusType, **payload: Any):
        previous = self.state.status
        if previous == status:
            return
        self.state.status = status
        logger.info(f"{self.state.project_id}: {previous} -> {status}")
        await self.bus.emit("status_change", previous=previous, status=status, **payload)

    async def _fail(self, message: str):
        logger.error(f"{self.state.project_id}: {message}")
        self.state.last_error = message
        await self._set_status("error")
        try:
            await asyncio.to_thread(self.project_db.update_status, self.state.project_id, "error")
        except PersistenceError as e:
            logger.error(f"{self.state.project_id}: could not record error status: {e}")
        await self.bus.emit("error", message=message)

    async def _finish(self) -> RunResult:
        novel_finished = self._position >= self._target_chapters
        if novel_finished:
            await asyncio.to_thread(self.project_db.update_status, self.state.project_id, "completed")
        await self._set_status("completed")
        await self.bus.emit(
            "completed",
            novel_finished=novel_finished,
            chapters_written=self._session_written,
            chapters_failed=self._session_failed,
        )
        logger.info(
            f"{self.state.project_id}: run completed, {self._session_written} written, "
            f"{self._session_failed} failed, novel finished={novel_finished}"
        )
        return self._result("completed")

    def _result(self, status: RunStatusType) -> RunResult:
        return RunResult(
            project_id=self.state.project_id,
            status=status,
            chapters_written=self._session_written,
            chapters_failed=self._session_failed,
            skipped_chapters=list(self._skipped),
            results=list(self._results),
            milestone_reports=list(self._reports),
            cost_report=self.ledger.report(),
            final_state=self.state.model_copy(),
            error=self.state.last_error if status == "error" else None,
        )
