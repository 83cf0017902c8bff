import time
from typing import Dict, List, Optional, Tuple
from loguru import logger
from pydantic import BaseModel, Field

from novel.cost import CostLedger
from novel.models.chapter import ArchitectOutput, ContinuityOutput, CriticOutput, SceneBeat
from utils.call_llm import completion, completion_json
from utils.config import FactoryConfig
from utils.errors import InvalidTransition, ParseError, ProviderError
from utils.llm import clean_prose, count_words, load_prompts, normalize_name, template_fill
from utils.llm_api import llm_temperatures
from utils.llm_client import CompletionParams, TextGenerationClient
from utils.models import (
    ArcOutline,
    ChapterOutline,
    ChapterResult,
    ChapterStateType,
    ChapterSummary,
    CharacterState,
    ContinuityDeltas,
    ContinuitySnapshot,
    Contradiction,
    CriticScores,
    PlotThread,
    PowerProgressionEvent,
    ThreadDelta,
)
from utils.sqlite_continuity import ContinuityStore


"""
Chapter state machine.

PLANNED --draft--> DRAFTING --drafted--> CRITIQUING --gate_passed--> ACCEPTED
                   DRAFTING --draft_failed--> REJECTED
                                          CRITIQUING --gate_failed--> REWRITE_REQUESTED (rewrites left)
                                          CRITIQUING --gate_failed--> REJECTED          (no rewrites left)
REWRITE_REQUESTED --draft--> DRAFTING

ACCEPTED and REJECTED are terminal.
"""


TERMINAL_STATES = ("ACCEPTED", "REJECTED")


_TRANSITIONS: Dict[Tuple[str, str], ChapterStateType] = {
    ("PLANNED", "draft"): "DRAFTING",
    ("REWRITE_REQUESTED", "draft"): "DRAFTING",
    ("DRAFTING", "drafted"): "CRITIQUING",
    ("DRAFTING", "draft_failed"): "REJECTED",
    ("CRITIQUING", "gate_passed"): "ACCEPTED",
}



def transition(state: ChapterStateType, event: str, rewrites_used: int = 0, max_retries: int = 2) -> ChapterStateType:
    if state == "CRITIQUING" and event == "gate_failed":
        return "REWRITE_REQUESTED" if rewrites_used < max_retries else "REJECTED"
    next_state = _TRANSITIONS.get((state, event))
    if next_state is None:
        raise InvalidTransition(f"no transition from {state} on '{event}'")
    return next_state



class QualityGateFailure(BaseModel):
    score: float
    min_quality_score: float
    reasons: List[str] = Field(default_factory=list)
    contradictions: List[Contradiction] = Field(default_factory=list)



def evaluate_gate(scores: CriticScores, contradictions: List[Contradiction], min_quality_score: float) -> Optional[QualityGateFailure]:
    """None when the draft passes. A draft with any contradiction never passes."""
    reasons = []
    if scores.overall < min_quality_score:
        reasons.append(f"overall score {scores.overall} is below {min_quality_score}")
    for c in contradictions:
        reasons.append(f"{c.kind}: {c.subject}" + (f" ({c.description})" if c.description else ""))
    if not reasons:
        return None
    return QualityGateFailure(
        score=scores.overall,
        min_quality_score=min_quality_score,
        reasons=reasons,
        contradictions=list(contradictions),
    )



###############################################################################



def merge_thread_deltas(deltas: List[ThreadDelta]) -> List[ThreadDelta]:
    """
    One delta per normalized thread name, in first-seen order.
    Description and priority: last non-empty write wins. Characters and foreshadowing: union.
    A later 'open' does not undo a 'resolved'/'forgotten' from the same chapter.
    """
    merged: Dict[str, ThreadDelta] = {}
    for delta in deltas:
        key = normalize_name(delta.name)
        if not key:
            continue
        current = merged.get(key)
        if current is None:
            merged[key] = delta.model_copy(deep=True)
            continue
        if delta.description:
            current.description = delta.description
        current.priority = delta.priority
        if delta.status != "open":
            current.status = delta.status
        for name in delta.characters:
            if name not in current.characters:
                current.characters.append(name)
        for hint in delta.foreshadowing_planted:
            if hint not in current.foreshadowing_planted:
                current.foreshadowing_planted.append(hint)
        for hint in delta.foreshadowing_paid_off:
            if hint not in current.foreshadowing_paid_off:
                current.foreshadowing_paid_off.append(hint)
        if delta.payoff_deadline is not None:
            current.payoff_deadline = delta.payoff_deadline
    return list(merged.values())



def detect_contradictions(snapshot: ContinuitySnapshot, characters_present: List[str], threads_advanced: List[str]) -> List[Contradiction]:
    """Draft claims checked against stored state: dead characters acting, closed threads moving again."""
    found = []
    dead = {normalize_name(c.name): c for c in snapshot.characters if c.status == "dead"}
    for name in characters_present:
        character = dead.get(normalize_name(name))
        if character:
            found.append(Contradiction(
                kind="dead_character",
                subject=character.name,
                description=f"died by chapter {character.last_updated_chapter} but appears in the draft",
            ))

    closed: Dict[str, PlotThread] = {}
    for thread in snapshot.closed_threads:
        closed[normalize_name(thread.name)] = thread
        closed[normalize_name(thread.thread_id.replace("_", " "))] = thread
    reported = set()
    for name in threads_advanced:
        thread = closed.get(normalize_name(name))
        if thread and thread.thread_id not in reported:
            reported.add(thread.thread_id)
            found.append(Contradiction(
                kind="reopened_thread",
                subject=thread.name,
                description=f"thread is {thread.status} but the draft advances it",
            ))
    return found



def _merge_contradictions(*groups: List[Contradiction]) -> List[Contradiction]:
    seen = set()
    merged = []
    for group in groups:
        for c in group:
            key = (c.kind, normalize_name(c.subject))
            if key not in seen:
                seen.add(key)
                merged.append(c)
    return merged



###############################################################################



def format_threads(threads: List[PlotThread]) -> str:
    if not threads:
        return "none"
    return "\n".join(
        f"- {t.name} [{t.priority}, {t.status}, last active ch.{t.last_active_chapter}]: {t.description}"
        for t in threads
    )



def format_characters(characters: List[CharacterState]) -> str:
    if not characters:
        return "none"
    lines = []
    for c in characters:
        line = f"- {c.name} ({c.role}, {c.status})"
        if c.realm:
            line += f", realm: {c.realm}"
        if c.goal:
            line += f", goal: {c.goal}"
        lines.append(line)
    return "\n".join(lines)



def format_power_events(events: List[PowerProgressionEvent]) -> str:
    if not events:
        return "none"
    return "\n".join(f"- ch.{e.chapter_number} {e.character_id}: {e.event_type} {e.description}".rstrip() for e in events)



def format_summaries(summaries: List[ChapterSummary]) -> str:
    if not summaries:
        return "This is the first chapter."
    parts = []
    for s in summaries:
        text = f"Chapter {s.chapter_number} {s.title}: {s.summary}"
        if s.cliffhanger:
            text += f" Ended on: {s.cliffhanger}"
        parts.append(text)
    return "\n".join(parts)



def format_world_state(snapshot: ContinuitySnapshot) -> str:
    return "\n\n".join([
        f"Open threads:\n{format_threads(snapshot.open_threads)}",
        f"Closed threads (must not advance):\n{format_threads(snapshot.closed_threads)}",
        f"Characters:\n{format_characters(snapshot.characters)}",
        f"Recent power progression:\n{format_power_events(snapshot.recent_power_events)}",
    ])



###############################################################################



class ChapterReview(BaseModel):
    scores: CriticScores = Field(default_factory=CriticScores)
    issues: List[str] = Field(default_factory=list)
    feedback: str = ""
    contradictions: List[Contradiction] = Field(default_factory=list)
    critic_failed: bool = False



class _Draft(BaseModel):
    content: str
    word_count: int
    review: ChapterReview



class ChapterPipeline:
    """
    Produces one chapter: architect -> writer -> critic -> quality gate, with rewrites, then the
    continuity deltas of an accepted chapter. Reads the continuity store before drafting and never
    writes it; the deltas travel on the ChapterResult and are committed together with it
    (ContinuityStore.commit_accepted_chapter).
    """

    def __init__(
        self,
        client: TextGenerationClient,
        store: ContinuityStore,
        config: FactoryConfig,
        ledger: Optional[CostLedger] = None,
    ):
        self.client = client
        self.store = store
        self.config = config
        self.ledger = ledger

    def _params(self, purpose: str) -> CompletionParams:
        return CompletionParams(
            model=self.config.model,
            temperature=llm_temperatures[purpose],
            max_tokens=self.config.max_tokens,
        )

    async def load_snapshot(self, project_id: str, chapter_number: int) -> ContinuitySnapshot:
        all_threads = await self.store.get_all_threads(project_id)
        characters = await self.store.get_character_states(project_id)
        since = max(0, chapter_number - self.config.power_event_lookback)
        power_events = await self.store.get_recent_power_events(project_id, since_chapter=since)
        summaries = await self.store.get_recent_summaries(project_id, chapter_number, self.config.summary_window)
        return ContinuitySnapshot(
            open_threads=[t for t in all_threads if t.status == "open"],
            closed_threads=[t for t in all_threads if t.status != "open"],
            characters=characters,
            recent_power_events=power_events,
            recent_summaries=summaries,
        )

    async def write_chapter(
        self,
        project_id: str,
        outline: ChapterOutline,
        arc: Optional[ArcOutline] = None,
    ) -> ChapterResult:
        started = time.monotonic()
        chapter_number = outline.chapter_number
        max_retries = self.config.max_retries
        logger.info(f"chapter {chapter_number}: start '{outline.title}'")

        snapshot = await self.load_snapshot(project_id, chapter_number)
        plan, degraded = await self.architect(outline, arc, snapshot)

        state: ChapterStateType = "PLANNED"
        history: List[ChapterStateType] = [state]
        rewrites = 0
        feedback = ""
        best: Optional[_Draft] = None
        error: Optional[str] = None

        while state not in TERMINAL_STATES:
            state = transition(state, "draft")
            history.append(state)
            try:
                content = await self.write_draft(outline, plan, snapshot, feedback)
            except ProviderError as e:
                logger.error(f"chapter {chapter_number}: writer failed: {e}")
                error = f"writer failed: {e}"
                state = transition(state, "draft_failed")
                history.append(state)
                break

            state = transition(state, "drafted")
            history.append(state)
            word_count = count_words(content)
            review = await self.critique(outline, plan, snapshot, content, word_count)
            draft = _Draft(content=content, word_count=word_count, review=review)
            if best is None or review.scores.overall > best.review.scores.overall:
                best = draft

            failure = evaluate_gate(review.scores, review.contradictions, self.config.min_quality_score)
            if failure is None and review.critic_failed:
                failure = QualityGateFailure(
                    score=review.scores.overall,
                    min_quality_score=self.config.min_quality_score,
                    reasons=["critic unavailable, draft not approved"],
                )
            if failure is None:
                best = draft
                state = transition(state, "gate_passed")
                history.append(state)
                break

            logger.info(f"chapter {chapter_number}: gate failed after {rewrites} rewrites: {'; '.join(failure.reasons)}")
            state = transition(state, "gate_failed", rewrites, max_retries)
            history.append(state)
            if state == "REWRITE_REQUESTED":
                rewrites += 1
                feedback = self._rewrite_feedback(review, failure)
            else:
                error = f"quality gate failed after {rewrites} rewrites: {'; '.join(failure.reasons)}"

        result = ChapterResult(
            project_id=project_id,
            chapter_number=chapter_number,
            title=plan.title or outline.title or f"Chapter {chapter_number}",
            state=state,
            rewrites=rewrites,
            degraded_plan=degraded,
            state_history=history,
            error=error,
        )
        if best is not None:
            result.content = best.content
            result.word_count = best.word_count
            result.scores = best.review.scores
            result.quality_score = best.review.scores.overall
            result.contradictions = best.review.contradictions
            result.critic_feedback = best.review.feedback

        if state == "ACCEPTED":
            result.continuity = await self.extract_continuity(outline, plan, snapshot, result)

        result.duration = round(time.monotonic() - started, 3)
        logger.info(
            f"chapter {chapter_number}: {state} score={result.quality_score} words={result.word_count} "
            f"rewrites={rewrites} in {result.duration}s"
        )
        return result

    ###########################################################################

    async def architect(self, outline: ChapterOutline, arc: Optional[ArcOutline], snapshot: ContinuitySnapshot) -> Tuple[ArchitectOutput, bool]:
        """Beat sheet for the chapter. Falls back to the outline's own beats, flagged as degraded."""
        system_prompt, user_prompt = load_prompts("architect", "system_prompt", "user_prompt")
        target = outline.target_word_count or self.config.target_word_count
        context = {
            "chapter_number": outline.chapter_number,
            "title": outline.title,
            "purpose": outline.purpose,
            "scene_beats": "; ".join(outline.scene_beats) or "none",
            "dopamine_points": "; ".join(f"{d.type}: {d.description}" for d in outline.dopamine_points) or "none",
            "cliffhanger_hint": outline.cliffhanger_hint or "none",
            "target_word_count": target,
            "min_scenes": max(3, target // 800),
            "arc": arc.condensed() if arc else "",
            "recent_summaries": format_summaries(snapshot.recent_summaries),
            "open_threads": format_threads(snapshot.open_threads),
            "characters": format_characters(snapshot.characters),
            "power_events": format_power_events(snapshot.recent_power_events),
            "extra_instructions": "",
        }
        try:
            plan = await completion_json(
                self.client,
                system_prompt,
                template_fill(user_prompt, context),
                ArchitectOutput,
                self._params("synthesis"),
                self.config,
                "architect",
                self.ledger,
            )
            return plan, False
        except (ProviderError, ParseError) as e:
            logger.warning(f"chapter {outline.chapter_number}: architect failed, using the outline's beats: {e}")
            return self.fallback_plan(outline), True

    @staticmethod
    def fallback_plan(outline: ChapterOutline) -> ArchitectOutput:
        goals = outline.scene_beats or [outline.purpose or outline.title or f"Chapter {outline.chapter_number}"]
        return ArchitectOutput(
            title=outline.title,
            summary=outline.purpose,
            beats=[SceneBeat(order=i, goal=goal) for i, goal in enumerate(goals, 1)],
            payoff_points=[f"{d.type}: {d.description}" for d in outline.dopamine_points],
            cliffhanger=outline.cliffhanger_hint,
        )

    async def write_draft(self, outline: ChapterOutline, plan: ArchitectOutput, snapshot: ContinuitySnapshot, feedback: str = "") -> str:
        """
        Prose for the beat sheet. A draft under the minimum length is regenerated once and the longer
        of the two is kept. Raises ProviderError when the first call exhausts its retries.
        """
        system_prompt, user_prompt, feedback_section, lengthen_section = load_prompts(
            "writer", "system_prompt", "user_prompt", "feedback_section", "lengthen_section"
        )
        target = outline.target_word_count or self.config.target_word_count
        min_words = int(target * self.config.min_word_ratio)
        context = {
            "chapter_number": outline.chapter_number,
            "title": plan.title or outline.title,
            "beats": "\n".join(b.render() for b in plan.beats),
            "payoff_points": "\n".join(f"- {p}" for p in plan.payoff_points) or "none",
            "cliffhanger": plan.cliffhanger or outline.cliffhanger_hint or "a hook for the next chapter",
            "recent_summaries": format_summaries(snapshot.recent_summaries),
            "world_state": format_world_state(snapshot),
            "feedback": template_fill(feedback_section, {"critic_feedback": feedback}) if feedback else "",
            "target_word_count": target,
            "min_word_count": min_words,
        }
        params = self._params("creative")
        result = await completion(
            self.client, system_prompt, template_fill(user_prompt, context), params, self.config, "write", self.ledger
        )
        content = clean_prose(result.content)
        word_count = count_words(content)
        if word_count >= min_words:
            return content

        logger.warning(f"chapter {outline.chapter_number}: draft has {word_count} words, below {min_words}, regenerating once")
        context["feedback"] = context["feedback"] + template_fill(
            lengthen_section, {"word_count": word_count, "target_word_count": target}
        )
        try:
            retry = await completion(
                self.client, system_prompt, template_fill(user_prompt, context), params, self.config, "write_lengthen", self.ledger
            )
        except ProviderError as e:
            logger.warning(f"chapter {outline.chapter_number}: regeneration failed, keeping the short draft: {e}")
            return content
        longer = clean_prose(retry.content)
        if count_words(longer) > word_count:
            return longer
        return content

    async def critique(self, outline: ChapterOutline, plan: ArchitectOutput, snapshot: ContinuitySnapshot, content: str, word_count: int) -> ChapterReview:
        """Scores the draft. A critic that cannot answer fails closed: neutral scores, never approved."""
        system_prompt, user_prompt = load_prompts("critic", "system_prompt", "user_prompt")
        context = {
            "chapter_number": outline.chapter_number,
            "title": plan.title or outline.title,
            "beats": "; ".join(b.goal for b in plan.beats),
            "payoff_points": "; ".join(plan.payoff_points) or "none",
            "word_count": word_count,
            "target_word_count": outline.target_word_count or self.config.target_word_count,
            "world_state": format_world_state(snapshot),
            "content": content,
        }
        try:
            output = await completion_json(
                self.client,
                system_prompt,
                template_fill(user_prompt, context),
                CriticOutput,
                self._params("reasoning"),
                self.config,
                "critic",
                self.ledger,
            )
        except (ProviderError, ParseError) as e:
            logger.error(f"chapter {outline.chapter_number}: critic failed, draft not approved: {e}")
            return ChapterReview(
                issues=[f"critic unavailable: {e}"],
                feedback="The previous review could not be completed. Follow the beat sheet closely.",
                critic_failed=True,
            )

        if output.reported_word_count is not None and output.reported_word_count != word_count:
            logger.debug(f"chapter {outline.chapter_number}: critic reported {output.reported_word_count} words, measured {word_count}")

        checked = detect_contradictions(snapshot, output.characters_present, output.threads_advanced)
        return ChapterReview(
            scores=output.scores,
            issues=output.issues,
            feedback=output.feedback,
            contradictions=_merge_contradictions(output.contradictions, checked),
        )

    @staticmethod
    def _rewrite_feedback(review: ChapterReview, failure: QualityGateFailure) -> str:
        lines = [f"- {reason}" for reason in failure.reasons]
        lines += [f"- {issue}" for issue in review.issues]
        if review.feedback:
            lines.append(review.feedback)
        return "\n".join(lines)

    async def extract_continuity(self, outline: ChapterOutline, plan: ArchitectOutput, snapshot: ContinuitySnapshot, result: ChapterResult) -> ContinuityDeltas:
        """World-state changes of an accepted chapter. Falls back to a summary built from the plan."""
        system_prompt, user_prompt = load_prompts("continuity", "system_prompt", "user_prompt")
        context = {
            "chapter_number": result.chapter_number,
            "title": result.title,
            "open_threads": format_threads(snapshot.open_threads),
            "characters": format_characters(snapshot.characters),
            "content": result.content,
        }
        try:
            output = await completion_json(
                self.client,
                system_prompt,
                template_fill(user_prompt, context),
                ContinuityOutput,
                self._params("summarization"),
                self.config,
                "extract_continuity",
                self.ledger,
            )
            deltas = output.to_deltas(result.chapter_number, result.title, result.word_count)
        except (ProviderError, ParseError) as e:
            logger.warning(f"chapter {result.chapter_number}: continuity extraction failed, storing the planned summary only: {e}")
            deltas = ContinuityDeltas(summary=ChapterSummary(
                chapter_number=result.chapter_number,
                title=result.title,
                summary=plan.summary or outline.purpose,
                key_events=[b.goal for b in plan.beats],
                characters_involved=sorted({name for b in plan.beats for name in b.characters}),
                cliffhanger=plan.cliffhanger or outline.cliffhanger_hint,
                word_count=result.word_count,
            ))
        deltas.threads = merge_thread_deltas(deltas.threads)
        return deltas
