from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field


ProjectStatusType = Literal["active", "paused", "completed", "error"]


"""
idle: created, nothing running.
planning_story / planning_arcs: the planner is producing outlines.
writing: the chapter loop is running.
paused: halted between chapters (pause(), stop(), or a rejected chapter with pause_on_error).
completed: every target chapter has been processed.
error: planning or persistence failed.
"""
RunStatusType = Literal["idle", "planning_story", "planning_arcs", "writing", "paused", "completed", "error"]


ThreadPriorityType = Literal["critical", "main", "sub", "background"]
ThreadStatusType = Literal["open", "resolved", "forgotten"]
CharacterRoleType = Literal["protagonist", "major", "ally", "enemy", "minor"]
CharacterStatusType = Literal["active", "injured", "dead", "missing"]
PowerEventType = Literal["breakthrough", "minor_gain"]
ChapterStateType = Literal["PLANNED", "DRAFTING", "CRITIQUING", "ACCEPTED", "REWRITE_REQUESTED", "REJECTED"]
ValidationStatusType = Literal["pending", "passed", "warning", "failed"]
ValidationType = Literal["thread_resolution", "character_arc", "power_consistency", "foreshadowing_payoff", "pacing_check"]



###############################################################################



class Project(BaseModel):
    project_id: str = Field(..., description="Stable id of one novel")
    title: str = ""
    genre: str = ""
    premise: str = ""
    protagonist: str = ""
    target_chapters: int = Field(..., ge=1)
    chapters_per_arc: int = Field(..., ge=1)
    current_chapter: int = Field(0, ge=0, description="Cursor: +1 for every accepted chapter")
    status: ProjectStatusType = "active"
    skipped_chapters: List[int] = Field(default_factory=list, description="Rejected chapters left as gaps")

    @property
    def position(self) -> int:
        """Last chapter number that has been settled, accepted or skipped."""
        return self.current_chapter + len(self.skipped_chapters)



class PlotPoint(BaseModel):
    id: str = ""
    name: str
    description: str = ""
    target_arc: int = Field(1, ge=1)
    importance: Literal["critical", "major", "minor"] = "major"



class ProtagonistPlan(BaseModel):
    name: str = ""
    starting_state: str = ""
    end_goal: str = ""
    character_arc: str = ""



class StoryOutline(BaseModel):
    title: str
    genre: str = ""
    premise: str
    main_conflict: str = ""
    themes: List[str] = Field(default_factory=list)
    protagonist: ProtagonistPlan = Field(default_factory=ProtagonistPlan)
    target_chapters: int = Field(..., ge=1)
    target_arcs: int = Field(..., ge=1)
    chapters_per_arc: int = Field(..., ge=1)
    major_plot_points: List[PlotPoint] = Field(default_factory=list)
    ending_vision: str = ""
    power_system: str = ""
    realms: List[str] = Field(default_factory=list)

    def arc_range(self, arc_number: int) -> tuple[int, int]:
        start = (arc_number - 1) * self.chapters_per_arc + 1
        end = min(arc_number * self.chapters_per_arc, self.target_chapters)
        return start, end



class DopaminePoint(BaseModel):
    type: str = Field("reversal", description="Reader-payoff beat kind, e.g. face_slap, breakthrough, power_reveal")
    description: str = ""



class ChapterOutline(BaseModel):
    chapter_number: int = Field(..., ge=1)
    title: str = ""
    purpose: str = ""
    scene_beats: List[str] = Field(default_factory=list)
    dopamine_points: List[DopaminePoint] = Field(default_factory=list)
    tension_level: int = Field(50, ge=0, le=100)
    cliffhanger_hint: str = ""
    target_word_count: Optional[int] = None



class ArcOutline(BaseModel):
    arc_number: int = Field(..., ge=1)
    title: str = ""
    theme: str = ""
    premise: str = ""
    start_chapter: int = Field(..., ge=1)
    end_chapter: int = Field(..., ge=1)
    setup: str = ""
    confrontation: str = ""
    resolution: str = ""
    climax: str = ""
    ending_realm: str = ""
    chapter_outlines: List[ChapterOutline] = Field(default_factory=list)
    tension_curve: List[int] = Field(default_factory=list)

    def contains(self, chapter_number: int) -> bool:
        return self.start_chapter <= chapter_number <= self.end_chapter

    def get_chapter_outline(self, chapter_number: int) -> Optional[ChapterOutline]:
        for outline in self.chapter_outlines:
            if outline.chapter_number == chapter_number:
                return outline
        return None

    def condensed(self) -> str:
        parts = [f"Arc {self.arc_number}: {self.title} (chapters {self.start_chapter}-{self.end_chapter})"]
        if self.resolution:
            parts.append(f"Ended with: {self.resolution}")
        if self.ending_realm:
            parts.append(f"Protagonist realm at the end: {self.ending_realm}")
        return "\n".join(parts)



###############################################################################



class ForeshadowingHint(BaseModel):
    hint: str
    planted_chapter: int = Field(..., ge=0)
    payoff_deadline: Optional[int] = None
    status: Literal["planted", "paid_off"] = "planted"



class PlotThread(BaseModel):
    thread_id: str
    name: str
    description: str = ""
    priority: ThreadPriorityType = "sub"
    status: ThreadStatusType = "open"
    introduced_chapter: int = Field(0, ge=0)
    resolved_chapter: Optional[int] = None
    last_active_chapter: int = Field(0, ge=0)
    characters: List[str] = Field(default_factory=list)
    foreshadowing: List[ForeshadowingHint] = Field(default_factory=list)



class CharacterState(BaseModel):
    character_id: str
    name: str
    role: CharacterRoleType = "minor"
    realm: str = ""
    status: CharacterStatusType = "active"
    goal: str = ""
    growth_score: int = Field(0, ge=0, le=100)
    last_updated_chapter: int = Field(0, ge=0)



class PowerProgressionEvent(BaseModel):
    chapter_number: int = Field(..., ge=1)
    event_type: PowerEventType
    character_id: str
    description: str = ""



class WorldBible(BaseModel):
    story_title: str
    protagonist: str
    protagonist_realm: str = ""
    power_system: str = ""
    realms: List[str] = Field(default_factory=list)
    plot_threads: List[PlotThread] = Field(default_factory=list)



###############################################################################



class ThreadDelta(BaseModel):
    name: str = Field(..., description="Thread name; deltas with the same normalized name are merged")
    description: str = ""
    priority: ThreadPriorityType = "sub"
    status: ThreadStatusType = "open"
    characters: List[str] = Field(default_factory=list)
    foreshadowing_planted: List[str] = Field(default_factory=list)
    foreshadowing_paid_off: List[str] = Field(default_factory=list)
    payoff_deadline: Optional[int] = None



class CharacterDelta(BaseModel):
    name: str
    role: Optional[CharacterRoleType] = None
    realm: Optional[str] = None
    status: Optional[CharacterStatusType] = None
    goal: Optional[str] = None
    growth: int = Field(0, ge=0, le=10, description="Character growth shown in this chapter")



class PowerEventDelta(BaseModel):
    character: str
    event_type: PowerEventType
    description: str = ""



class ChapterSummary(BaseModel):
    chapter_number: int = Field(..., ge=1)
    title: str = ""
    summary: str = ""
    key_events: List[str] = Field(default_factory=list)
    characters_involved: List[str] = Field(default_factory=list)
    cliffhanger: str = ""
    word_count: int = 0



class ContinuityDeltas(BaseModel):
    threads: List[ThreadDelta] = Field(default_factory=list)
    characters: List[CharacterDelta] = Field(default_factory=list)
    power_events: List[PowerEventDelta] = Field(default_factory=list)
    summary: Optional[ChapterSummary] = None



class ContinuitySnapshot(BaseModel):
    open_threads: List[PlotThread] = Field(default_factory=list)
    closed_threads: List[PlotThread] = Field(default_factory=list)
    characters: List[CharacterState] = Field(default_factory=list)
    recent_power_events: List[PowerProgressionEvent] = Field(default_factory=list)
    recent_summaries: List[ChapterSummary] = Field(default_factory=list)



###############################################################################



class CriticScores(BaseModel):
    coherence: float = Field(5, ge=0, le=10)
    continuity: float = Field(5, ge=0, le=10)
    character_consistency: float = Field(5, ge=0, le=10)
    pacing: float = Field(5, ge=0, le=10)
    payoff: float = Field(5, ge=0, le=10)

    @property
    def overall(self) -> float:
        values = [self.coherence, self.continuity, self.character_consistency, self.pacing, self.payoff]
        return round(sum(values) / len(values), 2)



class Contradiction(BaseModel):
    kind: Literal["dead_character", "reopened_thread", "other"]
    subject: str
    description: str = ""



class ChapterResult(BaseModel):
    project_id: str
    chapter_number: int = Field(..., ge=1)
    title: str = ""
    content: str = ""
    word_count: int = 0
    quality_score: float = 0
    scores: CriticScores = Field(default_factory=CriticScores)
    state: ChapterStateType = "PLANNED"
    rewrites: int = 0
    contradictions: List[Contradiction] = Field(default_factory=list)
    critic_feedback: str = ""
    continuity: ContinuityDeltas = Field(default_factory=ContinuityDeltas)
    degraded_plan: bool = False
    state_history: List[ChapterStateType] = Field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0



###############################################################################



class ValidationIssue(BaseModel):
    type: Literal["error", "warning", "info"]
    description: str
    affected_elements: List[str] = Field(default_factory=list)
    suggested_fix: str = ""



class ValidationDetails(BaseModel):
    score: float = Field(100, ge=0, le=100)
    issues: List[ValidationIssue] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    metrics: Dict[str, float] = Field(default_factory=dict)



class MilestoneValidation(BaseModel):
    id: Optional[int] = None
    project_id: str
    milestone_chapter: int
    validation_type: ValidationType
    status: ValidationStatusType
    details: ValidationDetails = Field(default_factory=ValidationDetails)
    recommendations: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None



class MilestoneReport(BaseModel):
    project_id: str
    milestone_chapter: int
    overall_status: ValidationStatusType
    overall_score: float
    validations: List[MilestoneValidation] = Field(default_factory=list)
    critical_issues: List[ValidationIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    summary: str = ""



###############################################################################



class RunnerState(BaseModel):
    project_id: str
    status: RunStatusType = "idle"
    current_arc: int = 0
    current_chapter: int = 0
    total_arcs: int = 0
    total_chapters: int = 0
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    chapters_written: int = 0
    chapters_failed: int = 0
    total_words: int = 0
    average_words_per_chapter: float = 0
    rewrite_count: int = 0
    last_error: Optional[str] = None



class Checkpoint(BaseModel):
    project_id: str
    current_chapter: int
    chapters_written: int = 0
    chapters_failed: int = 0
    total_words: int = 0
    saved_at: Optional[datetime] = None



class CostReport(BaseModel):
    total_calls: int = 0
    failed_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0
    calls_by_task: Dict[str, int] = Field(default_factory=dict)
    tokens_by_task: Dict[str, int] = Field(default_factory=dict)



class RunInput(BaseModel):
    project_id: str
    premise: str
    genre: str = "fantasy"
    title: str = ""
    protagonist: str = ""
    target_chapters: int = Field(..., ge=1)
    chapters_per_arc: int = Field(20, ge=1)
    chapters_to_write: Optional[int] = Field(None, ge=1, description="Session limit; defaults to every remaining chapter")
    current_chapter: Optional[int] = Field(None, ge=0, description="Overrides the stored resume position")



class RunResult(BaseModel):
    project_id: str
    status: RunStatusType
    chapters_written: int = 0
    chapters_failed: int = 0
    skipped_chapters: List[int] = Field(default_factory=list)
    results: List[ChapterResult] = Field(default_factory=list)
    milestone_reports: List[MilestoneReport] = Field(default_factory=list)
    cost_report: CostReport = Field(default_factory=CostReport)
    final_state: Optional[RunnerState] = None
    error: Optional[str] = None
