import asyncio
from typing import Awaitable, Callable, Dict, List, Optional
from loguru import logger

from utils.config import DEFAULT_MILESTONES
from utils.models import (
    MilestoneReport,
    MilestoneValidation,
    ValidationDetails,
    ValidationIssue,
    ValidationStatusType,
    ValidationType,
)
from utils.sqlite_continuity import ContinuityStore
from utils.sqlite_milestone import MilestoneDB


"""
Long-range structural audit at milestone chapters.
Five independent read-only checks run in parallel; the report is advisory and stored append-only.
"""


ABANDONED_THREAD_CHAPTERS = 100
MIN_RESOLUTION_RATIO = 0.3
RESOLUTION_CHECK_AFTER = 200
MAX_CRITICAL_THREADS = 3
MIN_PROTAGONIST_GROWTH = 30
GROWTH_CHECK_AFTER = 200
FORGOTTEN_CHARACTER_CHAPTERS = 150
POWER_WINDOW = 100
MAX_POWER_EVENTS_IN_WINDOW = 5
CHAPTERS_PER_BREAKTHROUGH = 50
MIN_PAYOFF_RATIO = 0.5
PAYOFF_CHECK_MIN_HINTS = 10
MIN_CHAPTER_COVERAGE = 0.9


CheckFn = Callable[[str, int], Awaitable[MilestoneValidation]]



def _validation(
    project_id: str,
    chapter: int,
    validation_type: ValidationType,
    score: float,
    issues: List[ValidationIssue],
    strengths: List[str],
    metrics: Dict[str, float],
    recommendations: List[str],
    status: Optional[ValidationStatusType] = None,
) -> MilestoneValidation:
    if status is None:
        if any(i.type == "error" for i in issues):
            status = "failed"
        elif issues:
            status = "warning"
        else:
            status = "passed"
    return MilestoneValidation(
        project_id=project_id,
        milestone_chapter=chapter,
        validation_type=validation_type,
        status=status,
        details=ValidationDetails(
            score=round(min(100, max(0, score)), 2),
            issues=issues,
            strengths=strengths,
            metrics=metrics,
        ),
        recommendations=recommendations,
    )



def summarize_report(report: MilestoneReport) -> str:
    parts = [
        f"=== MILESTONE {report.milestone_chapter} VALIDATION ===",
        f"Overall: {report.overall_status.upper()} ({round(report.overall_score)}/100)",
        "",
    ]
    for v in report.validations:
        parts.append(f"[{v.status}] {v.validation_type}: {v.details.score}/100")
        for issue in v.details.issues:
            parts.append(f"   - {issue.type}: {issue.description}")
        if v.recommendations:
            parts.append(f"   Recommendations: {len(v.recommendations)}")
    return "\n".join(parts)



def build_report(project_id: str, chapter: int, validations: List[MilestoneValidation]) -> MilestoneReport:
    if any(v.status == "failed" for v in validations):
        overall: ValidationStatusType = "failed"
    elif any(v.status == "warning" for v in validations):
        overall = "warning"
    else:
        overall = "passed"
    score = sum(v.details.score for v in validations) / len(validations) if validations else 100
    recommendations: List[str] = []
    for v in validations:
        for r in v.recommendations:
            if r not in recommendations:
                recommendations.append(r)
    report = MilestoneReport(
        project_id=project_id,
        milestone_chapter=chapter,
        overall_status=overall,
        overall_score=round(score, 2),
        validations=validations,
        critical_issues=[i for v in validations for i in v.details.issues if i.type == "error"],
        recommendations=recommendations,
    )
    report.summary = summarize_report(report)
    return report



class MilestoneValidator:
    def __init__(self, store: ContinuityStore, db: MilestoneDB, milestones: Optional[List[int]] = None):
        self.store = store
        self.db = db
        self.milestones = sorted(milestones if milestones is not None else DEFAULT_MILESTONES)

    def is_milestone(self, chapter: int) -> bool:
        return chapter in self.milestones

    async def check_and_validate(self, project_id: str, chapter: int) -> Optional[MilestoneReport]:
        if not self.is_milestone(chapter):
            return None
        return await self.validate(project_id, chapter)

    async def validate(self, project_id: str, chapter: int) -> MilestoneReport:
        logger.info(f"milestone validation of {project_id} at chapter {chapter}")
        checks: List[tuple] = [
            ("thread_resolution", self.check_thread_resolution),
            ("character_arc", self.check_character_arcs),
            ("power_consistency", self.check_power_progression),
            ("foreshadowing_payoff", self.check_foreshadowing_payoff),
            ("pacing_check", self.check_pacing),
        ]
        validations = await asyncio.gather(*[
            self._run_check(validation_type, fn, project_id, chapter) for validation_type, fn in checks
        ])
        ids = await self.db.add_validations(list(validations))
        for v, vid in zip(validations, ids):
            v.id = vid

        report = build_report(project_id, chapter, list(validations))
        logger.info(f"milestone {chapter} of {project_id}: {report.overall_status} ({report.overall_score}/100)\n{report.summary}")
        return report

    async def _run_check(self, validation_type: ValidationType, fn: CheckFn, project_id: str, chapter: int) -> MilestoneValidation:
        try:
            return await fn(project_id, chapter)
        except Exception as e:
            logger.exception(f"milestone check {validation_type} failed at chapter {chapter}")
            return _validation(
                project_id, chapter, validation_type, 50,
                [ValidationIssue(type="warning", description=f"check could not run: {e}")],
                [], {}, [f"Re-run the {validation_type} check"],
                status="warning",
            )

    async def get_validation_history(self, project_id: str, milestone_chapter: Optional[int] = None) -> List[MilestoneValidation]:
        return await self.db.get_validations(project_id, milestone_chapter)

    async def get_latest_validation(self, project_id: str) -> Optional[MilestoneReport]:
        """Report of the most recent milestone, using the newest record of each check."""
        history = await self.db.get_validations(project_id)
        if not history:
            return None
        latest_chapter = max(v.milestone_chapter for v in history)
        newest: Dict[str, MilestoneValidation] = {}
        for v in history:
            if v.milestone_chapter == latest_chapter:
                newest[v.validation_type] = v
        return build_report(project_id, latest_chapter, list(newest.values()))

    ###########################################################################

    async def check_thread_resolution(self, project_id: str, chapter: int) -> MilestoneValidation:
        threads = await self.store.get_all_threads(project_id)
        if not threads:
            return _validation(project_id, chapter, "thread_resolution", 100, [], ["No plot threads to validate"], {}, [])

        issues, strengths, recommendations = [], [], []
        abandoned = [t for t in threads if t.status == "open" and chapter - t.last_active_chapter > ABANDONED_THREAD_CHAPTERS]
        if abandoned:
            issues.append(ValidationIssue(
                type="warning",
                description=f"{len(abandoned)} plot threads untouched for more than {ABANDONED_THREAD_CHAPTERS} chapters",
                affected_elements=[t.name for t in abandoned],
                suggested_fix="Resolve or reactivate abandoned threads",
            ))
            recommendations.append(f"Resolve {len(abandoned)} abandoned plot threads")

        resolved = [t for t in threads if t.status == "resolved"]
        ratio = len(resolved) / len(threads)
        if ratio < MIN_RESOLUTION_RATIO and chapter > RESOLUTION_CHECK_AFTER:
            issues.append(ValidationIssue(
                type="warning",
                description=f"Only {round(ratio * 100)}% of plot threads resolved",
                affected_elements=[t.name for t in threads if t.status != "resolved"],
                suggested_fix="Accelerate thread resolution to avoid accumulation",
            ))
            recommendations.append("Consider resolving more open plot threads")
        else:
            strengths.append(f"{round(ratio * 100)}% plot thread resolution rate")

        critical = [t for t in threads if t.priority == "critical" and t.status != "resolved"]
        if len(critical) > MAX_CRITICAL_THREADS:
            issues.append(ValidationIssue(
                type="error",
                description=f"{len(critical)} critical threads still unresolved",
                affected_elements=[t.name for t in critical],
                suggested_fix="Prioritize resolving critical plot threads",
            ))
            recommendations.append("URGENT: Resolve critical plot threads")

        score = 100 - len(issues) * 15 - len(abandoned) * 5
        metrics = {"total_threads": len(threads), "resolved_ratio": round(ratio, 4), "abandoned": len(abandoned)}
        return _validation(project_id, chapter, "thread_resolution", score, issues, strengths, metrics, recommendations)

    async def check_character_arcs(self, project_id: str, chapter: int) -> MilestoneValidation:
        characters = await self.store.get_character_states(project_id)
        issues, strengths, recommendations = [], [], []

        protagonist = next((c for c in characters if c.role == "protagonist"), None)
        if protagonist:
            if protagonist.growth_score < MIN_PROTAGONIST_GROWTH and chapter > GROWTH_CHECK_AFTER:
                issues.append(ValidationIssue(
                    type="warning",
                    description="Protagonist character growth is minimal",
                    affected_elements=[protagonist.name],
                    suggested_fix="Add significant character development moments",
                ))
                recommendations.append("Develop protagonist character arc more deeply")
            else:
                strengths.append("Protagonist showing meaningful growth")

        forgotten = [
            c for c in characters
            if c.role in ("major", "ally") and c.status != "dead"
            and chapter - c.last_updated_chapter > FORGOTTEN_CHARACTER_CHAPTERS
        ]
        if forgotten:
            issues.append(ValidationIssue(
                type="warning",
                description=f"{len(forgotten)} major characters not seen for more than {FORGOTTEN_CHARACTER_CHAPTERS} chapters",
                affected_elements=[c.name for c in forgotten],
                suggested_fix="Reintroduce or properly write out forgotten characters",
            ))
            recommendations.append(f"Reintroduce {len(forgotten)} forgotten characters")

        metrics = {
            "character_count": len(characters),
            "protagonist_growth": protagonist.growth_score if protagonist else 0,
        }
        return _validation(project_id, chapter, "character_arc", 100 - len(issues) * 20, issues, strengths, metrics, recommendations)

    async def check_power_progression(self, project_id: str, chapter: int) -> MilestoneValidation:
        events = await self.store.get_recent_power_events(project_id, since_chapter=0)
        if not events:
            return _validation(project_id, chapter, "power_consistency", 100, [], ["No power progression to validate"], {}, [])

        issues, strengths, recommendations = [], [], []
        recent = [e for e in events if chapter - e.chapter_number < POWER_WINDOW]
        if len(recent) > MAX_POWER_EVENTS_IN_WINDOW:
            issues.append(ValidationIssue(
                type="warning",
                description=f"{len(recent)} power-ups in the last {POWER_WINDOW} chapters",
                affected_elements=["Power progression pacing"],
                suggested_fix="Slow down power progression to maintain tension",
            ))
            recommendations.append("Reduce frequency of power-ups")

        # more than one breakthrough per 50 chapters, sustained over a full window
        allowed = POWER_WINDOW // CHAPTERS_PER_BREAKTHROUGH
        by_character: Dict[str, List[int]] = {}
        for e in recent:
            if e.event_type == "breakthrough":
                by_character.setdefault(e.character_id, []).append(e.chapter_number)
        inflated = {c: chapters for c, chapters in by_character.items() if len(chapters) > allowed}
        if chapter >= POWER_WINDOW and inflated:
            issues.append(ValidationIssue(
                type="warning",
                description=f"Power inflation: more than one breakthrough per {CHAPTERS_PER_BREAKTHROUGH} chapters over the last {POWER_WINDOW}",
                affected_elements=[f"{c}: ch.{', '.join(map(str, chapters))}" for c, chapters in inflated.items()],
                suggested_fix="Space out breakthroughs more",
            ))
            recommendations.append("Increase time between major breakthroughs")
        else:
            strengths.append("Reasonable breakthrough pacing")

        breakthroughs = [e for e in events if e.event_type == "breakthrough"]
        metrics = {
            "total_progressions": len(events),
            "recent_progressions": len(recent),
            "avg_breakthrough_gap": round(chapter / (len(breakthroughs) or 1), 2),
        }
        return _validation(project_id, chapter, "power_consistency", 100 - len(issues) * 25, issues, strengths, metrics, recommendations)

    async def check_foreshadowing_payoff(self, project_id: str, chapter: int) -> MilestoneValidation:
        threads = await self.store.get_all_threads(project_id)
        issues, strengths, recommendations = [], [], []
        total = paid_off = 0
        overdue = []
        for thread in threads:
            for hint in thread.foreshadowing:
                total += 1
                if hint.status == "paid_off":
                    paid_off += 1
                elif hint.payoff_deadline is not None and hint.payoff_deadline < chapter:
                    overdue.append(f"{thread.name}: {hint.hint}")

        ratio = paid_off / total if total else 0
        if ratio < MIN_PAYOFF_RATIO and total > PAYOFF_CHECK_MIN_HINTS:
            issues.append(ValidationIssue(
                type="warning",
                description=f"Only {round(ratio * 100)}% of foreshadowing paid off",
                affected_elements=[f"{total - paid_off} pending hints"],
                suggested_fix="Increase foreshadowing payoff rate",
            ))
            recommendations.append("Pay off more planted foreshadowing hints")
        elif total:
            strengths.append(f"{round(ratio * 100)}% foreshadowing payoff rate")

        if overdue:
            issues.append(ValidationIssue(
                type="error",
                description=f"{len(overdue)} foreshadowing hints are overdue",
                affected_elements=overdue,
                suggested_fix="Pay off or extend deadlines for overdue hints",
            ))
            recommendations.append(f"URGENT: Resolve {len(overdue)} overdue foreshadowing hints")

        score = 100 - len(overdue) * 10 - ((1 - ratio) * 30 if total else 0)
        metrics = {"total_hints": total, "payoff_ratio": round(ratio, 4), "overdue_hints": len(overdue)}
        return _validation(project_id, chapter, "foreshadowing_payoff", score, issues, strengths, metrics, recommendations)

    async def check_pacing(self, project_id: str, chapter: int) -> MilestoneValidation:
        earlier = [m for m in self.milestones if m < chapter]
        start = (earlier[-1] if earlier else 0) + 1
        summaries = await self.store.get_chapter_summaries(project_id, start, chapter)
        span = chapter - start + 1
        coverage = len(summaries) / span if span > 0 else 1
        issues, strengths, recommendations = [], [], []

        if coverage < MIN_CHAPTER_COVERAGE:
            recorded = {s.chapter_number for s in summaries}
            missing = [n for n in range(start, chapter + 1) if n not in recorded]
            issues.append(ValidationIssue(
                type="warning",
                description=f"Only {round(coverage * 100)}% of chapters {start}-{chapter} have a record",
                affected_elements=[f"ch.{n}" for n in missing[:20]],
                suggested_fix="Rewrite skipped chapters or bridge the gaps in the next arc",
            ))
            recommendations.append(f"Fill {len(missing)} missing chapters before the next milestone")
        else:
            strengths.append(f"{round(coverage * 100)}% chapter coverage since chapter {start}")

        words = [s.word_count for s in summaries if s.word_count]
        metrics = {
            "chapters_since_last_milestone": span,
            "coverage": round(coverage, 4),
            "average_word_count": round(sum(words) / len(words), 1) if words else 0,
        }
        return _validation(project_id, chapter, "pacing_check", 100 - len(issues) * 15, issues, strengths, metrics, recommendations)
