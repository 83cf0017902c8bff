from typing import List, Optional
from pydantic import BaseModel, Field
from utils.models import (
    ChapterSummary,
    CharacterDelta,
    ContinuityDeltas,
    Contradiction,
    CriticScores,
    PowerEventDelta,
    ThreadDelta,
)


class SceneBeat(BaseModel):
    order: int = Field(1, ge=1)
    setting: str = ""
    characters: List[str] = Field(default_factory=list)
    goal: str = ""
    conflict: str = ""
    outcome: str = ""

    def render(self) -> str:
        who = ", ".join(self.characters)
        parts = [f"{self.order}. [{self.setting}]" if self.setting else f"{self.order}."]
        if who:
            parts.append(f"({who})")
        parts.append(self.goal)
        if self.conflict:
            parts.append(f"Conflict: {self.conflict}.")
        if self.outcome:
            parts.append(f"Outcome: {self.outcome}.")
        return " ".join(p for p in parts if p)



class ArchitectOutput(BaseModel):
    title: str = ""
    summary: str = ""
    beats: List[SceneBeat] = Field(..., min_length=1, description="Scene-by-scene beat sheet.")
    payoff_points: List[str] = Field(default_factory=list, description="Reader-payoff beats the chapter must deliver.")
    cliffhanger: str = ""



class CriticOutput(BaseModel):
    scores: CriticScores
    issues: List[str] = Field(default_factory=list)
    feedback: str = Field("", description="Concrete rewrite instructions.")
    characters_present: List[str] = Field(default_factory=list, description="Named characters alive and acting in the draft.")
    threads_advanced: List[str] = Field(default_factory=list, description="Plot threads the draft moves forward.")
    contradictions: List[Contradiction] = Field(default_factory=list)
    reported_word_count: Optional[int] = Field(None, description="Ignored; the measured count is used.")



class ContinuityOutput(BaseModel):
    summary: str = ""
    key_events: List[str] = Field(default_factory=list)
    characters_involved: List[str] = Field(default_factory=list)
    cliffhanger: str = ""
    threads: List[ThreadDelta] = Field(default_factory=list)
    characters: List[CharacterDelta] = Field(default_factory=list)
    power_events: List[PowerEventDelta] = Field(default_factory=list)

    def to_deltas(self, chapter_number: int, title: str, word_count: int) -> ContinuityDeltas:
        return ContinuityDeltas(
            threads=self.threads,
            characters=self.characters,
            power_events=self.power_events,
            summary=ChapterSummary(
                chapter_number=chapter_number,
                title=title,
                summary=self.summary,
                key_events=self.key_events,
                characters_involved=self.characters_involved,
                cliffhanger=self.cliffhanger,
                word_count=word_count,
            ),
        )
