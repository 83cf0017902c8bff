from typing import List, Optional
from pydantic import BaseModel, Field
from utils.models import ArcOutline, ChapterOutline, DopaminePoint, PlotPoint, ProtagonistPlan, StoryOutline


class StoryOutlineOutput(BaseModel):
    title: str = Field("", description="Title of the novel.")
    premise: str = Field(..., description="2-3 sentence premise.")
    main_conflict: str = Field("", description="The conflict that drives the whole novel.")
    themes: List[str] = Field(default_factory=list)
    protagonist: ProtagonistPlan = Field(default_factory=ProtagonistPlan)
    power_system: str = Field("", description="Name of the power or cultivation system.")
    realms: List[str] = Field(default_factory=list, description="Realm ladder, lowest first.")
    major_plot_points: List[PlotPoint] = Field(default_factory=list)
    ending_vision: str = ""

    def to_story_outline(self, genre: str, target_chapters: int, target_arcs: int, chapters_per_arc: int, title: str = "") -> StoryOutline:
        """Sizes come from the caller, never from the model."""
        plot_points = []
        for i, point in enumerate(self.major_plot_points, 1):
            plot_points.append(point.model_copy(update={
                "id": point.id or f"pp{i}",
                "target_arc": min(max(point.target_arc, 1), target_arcs),
            }))
        return StoryOutline(
            title=self.title or title or "Untitled",
            genre=genre,
            premise=self.premise,
            main_conflict=self.main_conflict,
            themes=self.themes,
            protagonist=self.protagonist,
            target_chapters=target_chapters,
            target_arcs=target_arcs,
            chapters_per_arc=chapters_per_arc,
            major_plot_points=plot_points,
            ending_vision=self.ending_vision,
            power_system=self.power_system,
            realms=self.realms,
        )



class ChapterOutlineOutput(BaseModel):
    chapter_number: int = Field(0, description="Absolute chapter number.")
    title: str = ""
    purpose: str = ""
    scene_beats: List[str] = Field(default_factory=list)
    dopamine_points: List[DopaminePoint] = Field(default_factory=list)
    tension_level: Optional[int] = Field(None, ge=0, le=100)
    cliffhanger_hint: str = ""



class ArcOutlineOutput(BaseModel):
    title: str = ""
    theme: str = ""
    premise: str = ""
    setup: str = ""
    confrontation: str = ""
    climax: str = ""
    resolution: str = ""
    ending_realm: str = ""
    chapter_outlines: List[ChapterOutlineOutput] = Field(default_factory=list)

    def to_arc_outline(self, arc_number: int, start_chapter: int, end_chapter: int, theme: str, chapter_outlines: List[ChapterOutline], tension_curve: List[int]) -> ArcOutline:
        return ArcOutline(
            arc_number=arc_number,
            title=self.title or f"Arc {arc_number}",
            theme=self.theme or theme,
            premise=self.premise,
            start_chapter=start_chapter,
            end_chapter=end_chapter,
            setup=self.setup,
            confrontation=self.confrontation,
            resolution=self.resolution,
            climax=self.climax,
            ending_realm=self.ending_realm,
            chapter_outlines=chapter_outlines,
            tension_curve=tension_curve,
        )
