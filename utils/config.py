from typing import Any, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.file import data_dir
from utils.llm_api import llm_group_type


DEFAULT_MILESTONES = [100, 250, 500, 750, 1000, 1500, 2000]


class FactoryConfig(BaseSettings):
    """Defaults, overridden by NOVEL_<FIELD> variables from the environment or .env, then by keyword arguments."""

    model_config = SettingsConfigDict(env_prefix="NOVEL_", env_file=".env", extra="ignore")

    llm_group: llm_group_type = Field("reasoning", description="Provider group from utils.llm_api.llms_api")
    model: Optional[str] = Field(None, description="Overrides the group's model when set")

    target_word_count: int = Field(2500, ge=1)
    min_word_ratio: float = Field(0.7, gt=0, le=1, description="Drafts below target_word_count * ratio are regenerated once")
    max_tokens: int = Field(8192, ge=256)

    min_quality_score: float = Field(5.0, ge=0, le=10, description="Quality gate threshold on the 0-10 critic scale")
    max_retries: int = Field(2, ge=0, description="Rewrite attempts after the first draft")

    provider_retries: int = Field(3, ge=1, description="Attempts per provider call before ProviderError")
    provider_timeout: float = Field(300.0, gt=0, description="Hard timeout in seconds for one provider call")
    retry_backoff_seconds: float = Field(2.0, ge=0)

    delay_between_chapters: float = Field(2.0, ge=0)
    delay_between_arcs: float = Field(5.0, ge=0)
    slow_chapter_seconds: float = Field(5.0, ge=0)
    auto_save_interval: int = Field(5, ge=1)
    pause_on_error: bool = True

    milestones: List[int] = Field(default_factory=lambda: list(DEFAULT_MILESTONES))
    summary_window: int = Field(3, ge=0)
    power_event_lookback: int = Field(50, ge=0)

    event_queue_size: int = Field(256, ge=1)
    batch_wave_size: int = Field(4, ge=1)

    cost_per_1k_prompt_tokens: float = Field(0.0003, ge=0)
    cost_per_1k_completion_tokens: float = Field(0.0025, ge=0)

    db_path: str = Field(default_factory=lambda: str(data_dir / "novel.db"))

    @property
    def min_word_count(self) -> int:
        return int(self.target_word_count * self.min_word_ratio)



def load_config(**overrides: Any) -> FactoryConfig:
    """Complex values are read as JSON, so NOVEL_MILESTONES=[100,200] works."""
    return FactoryConfig(**overrides)
