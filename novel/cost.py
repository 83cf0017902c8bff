import threading
from typing import Dict, Optional

from utils.llm_client import CompletionUsage
from utils.models import CostReport


# Rough token count of one chapter: the prose itself plus the context we send.
OUTPUT_TOKENS_PER_WORD = 2
INPUT_TOKENS_PER_CHAPTER = 3000
CALLS_PER_CHAPTER = 4



class CostLedger:
    """Running call/token/cost totals for one run. Updated after every provider call."""

    def __init__(self, cost_per_1k_prompt_tokens: float, cost_per_1k_completion_tokens: float):
        self.cost_per_1k_prompt_tokens = cost_per_1k_prompt_tokens
        self.cost_per_1k_completion_tokens = cost_per_1k_completion_tokens
        self._report = CostReport()
        self._lock = threading.Lock()

    def record(self, task: str, usage: Optional[CompletionUsage] = None, success: bool = True):
        usage = usage or CompletionUsage()
        with self._lock:
            report = self._report
            report.total_calls += 1
            if not success:
                report.failed_calls += 1
            report.prompt_tokens += usage.prompt_tokens
            report.completion_tokens += usage.completion_tokens
            report.total_tokens += usage.total_tokens
            report.calls_by_task[task] = report.calls_by_task.get(task, 0) + 1
            report.tokens_by_task[task] = report.tokens_by_task.get(task, 0) + usage.total_tokens
            report.estimated_cost += self._price(usage.prompt_tokens, usage.completion_tokens)

    def _price(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens / 1000 * self.cost_per_1k_prompt_tokens
            + completion_tokens / 1000 * self.cost_per_1k_completion_tokens
        )

    def report(self) -> CostReport:
        with self._lock:
            return self._report.model_copy(deep=True)

    def estimate_remaining_cost(self, remaining_chapters: int, target_word_count: int) -> Dict[str, float]:
        remaining_chapters = max(0, remaining_chapters)
        completion_tokens = remaining_chapters * target_word_count * OUTPUT_TOKENS_PER_WORD
        prompt_tokens = remaining_chapters * INPUT_TOKENS_PER_CHAPTER * CALLS_PER_CHAPTER
        return {
            "remaining_chapters": remaining_chapters,
            "estimated_tokens": prompt_tokens + completion_tokens,
            "estimated_cost": round(self._price(prompt_tokens, completion_tokens), 4),
        }
