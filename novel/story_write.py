from typing import Optional
from loguru import logger
from prefect import flow

from novel.orchestrator import RunOrchestrator
from utils.config import FactoryConfig, load_config
from utils.llm_client import LiteLLMClient
from utils.log import ensure_run_logger
from utils.models import RunInput, RunResult



@flow(
    persist_result=False,
    name="flow_novel_run",
    flow_run_name="{run_input.project_id}_flow_novel_run",
)
async def flow_novel_run(run_input: RunInput, config: Optional[FactoryConfig] = None) -> RunResult:
    config = config or load_config()
    ensure_run_logger(run_input.project_id)
    with logger.contextualize(run_id=run_input.project_id):
        logger.info(
            f"start project {run_input.project_id}: {run_input.target_chapters} chapters, "
            f"model group={config.llm_group} model={config.model or 'default'}"
        )
        orchestrator = RunOrchestrator(LiteLLMClient(config.llm_group), config)
        result = await orchestrator.run(run_input)
        cost = result.cost_report
        logger.info(
            f"project {run_input.project_id} {result.status}: {result.chapters_written} written, "
            f"{result.chapters_failed} failed, {cost.total_calls} calls, {cost.total_tokens} tokens, "
            f"cost ~{cost.estimated_cost:.4f}"
        )
        logger.info(f"remaining: {orchestrator.estimate_remaining_cost()}")
        return result
