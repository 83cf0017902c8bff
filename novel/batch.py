import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar
from loguru import logger

from utils.config import FactoryConfig, load_config
from utils.models import RunInput


T = TypeVar("T")



async def run_in_waves(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[Any]],
    wave_size: int = 4,
) -> List[Any]:
    """
    fn over items in waves of at most wave_size concurrent calls; a wave finishes before the next starts.
    Results keep the order of items. A failing call yields its exception instead of a result.
    """
    if wave_size < 1:
        raise ValueError("wave_size must be at least 1")
    results: List[Any] = []
    for start in range(0, len(items), wave_size):
        wave = items[start:start + wave_size]
        logger.info(f"wave {start // wave_size + 1}: {len(wave)} items")
        results.extend(await asyncio.gather(*[fn(item) for item in wave], return_exceptions=True))
    return results



async def run_batch(
    run_inputs: List[RunInput],
    config: Optional[FactoryConfig] = None,
    runner: Optional[Callable[[RunInput], Awaitable[Any]]] = None,
) -> List[Any]:
    """One run per project, batch_wave_size projects at a time. Each project appears at most once."""
    config = config or load_config()
    if runner is None:
        from novel.story_write import flow_novel_run

        async def runner(run_input: RunInput):
            return await flow_novel_run(run_input, config)

    seen = set()
    unique = []
    for run_input in run_inputs:
        if run_input.project_id in seen:
            logger.warning(f"project {run_input.project_id} listed twice, the duplicate is skipped")
            continue
        seen.add(run_input.project_id)
        unique.append(run_input)

    logger.info(f"batch of {len(unique)} projects in waves of {config.batch_wave_size}")
    results = await run_in_waves(unique, runner, wave_size=config.batch_wave_size)

    successful_runs = 0
    failed_runs = 0
    for run_input, res in zip(unique, results):
        if isinstance(res, BaseException):
            failed_runs += 1
            logger.error(f"project {run_input.project_id} failed: {res!r}")
        else:
            successful_runs += 1
    logger.info(f"batch finished. successful: {successful_runs}, failed: {failed_runs}")
    return results
