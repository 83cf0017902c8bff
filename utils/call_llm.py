import asyncio
import json
from typing import Any, Optional, Type, TypeVar
from loguru import logger
from pydantic import BaseModel, ValidationError

from utils.config import FactoryConfig
from utils.errors import ParseError, ProviderError
from utils.llm import extract_json_text, get_llm_messages
from utils.llm_client import CompletionParams, CompletionResult, TextGenerationClient


T = TypeVar("T", bound=BaseModel)



async def completion_once(
    client: TextGenerationClient,
    system_prompt: str,
    user_prompt: str,
    params: CompletionParams,
    timeout: float,
) -> CompletionResult:
    """
    One provider call under a hard timeout. A timeout, or an exception the client lets escape, is
    reported like any other provider failure.
    """
    try:
        return await asyncio.wait_for(
            client.complete(system_prompt, get_llm_messages(user_prompt), params),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        return CompletionResult(success=False, error=f"timeout after {timeout}s")
    except Exception as e:
        logger.warning(f"client raised instead of reporting a failure: {type(e).__name__}: {e}")
        return CompletionResult(success=False, error=f"{type(e).__name__}: {e}")



async def completion(
    client: TextGenerationClient,
    system_prompt: str,
    user_prompt: str,
    params: CompletionParams,
    config: FactoryConfig,
    task: str,
    ledger: Optional[Any] = None,
) -> CompletionResult:
    """
    Calls the provider up to config.provider_retries times with exponential backoff.
    Every attempt is recorded in the ledger. Raises ProviderError once the retries are spent.
    """
    last_error = ""
    for attempt in range(1, config.provider_retries + 1):
        result = await completion_once(client, system_prompt, user_prompt, params, config.provider_timeout)
        ok = result.success and bool(result.content and result.content.strip())
        if ledger is not None:
            ledger.record(task, result.usage, success=ok)
        if ok:
            logger.debug(f"{task}: provider returned {len(result.content)} chars on attempt {attempt}")
            return result

        last_error = result.error or "empty response"
        logger.warning(f"{task}: provider attempt {attempt}/{config.provider_retries} failed: {last_error}")
        if attempt < config.provider_retries:
            await asyncio.sleep(config.retry_backoff_seconds * (2 ** (attempt - 1)))

    logger.error(f"{task}: provider failed after {config.provider_retries} attempts: {last_error}")
    raise ProviderError(f"{task}: {last_error}", attempts=config.provider_retries)



###############################################################################



retry_output_cls_prompt = """
# Task: fix the JSON output
Your previous answer could not be parsed. Produce it again.

# Your previous, malformed answer
{error_output}

# Parser error
{error}

# The original task
{original_task}

# Requirements
1. Follow every instruction of the original task.
2. Return one complete, valid JSON object that matches this JSON Schema:
{schema}
3. No explanation, no comments and no code fences before or after the JSON.
"""


def parse_output(content: str, output_cls: Type[T]) -> T:
    try:
        return output_cls.model_validate_json(extract_json_text(content))
    except (ValidationError, json.JSONDecodeError) as e:
        raise ParseError(str(e), raw_output=content) from e



async def completion_json(
    client: TextGenerationClient,
    system_prompt: str,
    user_prompt: str,
    output_cls: Type[T],
    params: CompletionParams,
    config: FactoryConfig,
    task: str,
    ledger: Optional[Any] = None,
) -> T:
    """
    Structured call. If the answer does not validate against output_cls, asks once more with a
    stricter prompt that includes the parser error and the schema; a second failure raises ParseError.
    """
    result = await completion(client, system_prompt, user_prompt, params, config, task, ledger)
    try:
        return parse_output(result.content, output_cls)
    except ParseError as e:
        logger.warning(f"{task}: first answer failed validation, retrying with a stricter prompt: {e}")
        error_output, error_str = e.raw_output, str(e)

    fix_prompt = retry_output_cls_prompt.format(
        error_output=error_output,
        error=error_str,
        original_task=user_prompt,
        schema=json.dumps(output_cls.model_json_schema(), ensure_ascii=False),
    )
    strict_params = params.model_copy(update={"temperature": 0.0})
    result = await completion(client, system_prompt, fix_prompt, strict_params, config, f"{task}_fix", ledger)
    try:
        return parse_output(result.content, output_cls)
    except ParseError as e:
        logger.error(f"{task}: answer still invalid after the stricter retry: {e}")
        raise
