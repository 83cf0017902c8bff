import os
import sys
import pytest
from pydantic import BaseModel
from loguru import logger

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from novel.cost import CostLedger
from utils.call_llm import completion, completion_json, parse_output
from utils.errors import ParseError, ProviderError
from utils.llm import clean_prose, count_words, extract_json_text, template_fill
from utils.llm_client import CompletionParams, CompletionResult, LiteLLMClient
from tests.fakes import FakeClient, Hang


SYSTEM = "Strict editor for tests."


class Verdict(BaseModel):
    verdict: str
    score: int


def ledger(config) -> CostLedger:
    return CostLedger(config.cost_per_1k_prompt_tokens, config.cost_per_1k_completion_tokens)


@pytest.mark.asyncio
async def test_completion_retries_then_succeeds(config):
    client = FakeClient({"critic": [None, "fine"]})
    costs = ledger(config)
    result = await completion(client, SYSTEM, "review", CompletionParams(), config, "critic", costs)
    assert result.content == "fine"
    report = costs.report()
    assert report.total_calls == 2
    assert report.failed_calls == 1
    assert report.calls_by_task == {"critic": 2}


@pytest.mark.asyncio
async def test_completion_raises_after_last_retry(config):
    client = FakeClient({"critic": [None]})
    with pytest.raises(ProviderError) as exc_info:
        await completion(client, SYSTEM, "review", CompletionParams(), config, "critic")
    assert exc_info.value.attempts == config.provider_retries
    assert len(client.calls) == config.provider_retries


@pytest.mark.asyncio
async def test_empty_content_counts_as_failure(config):
    client = FakeClient({"critic": [CompletionResult(success=True, content="   "), "ok"]})
    result = await completion(client, SYSTEM, "review", CompletionParams(), config, "critic")
    assert result.content == "ok"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_timeout_is_a_provider_failure(config):
    fast = config.model_copy(update={"provider_timeout": 0.05, "provider_retries": 3})
    client = FakeClient({"critic": Hang(5)})
    with pytest.raises(ProviderError) as exc_info:
        await completion(client, SYSTEM, "review", CompletionParams(), fast, "critic")
    logger.info(f"timeout error: {exc_info.value}")
    assert "timeout" in str(exc_info.value)
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_litellm_service_unavailable_is_retried(config, monkeypatch):
    import litellm
    models = []

    async def unavailable(**kwargs):
        models.append(kwargs["model"])
        raise litellm.exceptions.ServiceUnavailableError(
            message="model overloaded",
            llm_provider="gemini",
            model=kwargs["model"],
        )

    monkeypatch.setattr(litellm, "acompletion", unavailable)
    costs = ledger(config)
    with pytest.raises(ProviderError) as exc_info:
        await completion(LiteLLMClient(), SYSTEM, "review", CompletionParams(), config, "critic", costs)
    logger.info(f"provider error: {exc_info.value}")
    assert "ServiceUnavailableError" in str(exc_info.value)
    assert len(models) == config.provider_retries
    assert costs.report().failed_calls == config.provider_retries


@pytest.mark.asyncio
async def test_client_exception_becomes_provider_failure(config):
    def broken(user_prompt: str):
        raise RuntimeError("socket closed")

    client = FakeClient({"critic": [broken, "fine"]})
    result = await completion(client, SYSTEM, "review", CompletionParams(), config, "critic")
    assert result.content == "fine"
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_completion_json_repairs_once_with_strict_prompt(config):
    client = FakeClient({"critic": ["not json at all", '```json\n{"verdict": "ok", "score": 7,}\n```']})
    costs = ledger(config)
    output = await completion_json(client, SYSTEM, "review", Verdict, CompletionParams(temperature=0.8), config, "critic", costs)
    assert output == Verdict(verdict="ok", score=7)

    fix_prompt = client.calls[1][1]
    assert "not json at all" in fix_prompt
    assert '"verdict"' in fix_prompt
    assert client.calls[1][2].temperature == 0.0
    assert costs.report().calls_by_task == {"critic": 1, "critic_fix": 1}


@pytest.mark.asyncio
async def test_completion_json_gives_up_after_repair(config):
    client = FakeClient({"critic": ['{"verdict": "ok"}']})
    with pytest.raises(ParseError) as exc_info:
        await completion_json(client, SYSTEM, "review", Verdict, CompletionParams(), config, "critic")
    assert exc_info.value.raw_output == '{"verdict": "ok"}'
    assert len(client.calls) == 2


# --- text helpers ---

def test_parse_output_accepts_surrounding_prose():
    content = 'Here is the review:\n{"verdict": "good", "score": 9}\nThanks.'
    assert parse_output(content, Verdict).score == 9


def test_extract_json_text_strips_trailing_commas():
    assert extract_json_text('{"a": [1, 2,],}') == '{"a": [1, 2]}'


def test_template_fill_leaves_missing_keys_empty():
    assert template_fill("{a}-{b}", {"a": 1}) == "1-"


def test_clean_prose_and_count_words():
    text = clean_prose("```\n# Chapter 1\n\n**Lin Feng** walked *slowly*.\n\n\n\nEnd.\n```")
    assert text == "Chapter 1\n\nLin Feng walked slowly.\n\nEnd."
    assert count_words(text) == 7
    assert count_words("") == 0
