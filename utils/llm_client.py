from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from loguru import logger
from pydantic import BaseModel, Field

from utils.llm_api import get_llm_params, llm_group_type, llm_temperatures


class CompletionParams(BaseModel):
    model: Optional[str] = None
    temperature: float = llm_temperatures["reasoning"]
    max_tokens: int = 4096



class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens



class CompletionResult(BaseModel):
    success: bool
    content: str = ""
    usage: CompletionUsage = Field(default_factory=CompletionUsage)
    error: Optional[str] = None
    finish_reason: Optional[str] = None



@runtime_checkable
class TextGenerationClient(Protocol):
    """Single capability the pipeline depends on. Implementations report failures in the result, they do not raise."""

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        params: CompletionParams,
    ) -> CompletionResult:
        ...



###############################################################################



class LiteLLMClient:
    """TextGenerationClient over litellm, so any vendor litellm routes to can back the pipeline."""

    def __init__(self, llm_group: llm_group_type = "reasoning", **extra_params: Any):
        self.llm_group = llm_group
        self.extra_params = extra_params

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        params: CompletionParams,
    ) -> CompletionResult:
        full_messages = [{"role": "system", "content": system_prompt}] + list(messages)
        llm_params = get_llm_params(
            llm_group=self.llm_group,
            messages=full_messages,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            model=params.model,
            **self.extra_params,
        )

        import litellm
        import openai
        try:
            response = await litellm.acompletion(**llm_params)
        except openai.APIError as e:
            # base class of every litellm provider exception
            logger.warning(f"litellm call failed model={llm_params.get('model')}: {e}")
            return CompletionResult(success=False, error=f"{type(e).__name__}: {e}")

        if not response.choices or not response.choices[0].message or not response.choices[0].message.content:
            return CompletionResult(success=False, error="empty response")

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return CompletionResult(
            success=True,
            content=choice.message.content,
            usage=CompletionUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            finish_reason=getattr(choice, "finish_reason", None),
        )
