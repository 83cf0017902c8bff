import copy
import os
from typing import Any, Dict, List, Literal, Optional


from dotenv import load_dotenv
load_dotenv()


llm_temperatures = {
    "creative": 0.8,
    "planning": 0.7,
    "synthesis": 0.3,
    "reasoning": 0.2,
    "summarization": 0.1,
}


llm_group_type = Literal['reasoning', 'fast', 'summary']


###############################################################################


llms_api = {
    "reasoning": {
        "model": os.getenv("NOVEL_REASONING_MODEL", "gemini/gemini-2.5-flash"),
        "api_key": os.getenv("GEMINI_API_KEY"),
        "context_window": 1048576,
        "fallbacks": [
            {
                "model": "openrouter/deepseek/deepseek-chat-v3-0324",
                "api_key": os.getenv("OPENROUTER_API_KEY"),
                "context_window": 163840,
            },
        ]
    },
    "fast": {
        "model": os.getenv("NOVEL_FAST_MODEL", "gemini/gemini-2.5-flash-lite"),
        "api_key": os.getenv("GEMINI_API_KEY"),
        "context_window": 1048576,
        "fallbacks": [
            {
                "model": "groq/llama-3.1-8b-instant",
                "api_key": os.getenv("GROQ_API_KEY"),
                "context_window": 131072,
            },
        ]
    },
    "summary": {
        "model": os.getenv("NOVEL_SUMMARY_MODEL", "gemini/gemini-2.5-flash-lite"),
        "api_key": os.getenv("GEMINI_API_KEY"),
        "context_window": 1048576,
        "fallbacks": []
    }
}


# Retries and timeouts are owned by utils.call_llm, litellm only handles fallbacks.
llm_api_params = {
    "caching": False,
    "max_tokens": 8192,
    "num_retries": 0,
    "respect_retry_after": True,
    "exceptions_to_fallback_on": [
        "RateLimitError",
        "Timeout",
        "APIConnectionError",
        "ServiceUnavailableError",
        "APIError",
    ]
}


def get_llm_params(
    llm_group: llm_group_type = 'reasoning',
    messages: Optional[List[Dict[str, Any]]] = None,
    temperature: float = llm_temperatures["reasoning"],
    **kwargs: Any
) -> Dict[str, Any]:
    llm_params = copy.deepcopy(llms_api[llm_group])
    llm_params.pop("context_window", None)
    if not llm_params.get("fallbacks"):
        llm_params.pop("fallbacks", None)

    llm_params.update(**llm_api_params)
    llm_params.update({k: v for k, v in kwargs.items() if v is not None})

    llm_params["temperature"] = temperature

    if messages is not None:
        llm_params["messages"] = copy.deepcopy(messages)

    return llm_params
