import collections
import importlib
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple


def template_fill(template: str, context: Optional[Dict[str, Any]]) -> str:
    content = template
    if context:
        safe_context = collections.defaultdict(str, context)
        content = template.format_map(safe_context)
    return content



def get_llm_messages(user_prompt: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
    """User messages only; the system prompt travels separately in the client contract."""
    return [{"role": "user", "content": template_fill(user_prompt, context)}]



@lru_cache(maxsize=30)
def load_prompts(name: str, *component_names: str) -> Tuple[Any, ...]:
    module = importlib.import_module(f"prompts.novel.{name}")
    return tuple(getattr(module, component) for component in component_names)



###############################################################################



def clean_markdown_fences(content: str) -> str:
    """Remove a surrounding ```lang ... ``` fence, if any."""
    if not content:
        return ""
    text = content.strip()
    if not text.startswith("```"):
        return text
    text = re.sub(r"^```[^\n]*\n?", "", text, count=1)
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()



def extract_json_text(content: str) -> str:
    """
    Best effort extraction of a JSON object from a model answer.
    Handles code fences, prose around the object, // comments outside strings and trailing commas.
    """
    text = clean_markdown_fences(content)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]

    cleaned = []
    in_string = False
    escape = False
    i = 0
    while i < len(text):
        ch = text[i]
        if escape:
            cleaned.append(ch)
            escape = False
        elif ch == "\\" and in_string:
            cleaned.append(ch)
            escape = True
        elif ch == '"':
            in_string = not in_string
            cleaned.append(ch)
        elif not in_string and ch == "/" and text[i + 1:i + 2] == "/":
            while i < len(text) and text[i] != "\n":
                i += 1
            continue
        else:
            cleaned.append(ch)
        i += 1

    result = "".join(cleaned)
    result = re.sub(r",\s*}", "}", result)
    result = re.sub(r",\s*]", "]", result)
    return result



def clean_prose(content: str) -> str:
    """Strip markdown decoration a writer model tends to add around plain prose."""
    text = clean_markdown_fences(content)
    text = re.sub(r"^#{1,6}\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()



def count_words(content: str) -> int:
    if not content:
        return 0
    return len(content.split())



def normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", "", name or "")).strip().lower()
