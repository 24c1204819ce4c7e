"""
Tolerant JSON recovery for completion output.

Completion backends wrap answers in reasoning blocks, Markdown fences or
chatty prose. These helpers peel that away and find the first JSON object.
"""

import re
import json
from typing import Any, Dict, Optional

REASONING_PATTERN = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.DOTALL | re.IGNORECASE)
UNCLOSED_REASONING_PATTERN = re.compile(r"^\s*<think(?:ing)?>.*$", re.DOTALL | re.IGNORECASE)
CODE_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def strip_reasoning(text: str) -> str:
    """Remove <think>...</think> blocks some reasoning models emit."""
    cleaned = REASONING_PATTERN.sub("", text)
    # An opening tag with no close means the whole answer was reasoning
    cleaned = UNCLOSED_REASONING_PATTERN.sub("", cleaned)
    return cleaned.strip()


def strip_code_fences(text: str) -> str:
    match = CODE_FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def find_balanced_object(text: str) -> Optional[str]:
    """
    Return the first balanced ``{...}`` span in ``text``.

    Braces inside JSON string literals (including escaped quotes) are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of free-form completion text.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    if not text or not text.strip():
        raise ValueError("Empty completion payload")

    cleaned = strip_code_fences(strip_reasoning(text))

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    candidate = find_balanced_object(cleaned)
    while candidate is not None:
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
        offset = cleaned.find(candidate) + 1
        cleaned = cleaned[offset:]
        candidate = find_balanced_object(cleaned)

    raise ValueError(f"No JSON object found in completion: {text[:100]!r}")
