"""
Thin JSON-mode wrapper around LiteLLM.

Every pipeline LLM call goes through complete_json(), which:
- requests a JSON object response
- applies the configured timeout (no call may block a worker indefinitely)
- strips markdown fences and parses the reply into a dict

Errors are not caught here; each stage decides whether a failure is fatal.
"""

import json
import logging
from typing import Any, Optional

from ..config import Config

logger = logging.getLogger(__name__)

# Lazy import for litellm to avoid slow network requests during module load
_litellm = None


def _get_litellm():
    """Lazy-load litellm to avoid startup delays."""
    global _litellm
    if _litellm is None:
        import litellm
        litellm.suppress_debug_info = True
        _litellm = litellm
    return _litellm


def parse_json_response(response_text: Optional[str]) -> dict:
    """
    Parse an LLM reply into a JSON object.

    Raises:
        ValueError: if the reply is empty, not JSON, or not a JSON object
    """
    if not response_text:
        raise ValueError("Empty LLM response")

    text = response_text.strip()

    # Strip markdown code blocks if present
    if text.startswith("```"):
        lines = text.split("\n")
        # Remove first line (```json or ```)
        lines = lines[1:]
        # Remove last line if it's closing ```
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug(f"Unparseable LLM response: {response_text[:500]}")
        raise ValueError(f"LLM response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("LLM response is not a JSON object")
    return data


def image_message(prompt: str, image_url: str) -> dict:
    """User message carrying text plus an image URL."""
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ],
    }


async def complete_json(
    model: str,
    messages: list[dict[str, Any]],
    *,
    temperature: float,
    max_tokens: int,
    timeout: Optional[float] = None,
) -> dict:
    """
    Run one chat completion in JSON mode and return the parsed object.

    Raises:
        ValueError: if the reply cannot be parsed as a JSON object
        Exception: provider/transport errors from litellm propagate unchanged
    """
    litellm = _get_litellm()
    response = await litellm.acompletion(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        response_format={"type": "json_object"},
        timeout=timeout if timeout is not None else Config.llm_timeout(),
    )
    return parse_json_response(response.choices[0].message.content)
