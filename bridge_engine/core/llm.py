"""LLM client utilities for LangChain integration."""

import json
import re
from typing import TypeVar

from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from bridge_engine.core.config import get_settings

T = TypeVar("T", bound=BaseModel)


def get_llm(model: str | None = None, temperature: float | None = None) -> ChatOpenAI:
    """
    Get configured chat model for bridging-task generation.

    Args:
        model: Model name override (defaults to BRIDGING_MODEL)
        temperature: Temperature override (defaults to BRIDGING_TEMPERATURE)

    Returns:
        ChatOpenAI instance configured with API key and model
    """
    settings = get_settings()

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model or settings.BRIDGING_MODEL,
        temperature=settings.BRIDGING_TEMPERATURE if temperature is None else temperature,
    )


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output."""
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    # Unterminated fence
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    return cleaned.strip()


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse LLM output as JSON and validate against a Pydantic model.

    No coercion beyond fence stripping: a response that does not match the
    schema is rejected.

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        pydantic.ValidationError: If parsed JSON doesn't match schema
    """
    return model.model_validate(json.loads(_strip_llm_fences(raw_output)))
