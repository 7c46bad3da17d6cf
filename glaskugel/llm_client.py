from __future__ import annotations

import logging
from typing import Any, Optional

import anthropic
import openai
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from llm_config import LLMConfig, OPENROUTER_BASE_URL, llm_config

from .errors import UpstreamError
from .metrics import metrics

logger = logging.getLogger(__name__)

TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4000
BODY_SNIPPET_CHARS = 300


def _build_llm(provider: str, model: str, api_key: str, max_tokens: int):
    """Return a LangChain chat model for the resolved provider/model."""
    if provider == "openai":
        return ChatOpenAI(
            model=model,
            api_key=api_key,
            temperature=TEMPERATURE,
            max_tokens=max_tokens,
            max_retries=0,
        )
    if provider == "anthropic":
        return ChatAnthropic(
            model=model,
            api_key=api_key,
            temperature=TEMPERATURE,
            max_tokens=max_tokens,
            max_retries=0,
        )
    if provider == "openrouter":
        # OpenRouter via OpenAI-compatible endpoint
        return ChatOpenAI(
            model=model,
            api_key=api_key,
            base_url=OPENROUTER_BASE_URL,
            temperature=TEMPERATURE,
            max_tokens=max_tokens,
            max_retries=0,
            default_headers={"X-Title": "Glaskugel"},
        )
    raise ValueError(f"Unsupported provider: {provider}")


def _response_text(resp: Any) -> str:
    text = getattr(resp, "content", None) or ""
    if isinstance(text, list):
        # Structured content list; keep the text parts
        parts = []
        for seg in text:
            if isinstance(seg, dict) and isinstance(seg.get("text"), str):
                parts.append(seg["text"])
            elif isinstance(seg, str):
                parts.append(seg)
        text = "\n".join(parts)
    return text or ""


def _body_snippet(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    body = ""
    if response is not None:
        try:
            body = response.text
        except Exception:
            body = ""
    if not body:
        body = str(getattr(exc, "body", None) or exc)
    return body[:BODY_SNIPPET_CHARS]


async def complete(
    model: str,
    system_prompt: str,
    user_content: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    *,
    config: Optional[LLMConfig] = None,
) -> str:
    """Run one chat completion and return its text ("" when the model returns nothing).

    Raises ``ConfigurationError`` before any network traffic when no key
    resolves for ``model`` and ``UpstreamError`` on non-success responses.
    """
    provider, resolved_model, api_key = (config or llm_config).get_model_config(model)
    llm = _build_llm(provider, resolved_model, api_key, max_tokens)
    messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_content)]
    logger.debug("LLM call %s/%s (%d chars)", provider, resolved_model, len(user_content))
    try:
        resp = await llm.ainvoke(messages)
    except (openai.APIStatusError, anthropic.APIStatusError) as exc:
        metrics.record_llm_call(False)
        logger.warning("LLM %s/%s returned %s", provider, resolved_model, exc.status_code)
        raise UpstreamError(exc.status_code, _body_snippet(exc)) from exc
    except Exception:
        metrics.record_llm_call(False)
        raise
    metrics.record_llm_call(True)
    return _response_text(resp)


__all__ = ["complete", "TEMPERATURE", "DEFAULT_MAX_TOKENS"]
