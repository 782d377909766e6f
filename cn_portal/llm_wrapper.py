# cn_portal/llm_wrapper.py
"""
Thin adapter over the chat-completion SDKs (Anthropic or OpenAI).

    call_llm(messages)   -> {"text", "model", "response_id", "raw"}
    stream_llm(messages) -> iterator of text deltas

Any provider failure surfaces as LLMError. With MOCK_LLM the reply is an
echo of the user's question so the app runs offline.

Env vars:
  LLM_PROVIDER     anthropic|openai (default: whichever key is set)
  ANTHROPIC_API_KEY, OPENAI_API_KEY
  OPENAI_BASE_URL  optional OpenAI-compatible gateway
  CHAT_LLM_MODEL   default depends on provider
  MOCK_LLM         (default: true; MOCK_OPENAI is honoured as an alias)
"""

import os
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cn_portal import monitoring

Messages = List[Dict[str, str]]

MOCK_LLM = os.getenv("MOCK_LLM", os.getenv("MOCK_OPENAI", "true")).lower() in ("1", "true", "yes")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "").strip() or None

PROVIDER_ALIASES = {"anthropic": "anthropic", "claude": "anthropic", "openai": "openai", "gpt": "openai"}
DEFAULT_MODELS = {"anthropic": "claude-sonnet-4-20250514", "openai": "gpt-4o-mini"}


def resolve_provider(explicit: str = "", anthropic_key: str = "") -> str:
    """Explicit choice wins, then an Anthropic key if one is set; openai otherwise."""
    chosen = PROVIDER_ALIASES.get(explicit.strip().lower())
    if chosen:
        return chosen
    if anthropic_key:
        return "anthropic"
    return "openai"


LLM_PROVIDER = resolve_provider(os.getenv("LLM_PROVIDER", ""), ANTHROPIC_API_KEY)
DEFAULT_MODEL = os.getenv("CHAT_LLM_MODEL", DEFAULT_MODELS[LLM_PROVIDER])


class LLMError(RuntimeError):
    """The completion service failed or refused the request."""


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------
def _anthropic_request(messages: Messages, model: str, max_tokens: int,
                       temperature: float) -> Tuple[Any, Dict[str, Any]]:
    # system prompt is a separate parameter, not a turn
    from anthropic import Anthropic

    system = "\n".join(m["content"] for m in messages if m["role"] == "system")
    params: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"],
    }
    if system:
        params["system"] = system
    return Anthropic, params


def _anthropic_complete(messages: Messages, model: str, max_tokens: int,
                        temperature: float, timeout: int) -> Dict[str, Any]:
    client_cls, params = _anthropic_request(messages, model, max_tokens, temperature)
    resp = client_cls(api_key=ANTHROPIC_API_KEY, timeout=timeout).messages.create(**params)
    text = "".join(getattr(block, "text", "") for block in resp.content)
    return {"text": text, "model": model, "response_id": getattr(resp, "id", None), "raw": resp}


def _anthropic_stream(messages: Messages, model: str, max_tokens: int,
                      temperature: float, timeout: int) -> Iterator[str]:
    client_cls, params = _anthropic_request(messages, model, max_tokens, temperature)
    with client_cls(api_key=ANTHROPIC_API_KEY, timeout=timeout).messages.stream(**params) as stream:
        for text in stream.text_stream:
            if text:
                yield text


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------
def _openai_create(messages: Messages, model: str, max_tokens: int,
                   temperature: float, timeout: int, stream: bool = False):
    from openai import OpenAI

    client = OpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL, timeout=timeout)
    return client.chat.completions.create(
        model=model, messages=messages, max_tokens=max_tokens,
        temperature=temperature, stream=stream,
    )


def _openai_complete(messages: Messages, model: str, max_tokens: int,
                     temperature: float, timeout: int) -> Dict[str, Any]:
    resp = _openai_create(messages, model, max_tokens, temperature, timeout)
    text = resp.choices[0].message.content if resp.choices else ""
    return {"text": text or "", "model": model, "response_id": getattr(resp, "id", None), "raw": resp}


def _openai_stream(messages: Messages, model: str, max_tokens: int,
                   temperature: float, timeout: int) -> Iterator[str]:
    for chunk in _openai_create(messages, model, max_tokens, temperature, timeout, stream=True):
        if chunk.choices and chunk.choices[0].delta.content:
            yield chunk.choices[0].delta.content


_COMPLETE: Dict[str, Callable[..., Dict[str, Any]]] = {
    "anthropic": _anthropic_complete,
    "openai": _openai_complete,
}
_STREAM: Dict[str, Callable[..., Iterator[str]]] = {
    "anthropic": _anthropic_stream,
    "openai": _openai_stream,
}


# ---------------------------------------------------------------------------
# Offline mock
# ---------------------------------------------------------------------------
MOCK_CHUNK = 16


def _mock_text(messages: Messages) -> str:
    last = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
    question = last.split("\n\n[DATA SNAPSHOT", 1)[0].strip()
    return f"(mock) You asked: {question}"[:1000]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def call_llm(messages: Messages, model: Optional[str] = None,
             max_tokens: int = 2048, temperature: float = 0.2,
             timeout: int = 30) -> Dict[str, Any]:
    """One blocking completion; returns text, model, response_id and the raw SDK response."""
    model = model or DEFAULT_MODEL
    if MOCK_LLM:
        return {"text": _mock_text(messages), "model": model,
                "response_id": f"mock-{int(time.time() * 1000)}", "raw": {"mock": True}}
    started = time.time()
    try:
        out = _COMPLETE[LLM_PROVIDER](messages, model, max_tokens, temperature, timeout)
    except Exception as e:
        raise LLMError(f"LLM call failed ({LLM_PROVIDER}): {e}") from e
    monitoring.logger.info("LLM completion", extra={
        "provider": LLM_PROVIDER, "model": model, "latency_ms": round((time.time() - started) * 1000, 1),
    })
    return out


def stream_llm(messages: Messages, model: Optional[str] = None,
               max_tokens: int = 2048, temperature: float = 0.2,
               timeout: int = 60) -> Iterator[str]:
    """Yield text deltas as the provider produces them."""
    model = model or DEFAULT_MODEL
    if MOCK_LLM:
        text = _mock_text(messages)
        for i in range(0, len(text), MOCK_CHUNK):
            yield text[i:i + MOCK_CHUNK]
        return
    try:
        yield from _STREAM[LLM_PROVIDER](messages, model, max_tokens, temperature, timeout)
    except Exception as e:
        raise LLMError(f"LLM stream failed ({LLM_PROVIDER}): {e}") from e
