"""
Unified LLM completion over httpx.
Anthropic by default, Groq in the cloud, Ollama for local development.
"""

import json
import logging
import re
from typing import Any, Optional

import httpx

import config

LOGGER = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _error_message(error) -> str:
    # Providers send either {"message": ...} or a bare string
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


def llm_available() -> bool:
    provider = config.LLM_PROVIDER
    if provider == "anthropic":
        return bool(config.ANTHROPIC_API_KEY)
    if provider == "groq":
        return bool(config.GROQ_API_KEY)
    return provider == "ollama"


async def llm_complete(
    prompt: str,
    temperature: float = 0,
    timeout: float = 30.0,
    max_tokens: int = 2000,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[str]:
    """
    Return the model's text reply, or None on any provider error.
    Callers decide what a missing answer means for them.
    """
    provider = config.LLM_PROVIDER
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            if provider == "anthropic" and config.ANTHROPIC_API_KEY:
                response = await client.post(
                    config.ANTHROPIC_URL,
                    headers={
                        "x-api-key": config.ANTHROPIC_API_KEY,
                        "anthropic-version": "2023-06-01",
                        "content-type": "application/json",
                    },
                    json={
                        "model": config.ANTHROPIC_MODEL,
                        "max_tokens": max_tokens,
                        "temperature": temperature,
                        "messages": [{"role": "user", "content": prompt}],
                    },
                )
                data = response.json()
                if data.get("type") == "error" or "error" in data:
                    LOGGER.warning("[LLM] Anthropic error: %s", _error_message(data.get("error")))
                    return None
                blocks = [b.get("text", "") for b in data.get("content", []) if b.get("type") == "text"]
                return "".join(blocks).strip() or None

            if provider == "groq" and config.GROQ_API_KEY:
                # Groq (OpenAI-compatible API)
                response = await client.post(
                    config.GROQ_URL,
                    headers={
                        "Authorization": f"Bearer {config.GROQ_API_KEY}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": config.GROQ_MODEL,
                        "messages": [{"role": "user", "content": prompt}],
                        "temperature": temperature,
                        "max_tokens": max_tokens,
                    },
                )
                data = response.json()
                # Check for rate limit or other errors
                if "error" in data:
                    LOGGER.warning("[LLM] Groq error: %s", _error_message(data["error"]))
                    return None
                return data["choices"][0]["message"]["content"].strip()

            if provider == "ollama":
                response = await client.post(
                    config.OLLAMA_URL,
                    json={
                        "model": config.OLLAMA_MODEL,
                        "prompt": prompt,
                        "stream": False,
                        "options": {"temperature": temperature},
                    },
                )
                return response.json()["response"].strip()

            LOGGER.warning("[LLM] Provider %r is not configured", provider)
            return None
    except Exception as e:
        LOGGER.warning("[LLM] Error: %s", e)
        return None


def extract_json(text: str) -> Optional[Any]:
    """
    Pull the first well-formed JSON object or array out of a model reply.
    Models wrap JSON in prose or code fences often enough that we never trust
    the reply to be bare JSON.
    """
    if not text:
        return None

    candidates = [m.group(1) for m in CODE_FENCE_RE.finditer(text)]
    candidates.append(text)

    decoder = json.JSONDecoder()
    for candidate in candidates:
        for start, char in enumerate(candidate):
            if char not in "{[":
                continue
            try:
                value, _ = decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                continue
            return value
    return None
