"""
Deal Price Analytics — AI Provider
====================================

Thin abstraction over the Groq and Claude chat APIs used to draft deal
action plans. AI_PROVIDER picks the default backend (groq | claude).
Every completion is recorded in the pricing_ai_logs table when Supabase
is configured.

Usage:
    from scripts.lib.ai_provider import ai_complete
    response = await ai_complete(
        task="action_plan",
        system_prompt="Eres un experto en ventas B2B...",
        user_prompt="Analiza esta oportunidad...",
        deal_id="1234",
        json_mode=True,
    )
    print(response.content)
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Optional

from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("ai_provider")

AI_LOG_TABLE = "pricing_ai_logs"


# ─── Response Model ─────────────────────────────────────────

@dataclass
class AIResponse:
    """Standardised response from any AI provider."""
    content: str
    provider: str          # "groq" | "claude"
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int


# ─── Provider Config ────────────────────────────────────────

GROQ_MODEL = "llama-3.3-70b-versatile"
CLAUDE_MODEL = "claude-sonnet-4-5-20250929"

DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


def default_provider() -> str:
    return os.getenv("AI_PROVIDER", "groq").lower()


# ─── Core Completion ────────────────────────────────────────

async def ai_complete(
    task: str,
    system_prompt: str,
    user_prompt: str,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    temperature: float = DEFAULT_TEMPERATURE,
    deal_id: Optional[str] = None,
    json_mode: bool = False,
) -> AIResponse:
    """
    Run an AI completion and log it.

    Args:
        task: What this call is for (e.g. action_plan).
        system_prompt: System-level instructions.
        user_prompt: The user-facing prompt content.
        provider: Force a specific provider. Defaults to AI_PROVIDER env var.
        model: Force a specific model. Defaults based on provider.
        max_tokens: Max output tokens.
        temperature: Sampling temperature.
        deal_id: Optional HubSpot deal id for the audit trail.
        json_mode: Request JSON output from the provider (Groq only).

    Returns:
        AIResponse with content and token usage.

    Raises:
        ConfigError: the chosen provider has no API key.
    """
    chosen_provider = (provider or default_provider()).lower()

    if chosen_provider == "claude":
        response = await _call_claude(
            system_prompt, user_prompt,
            model=model or CLAUDE_MODEL,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    else:
        response = await _call_groq(
            system_prompt, user_prompt,
            model=model or GROQ_MODEL,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )

    await _log_ai_call(
        task=task,
        provider=response.provider,
        model=response.model,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
        latency_ms=response.latency_ms,
        deal_id=deal_id,
        success=True,
    )

    logger.info(
        "AI [%s/%s] task=%s tokens=%d+%d latency=%dms",
        response.provider, response.model, task,
        response.input_tokens, response.output_tokens, response.latency_ms,
    )
    return response


# ─── Groq Backend ───────────────────────────────────────────

async def _call_groq(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
    json_mode: bool = False,
) -> AIResponse:
    """Call Groq API (Llama 3.3 70B)."""
    from groq import AsyncGroq

    api_key = os.getenv("GROQ_API_KEY")
    if not api_key:
        raise ConfigError("GROQ_API_KEY not set")

    client = AsyncGroq(api_key=api_key)
    kwargs = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    start = time.perf_counter()
    response = await client.chat.completions.create(**kwargs)
    latency_ms = int((time.perf_counter() - start) * 1000)

    usage = response.usage
    return AIResponse(
        content=response.choices[0].message.content or "",
        provider="groq",
        model=model,
        input_tokens=usage.prompt_tokens if usage else 0,
        output_tokens=usage.completion_tokens if usage else 0,
        latency_ms=latency_ms,
    )


# ─── Claude Backend ─────────────────────────────────────────

async def _call_claude(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str,
    max_tokens: int,
    temperature: float,
) -> AIResponse:
    """Call Anthropic Claude API."""
    import anthropic

    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise ConfigError("ANTHROPIC_API_KEY not set")

    client = anthropic.AsyncAnthropic(api_key=api_key)

    start = time.perf_counter()
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=[{"role": "user", "content": user_prompt}],
    )
    latency_ms = int((time.perf_counter() - start) * 1000)

    content = "".join(block.text for block in response.content if hasattr(block, "text"))
    return AIResponse(
        content=content,
        provider="claude",
        model=model,
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
        latency_ms=latency_ms,
    )


# ─── Audit Logging ──────────────────────────────────────────

async def _log_ai_call(
    task: str,
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: int,
    deal_id: Optional[str] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> None:
    """Record an AI call in pricing_ai_logs; logging never fails the call."""
    try:
        from scripts.lib.supabase_client import get_client
        client = get_client()
        row = {
            "task": task,
            "provider": provider,
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "latency_ms": latency_ms,
            "success": success,
        }
        if deal_id is not None:
            row["deal_id"] = deal_id
        if error_message:
            row["error_message"] = error_message
        client.table(AI_LOG_TABLE).insert(row).execute()
    except ConfigError:
        logger.debug("Supabase not configured; AI call for %s not recorded", task)
    except Exception as e:
        logger.warning("Failed to log AI call: %s", e)


async def log_ai_error(
    task: str,
    provider: str,
    model: str,
    error: Exception,
    deal_id: Optional[str] = None,
    latency_ms: int = 0,
) -> None:
    """Log a failed AI call."""
    await _log_ai_call(
        task=task,
        provider=provider,
        model=model,
        input_tokens=0,
        output_tokens=0,
        latency_ms=latency_ms,
        deal_id=deal_id,
        success=False,
        error_message=str(error),
    )
