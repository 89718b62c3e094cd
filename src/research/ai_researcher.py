from __future__ import annotations

import logging
import os
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

from src.domain.errors import ConfigError, DecisionServiceError, TerminalError
from src.domain.models import Decision
from src.ports.decisions import DecisionService
from src.research.analyser import MarketContext
from src.research.decision_parser import parse_decision
from src.research.prompts import build_decision_system_prompt, build_user_prompt
from src.trader.timeout import CallTimeout, call_with_timeout
from src.utils.retry import Retrier

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_TOKENS = 1200


class LLMClient:
    """
    OpenAI-compatible chat completion client.

    Provider selection:
    - OpenAI: set OPENAI_API_KEY (and optionally OPENAI_BASE_URL)
    - Ollama / other compatible servers: set OPENAI_BASE_URL; a dummy key is used if none is set.

    SDK-level retries are disabled; retrying is the Retrier's job.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Any | None = None,
    ):
        self.model = model
        self.timeout_seconds = float(timeout_seconds)
        self.max_tokens = int(max_tokens)

        if client is None:
            base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "").strip() or None
            api_key = (api_key or os.getenv("OPENAI_API_KEY") or "").strip()
            if not api_key and base_url:
                api_key = "ollama"
            if not api_key:
                raise ConfigError("OPENAI_API_KEY is not set (or set OPENAI_BASE_URL for a compatible provider)")
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=self.timeout_seconds, max_retries=0)
        self.client = client

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await call_with_timeout(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=0,
                    max_tokens=self.max_tokens,
                ),
                self.timeout_seconds,
                what=f"LLM call ({self.model})",
            )
        except CallTimeout as e:
            raise DecisionServiceError(str(e)) from e
        except APITimeoutError as e:
            raise DecisionServiceError(f"LLM API timed out after {self.timeout_seconds}s") from e
        except APIConnectionError as e:
            raise DecisionServiceError(f"Failed to connect to LLM API: {e}") from e
        except RateLimitError as e:
            raise DecisionServiceError(f"LLM rate limit exceeded: {e}") from e
        except APIStatusError as e:
            if e.status_code in (400, 401, 403, 404):
                raise TerminalError(f"LLM API rejected the request ({e.status_code}): {e}") from e
            raise DecisionServiceError(f"LLM API error ({e.status_code}): {e}") from e

        return (response.choices[0].message.content or "").strip()


class AIResearcher:
    """Turns a MarketContext into a parsed Decision via the decision service."""

    def __init__(self, service: DecisionService, retrier: Retrier, *, config: dict | None = None):
        self.service = service
        self.retrier = retrier
        self.config: dict = config or {}

    @property
    def model(self) -> str:
        return str(getattr(self.service, "model", ""))

    async def decide(self, context: MarketContext) -> Decision:
        system = build_decision_system_prompt(self.config)
        user = build_user_prompt(context)
        raw = await self.retrier.execute(
            lambda: self.service.complete(system, user),
            description=f"AI decision {context.pair}",
        )
        decision = parse_decision(raw)
        logger.info(
            f"AI decision for {context.pair}: {decision.label.upper()} risk={decision.risk_percent}% "
            f"lev={decision.leverage} reasoning={decision.reasoning[:160]!r}"
        )
        return decision
