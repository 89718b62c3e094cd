#!/usr/bin/env python3
"""
Utility: check that the configured decision model is reachable.

Reads OPENAI_API_KEY / OPENAI_BASE_URL from `config/secrets.env` (if present), lists the
models visible to the key and sends one tiny completion to the model named in
`config/config.yaml` (ai.model).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from src.domain.errors import PairTraderError  # noqa: E402
from src.research.ai_researcher import LLMClient  # noqa: E402
from src.utils.config_loader import load_config  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def _check(model: str) -> int:
    llm = LLMClient(model, timeout_seconds=30, max_tokens=8)

    logger.info("Listing models visible to this API key…")
    try:
        models = await llm.client.models.list()
        ids = sorted(m.id for m in models.data)
        print(f"\n{len(ids)} model(s) visible; configured model listed: {model in ids}")
    except Exception as e:
        print(f"\nCould not list models: {type(e).__name__}: {e}")

    logger.info("Testing a small completion using %s…", model)
    try:
        reply = await llm.complete("Reply with one word.", "Hello")
    except PairTraderError as e:
        print(f"\nFAILED: {model} call failed: {type(e).__name__}: {e}")
        return 1
    print(f"\nSUCCESS: {model} replied {reply!r}")
    return 0


def main() -> int:
    env_path = ROOT / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)

    try:
        model = str(load_config().get("ai", {}).get("model") or "gpt-4.1-mini")
    except Exception as e:
        raise SystemExit(f"Failed to load config: {e}") from e
    try:
        return asyncio.run(_check(model))
    except PairTraderError as e:
        raise SystemExit(str(e)) from e


if __name__ == "__main__":
    sys.exit(main())
