from __future__ import annotations

from typing import Protocol

from src.domain.models import DecisionRecord


class DecisionService(Protocol):
    model: str

    async def complete(self, system_prompt: str, user_prompt: str) -> str: ...


class DecisionLog(Protocol):
    def append(self, record: DecisionRecord) -> None: ...
