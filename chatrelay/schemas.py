from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: Optional[List[ChatMessage]] = None
    key: Optional[str] = None
    temperature: float = 0.6
    password: Optional[str] = None
    model: Optional[str] = None


class BillingRecord(BaseModel):
    key: str
    rate: float = 0.0
    total_granted: float = 0.0
    total_used: float = 0.0
    total_available: float = 0.0

    @property
    def usable(self) -> bool:
        return self.total_granted != 0

    @classmethod
    def unavailable(cls, key: str) -> "BillingRecord":
        return cls(key=key)
