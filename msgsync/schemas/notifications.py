from __future__ import annotations

from pydantic import BaseModel, Field


class LocalNotification(BaseModel):
    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)
    sound: bool = True
