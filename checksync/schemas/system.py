from __future__ import annotations

from pydantic import BaseModel


class HealthOut(BaseModel):
    status: str
    time: str
    node: str


class VersionOut(BaseModel):
    app: str
    version: str
    env: str
    families: list[str]
