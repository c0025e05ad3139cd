from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field


class PhpFpmCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_url: str
    ping_url: str
    ping_reply: str = "pong"
    tags: list[str] = Field(default_factory=list)

    @property
    def primary_url(self) -> str:
        return self.ping_url


class GoExpvarCheck(BaseModel):
    """One go_expvar instance; also the schema peers serve at ``/datadog/expvar``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    expvar_url: str = ""
    tags: list[str] = Field(default_factory=list)
    metrics: list[dict[str, str]] = Field(default_factory=list)

    @property
    def primary_url(self) -> str:
        return self.expvar_url


RemoteFragment = GoExpvarCheck
CheckEntry = Union[PhpFpmCheck, GoExpvarCheck]


class CheckDocument(BaseModel):
    init_config: list[str] = Field(default_factory=list)
    instances: list[CheckEntry] = Field(default_factory=list)
