"""Normalized print job model."""

from __future__ import annotations

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class PrintJob(BaseModel):
    """One unit of print work derived from exactly one upstream notification."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1, description="Headline printed in double size")
    subtitle: str | None = Field(None, description="Context line printed above the separator")
    message: str | None = Field(None, description="Free-form body, whitespace normalized on encode")
    timestamp: AwareDatetime = Field(..., description="When the upstream event happened")
