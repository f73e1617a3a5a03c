"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TimelineRequest(_Request):
    """Timeline plus optional merge values, for validate / compile."""
    timeline: dict[str, Any]
    merge_fields: dict[str, Any] = Field(default_factory=dict, alias="mergeFields")
    merge_field_specs: list[dict[str, Any]] | dict[str, Any] | None = Field(default=None, alias="mergeFieldSpecs")
    output: dict[str, Any] = Field(default_factory=dict)


class RenderRequest(TimelineRequest):
    webhook_url: str | None = Field(
        default=None, validation_alias=AliasChoices("webhook_url", "webhookUrl", "webhook"),
    )
    priority: int | str = 5
    client_id: str = Field(default="default", alias="clientId", max_length=80)
    attempts: int | None = Field(default=None, ge=1, le=20)
    backoff: float | None = Field(default=None, ge=0)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"priority", "attempts", "backoff"})


class RenderResponse(BaseModel):
    job_id: str
    status: str = "queued"


class ValidateResponse(BaseModel):
    valid: bool = True
    duration: float
    frame_rate: int
    width: int
    height: int
    clip_count: int
    clips_removed: int = 0
    warnings: list[str] = []
    placeholders: list[str] = []


class CompileResponse(BaseModel):
    filter_complex: str
    command: list[str]
    inputs: int
    nodes: int
    duration: float
    width: int
    height: int
    fps: int
    composition: dict[str, Any]
    merge_report: dict[str, list[str]] = {}


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    ffmpeg: bool
    playwright: bool
    jobs: dict[str, int] = {}
    workers: dict[str, int] = {}
    media: dict[str, Any] = {}
