from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class AnalyticsOverviewResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_requests: int
    success_count: int
    failure_count: int
    cache_hit_count: int
    success_rate: float
    total_cost_micros: int
    avg_processing_ms: int
    active_users: int


class ErrorTypeCountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error_type: str
    count: int


class FailedSessionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    video_id: str
    user_id: str
    error_type: str | None = None
    error_message: str | None = None
    processing_time_ms: int
    created_at: str


class AnalyticsErrorsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    taxonomy: list[ErrorTypeCountResponse]
    recent_failures: list[FailedSessionResponse]


class DurationCostBucketResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bucket: str
    count: int
    total_cost_micros: int
    avg_cost_micros: int


class DailyCostResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day: str
    cost_micros: int


class AnalyticsCostsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_cost_micros: int
    avg_cost_micros: int
    total_generations: int
    by_duration: list[DurationCostBucketResponse]
    daily: list[DailyCostResponse]
