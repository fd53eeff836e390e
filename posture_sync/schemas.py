"""Pydantic models for the remote summary upsert contract."""
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DATE_ISO_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class SummaryUpsertRequest(BaseModel):
    """Body for PUT /summaries. The full cumulative aggregate for one date."""

    model_config = ConfigDict(populate_by_name=True)

    date_iso: str = Field(..., alias="dateISO", pattern=DATE_ISO_PATTERN, description="Local calendar date, YYYY-MM-DD")
    sum_weighted: float = Field(..., alias="sumWeighted", allow_inf_nan=False, description="Σ deviation × weight")
    weight_seconds: float = Field(..., alias="weightSeconds", gt=0, allow_inf_nan=False, description="Σ weight in seconds")
    count: int = Field(..., ge=0, strict=True, description="Number of samples folded")
    bad_seconds: float = Field(0.0, alias="badSeconds", ge=0, allow_inf_nan=False, description="Weighted forward-head time")

    @field_validator("date_iso")
    @classmethod
    def date_must_exist(cls, value: str) -> str:
        # Pattern alone lets 2024-13-40 through
        try:
            date.fromisoformat(value)
        except ValueError:
            raise ValueError(f"'{value}' is not a real calendar date")
        return value

    @model_validator(mode="after")
    def bad_time_within_total(self):
        if self.bad_seconds > self.weight_seconds:
            raise ValueError("badSeconds cannot exceed weightSeconds")
        return self

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class SummaryResponse(BaseModel):
    """A stored daily summary as returned by the server."""

    model_config = ConfigDict(populate_by_name=True)

    date_iso: str = Field(..., alias="dateISO")
    sum_weighted: float = Field(..., alias="sumWeighted")
    weight_seconds: float = Field(..., alias="weightSeconds")
    count: int
    bad_seconds: float = Field(0.0, alias="badSeconds")
    average_deviation: Optional[float] = Field(None, alias="averageDeviation")
    updated_at: Optional[str] = Field(None, alias="updatedAt")
