"""
Tests for the summary upsert contract
"""
import math

import pytest
from pydantic import ValidationError

from posture_sync.schemas import SummaryUpsertRequest


def body(**overrides):
    data = {"dateISO": "2024-03-05", "sumWeighted": 8.5, "weightSeconds": 35.0, "count": 3, "badSeconds": 0.0}
    data.update(overrides)
    return data


def test_valid_body_accepted():
    request = SummaryUpsertRequest(**body())
    assert request.date_iso == "2024-03-05"
    assert request.to_wire() == body()


def test_impossible_calendar_date_rejected():
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(dateISO="2024-13-40"))


def test_leap_day_only_in_leap_years():
    SummaryUpsertRequest(**body(dateISO="2024-02-29"))
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(dateISO="2023-02-29"))


@pytest.mark.parametrize("value", ["2024-3-5", "05-03-2024", "2024/03/05", ""])
def test_malformed_date_rejected(value):
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(dateISO=value))


@pytest.mark.parametrize("field", ["sumWeighted", "weightSeconds", "badSeconds"])
def test_non_finite_numbers_rejected(field):
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(**{field: math.inf}))
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(**{field: math.nan}))


def test_weight_must_be_positive():
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(weightSeconds=0.0))


def test_count_must_be_non_negative_integer():
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(count=-1))
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(count="3"))


def test_bad_seconds_cannot_exceed_weight():
    with pytest.raises(ValidationError):
        SummaryUpsertRequest(**body(badSeconds=36.0))


def test_bad_seconds_optional():
    data = body()
    del data["badSeconds"]
    assert SummaryUpsertRequest(**data).bad_seconds == 0.0
