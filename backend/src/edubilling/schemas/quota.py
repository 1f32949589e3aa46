"""Pydantic schemas for seat quota checks."""
from pydantic import BaseModel


class QuotaDecisionResponse(BaseModel):
    """Outcome of a seat quota check."""

    kind: str
    allowed: bool
    requested: int
    current: int
    maximum: int
    remaining: int
    message: str


class QuotaUsage(BaseModel):
    """Usage of one resource kind."""

    current: int
    maximum: int
    remaining: int


class UsageSummary(BaseModel):
    """Usage of every resource kind for an account."""

    teachers: QuotaUsage
    students: QuotaUsage
    classes: QuotaUsage
