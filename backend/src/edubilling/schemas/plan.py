"""Pydantic schemas for Plan model."""
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PlanResponse(BaseModel):
    """Plan as listed to customers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    description: str | None = None
    price_monthly: int | None = Field(None, description="Monthly price in cents")
    price_yearly: int | None = Field(None, description="Yearly price in cents")
    teacher_addon_monthly: int
    teacher_addon_yearly: int
    student_addon_monthly: int
    student_addon_yearly: int
    max_teachers: int
    max_students: int
    max_classes: int
    max_schools: int


class PlanList(BaseModel):
    """List of purchasable plans."""

    items: list[PlanResponse]
    total: int
