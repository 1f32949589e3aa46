"""Plan model for school subscription tiers."""
from sqlalchemy import Boolean, Column, Integer, String, Text

from edubilling.models.base import Base


class Plan(Base):
    """
    Subscription tier offered to schools.

    Prices are stored in cents. Each plan carries a monthly and a yearly base
    price, per-seat addon prices for teachers and students, and the resource
    caps granted before addons.
    """

    __tablename__ = "plans"

    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    price_monthly = Column(Integer, nullable=True)  # NULL when not sold monthly
    price_yearly = Column(Integer, nullable=True)  # NULL when not sold yearly
    teacher_addon_monthly = Column(Integer, nullable=False, default=500)
    teacher_addon_yearly = Column(Integer, nullable=False, default=6000)
    student_addon_monthly = Column(Integer, nullable=False, default=300)
    student_addon_yearly = Column(Integer, nullable=False, default=3600)
    max_teachers = Column(Integer, nullable=False, default=1)
    max_students = Column(Integer, nullable=False, default=0)
    max_classes = Column(Integer, nullable=False, default=0)
    max_schools = Column(Integer, nullable=False, default=1)
    stripe_monthly_price_id = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)

    @property
    def is_single_seat(self) -> bool:
        """Single-seat tiers are bought by an individual teacher."""
        return self.max_teachers <= 1

    def __repr__(self) -> str:
        """String representation."""
        return f"<Plan(id={self.id}, slug={self.slug}, monthly={self.price_monthly}, yearly={self.price_yearly})>"
