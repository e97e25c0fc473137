# backend/app/models/user.py
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.utils.datetime import utcnow

PLANS = ("free", "starter", "pro", "business")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)

    # Subscription tier; billing owns it, we only read it for feature gating.
    plan: Mapped[str] = mapped_column(String(16), default="free", nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    two_factor = relationship(
        "TwoFactorEnrollment",
        back_populates="user",
        uselist=False,
        cascade="all,delete-orphan",
    )
