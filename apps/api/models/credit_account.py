"""CreditAccount model holding one merchant's credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Single-row balance per user. Mutated only through services.credits."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("used_credits >= 0", name="ck_credit_accounts_used_non_negative"),
        CheckConstraint("used_credits <= total_credits", name="ck_credit_accounts_used_within_total"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    total_credits = Column(Integer, nullable=False, default=0)
    used_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")

    @property
    def available_credits(self) -> int:
        return int(self.total_credits or 0) - int(self.used_credits or 0)
