from sqlalchemy import (
    Column, Integer, Numeric, Date, DateTime, Text, ForeignKey,
    CheckConstraint, Enum as SQLEnum
)
from sqlalchemy.sql import func
from app.core.database import Base
import enum


class PaymentStatus(str, enum.Enum):
    """Payment reconciliation status"""
    PENDING_CONFIRMATION = "pending_confirmation"  # Recorded, counterparty has not acted
    COMPLETED = "completed"  # Confirmed and applied to the loan balance
    DENIED = "denied"        # Rejected by the counterparty, no balance effect

    @property
    def is_terminal(self) -> bool:
        return self != PaymentStatus.PENDING_CONFIRMATION


class PaymentMethod(str, enum.Enum):
    """External rail the money moved through"""
    VENMO = "venmo"
    ZELLE = "zelle"
    CASHAPP = "cashapp"
    PAYPAL = "paypal"
    BANK = "bank"
    CASH = "cash"
    OTHER = "other"

    @property
    def label(self) -> str:
        return PAYMENT_METHOD_LABELS[self]


PAYMENT_METHOD_LABELS = {
    PaymentMethod.VENMO: "Venmo",
    PaymentMethod.ZELLE: "Zelle",
    PaymentMethod.CASHAPP: "Cash App",
    PaymentMethod.PAYPAL: "PayPal",
    PaymentMethod.BANK: "Bank transfer",
    PaymentMethod.CASH: "Cash",
    PaymentMethod.OTHER: "Other",
}


class Payment(Base):
    """
    A repayment asserted by one party and awaiting the other's confirmation.

    Only a confirmed payment moves the loan's ``amount_paid``; the move out of
    pending_confirmation happens exactly once.
    """
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=False, default=PaymentMethod.OTHER)
    notes = Column(Text, nullable=True)

    recorded_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        SQLEnum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING_CONFIRMATION,
        index=True
    )

    # Resolution
    confirmed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    denied_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    denied_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Payment(id={self.id}, loan_id={self.loan_id}, amount={self.amount}, status={self.status})>"
