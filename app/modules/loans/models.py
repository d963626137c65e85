from sqlalchemy import (
    Column, Integer, String, Numeric, Date, DateTime, Text, ForeignKey,
    CheckConstraint, Enum as SQLEnum
)
from sqlalchemy.sql import func
from app.core.database import Base
import enum


class LoanStatus(str, enum.Enum):
    """Loan lifecycle status"""
    PENDING = "pending"        # Offer sent, awaiting borrower decision
    ACTIVE = "active"          # Signed by both parties
    DECLINED = "declined"      # Borrower refused the offer
    CANCELLED = "cancelled"    # Lender cancelled an active loan
    COMPLETED = "completed"    # Balance closed by a confirmed payment

    def can_transition_to(self, target: "LoanStatus") -> bool:
        return target in LOAN_TRANSITIONS.get(self, frozenset())


LOAN_TRANSITIONS = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE, LoanStatus.DECLINED, LoanStatus.CANCELLED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.CANCELLED, LoanStatus.COMPLETED}),
}


class PaymentFrequency(str, enum.Enum):
    """Repayment cadence"""
    NONE = "none"  # Full amount due at due date
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class RepaymentUnit(str, enum.Enum):
    """Unit of the repayment period"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    CUSTOM = "custom"  # Explicit due date


class Loan(Base):
    """
    Bilateral lending relationship between a lender and a borrower.

    Status only changes through LoanAgreementService and PaymentService, and
    every write bumps ``version`` so that concurrent writers are detected.
    """
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("lender_id <> borrower_id", name="ck_loans_distinct_parties"),
        CheckConstraint("amount_paid >= 0", name="ck_loans_amount_paid_non_negative"),
        CheckConstraint("amount_paid <= total_amount", name="ck_loans_amount_paid_within_total"),
    )

    id = Column(Integer, primary_key=True, index=True)
    lender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    borrower_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Terms
    amount = Column(Numeric(12, 2), nullable=False)  # Principal
    interest_rate = Column(Numeric(5, 2), nullable=False, default=0)  # Annual %, simple interest
    repayment_period = Column(Integer, nullable=True)  # NULL for custom due dates
    repayment_unit = Column(SQLEnum(RepaymentUnit), nullable=False, default=RepaymentUnit.MONTHS)
    payment_frequency = Column(SQLEnum(PaymentFrequency), nullable=False, default=PaymentFrequency.MONTHLY)
    purpose = Column(Text, nullable=True)

    # Computed at offer time
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_amount = Column(Numeric(12, 2), nullable=False, default=0)  # Installment
    due_date = Column(Date, nullable=False)

    # Balance
    status = Column(SQLEnum(LoanStatus), nullable=False, default=LoanStatus.PENDING, index=True)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    next_payment_date = Column(Date, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def remaining_balance(self):
        return max(self.total_amount - self.amount_paid, 0)

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.lender_id, self.borrower_id)

    def counterparty_of(self, user_id: int) -> int:
        return self.borrower_id if user_id == self.lender_id else self.lender_id

    def __repr__(self):
        return f"<Loan(id={self.id}, status={self.status}, paid={self.amount_paid}/{self.total_amount})>"


class LoanAgreement(Base):
    """
    Signature record paired 1:1 with a loan.

    Loan terms are copied at offer time and never change afterwards; the
    signature and cancellation fields are write-once.
    """
    __tablename__ = "loan_agreements"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id", ondelete="CASCADE"), unique=True, nullable=False)
    lender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    borrower_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Frozen terms
    amount = Column(Numeric(12, 2), nullable=False)
    interest_rate = Column(Numeric(5, 2), nullable=False)
    repayment_period = Column(Integer, nullable=True)
    repayment_unit = Column(SQLEnum(RepaymentUnit), nullable=False)
    payment_frequency = Column(SQLEnum(PaymentFrequency), nullable=False)
    purpose = Column(Text, nullable=True)
    due_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_amount = Column(Numeric(12, 2), nullable=False)

    # Signatures
    lender_name = Column(String(200), nullable=False)
    lender_signed_at = Column(DateTime(timezone=True), nullable=False)
    borrower_name = Column(String(200), nullable=True)
    borrower_signed_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation
    cancelled_by = Column(String(200), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_fully_signed(self) -> bool:
        return self.lender_signed_at is not None and self.borrower_signed_at is not None

    def __repr__(self):
        return f"<LoanAgreement(loan_id={self.loan_id}, fully_signed={self.is_fully_signed})>"
