# Loans module
from app.modules.loans.models import (
    Loan, LoanAgreement, LoanStatus, PaymentFrequency, RepaymentUnit
)
from app.modules.loans.services import LoanAgreementService
from app.modules.loans.router import router

__all__ = [
    "Loan", "LoanAgreement", "LoanStatus", "PaymentFrequency", "RepaymentUnit",
    "LoanAgreementService", "router"
]
