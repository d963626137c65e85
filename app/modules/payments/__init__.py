# Payments module
from app.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from app.modules.payments.services import PaymentService
from app.modules.payments.router import router

__all__ = ["Payment", "PaymentMethod", "PaymentStatus", "PaymentService", "router"]
