# Ledger module
from app.modules.ledger.services import LedgerService
from app.modules.ledger.router import router

__all__ = ["LedgerService", "router"]
