"""
Deep links into external payment apps.

Links are informational only: nothing calls back into the system when money
moves, so a payment still has to be recorded and confirmed by both parties.
"""
from decimal import Decimal
from typing import Optional, Union
from urllib.parse import quote, urlencode

from app.modules.payments.models import PaymentMethod

VENMO_URL = "https://venmo.com/{handle}"
CASHAPP_URL = "https://cash.app/${handle}/{amount}"
PAYPAL_URL = "https://www.paypal.com/paypalme/{handle}/{amount}"


def _format_amount(amount: Union[Decimal, float, int, str]) -> str:
    return f"{Decimal(str(amount)):.2f}"


def _clean_handle(handle: Optional[str], prefix: str = "@") -> Optional[str]:
    if not handle:
        return None
    value = handle.strip().lstrip(prefix).strip()
    return value or None


def build_payment_link(
    method: Union[PaymentMethod, str],
    handle: Optional[str],
    amount: Union[Decimal, float, int, str],
    note: Optional[str] = None,
) -> Optional[str]:
    """Payment URL for rails that support one, else None"""
    try:
        method = PaymentMethod(method)
    except ValueError:
        return None

    if method == PaymentMethod.VENMO:
        user = _clean_handle(handle)
        if user is None:
            return None
        query = urlencode(
            {"txn": "pay", "amount": _format_amount(amount), "note": note or ""},
            quote_via=quote,
        )
        return f"{VENMO_URL.format(handle=quote(user))}?{query}"

    if method == PaymentMethod.CASHAPP:
        tag = _clean_handle(handle, prefix="$")
        if tag is None:
            return None
        return CASHAPP_URL.format(handle=quote(tag), amount=_format_amount(amount))

    if method == PaymentMethod.PAYPAL:
        user = _clean_handle(handle)
        # paypal.me links need a username, not the account email
        if user is None or "@" in user:
            return None
        return PAYPAL_URL.format(handle=quote(user), amount=_format_amount(amount))

    return None


def lender_handle_for(method: Union[PaymentMethod, str], lender) -> Optional[str]:
    """Pick the lender's handle for a rail from their profile"""
    try:
        method = PaymentMethod(method)
    except ValueError:
        return None
    field = {
        PaymentMethod.VENMO: "venmo_username",
        PaymentMethod.CASHAPP: "cashapp_handle",
        PaymentMethod.PAYPAL: "paypal_email",
        PaymentMethod.ZELLE: "zelle_email",
    }.get(method)
    return getattr(lender, field, None) if field and lender is not None else None
