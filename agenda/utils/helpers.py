import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from zoneinfo import ZoneInfo
from agenda.config import settings


def format_phone_number(phone: str) -> str:
    """
    Format phone number to digits only
    Removes +, -, spaces, parentheses
    """
    return re.sub(r"[^\d]", "", phone)


def is_valid_phone_number(phone: str) -> bool:
    """Validate phone number (10-15 digits)"""
    formatted = format_phone_number(phone)
    return 10 <= len(formatted) <= 15


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the database as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_display_date(value: Optional[datetime], tz_name: Optional[str] = None) -> Optional[str]:
    """Render an instant as DD/MM/YYYY in the display timezone"""
    if value is None:
        return None
    local = as_utc(value).astimezone(ZoneInfo(tz_name or settings.DISPLAY_TIMEZONE))
    return local.strftime("%d/%m/%Y")


def round_money(amount: Union[Decimal, float, int, None]) -> Optional[Decimal]:
    if amount is None:
        return None
    return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_currency(amount: Union[Decimal, float, int, None]) -> Optional[str]:
    """Format amount as currency, e.g. R$ 1.234,56"""
    rounded = round_money(amount)
    if rounded is None:
        return None
    text = f"{rounded:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{settings.CURRENCY_SYMBOL} {text}"
