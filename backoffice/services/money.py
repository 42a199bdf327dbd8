"""
Money - Major/minor unit conversion and currency snapshots
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models import Currency, ExchangeRate

logger = logging.getLogger(__name__)

# ISO 4217 minor-unit exponents that differ from 2
ISO_EXPONENTS = {
    "JPY": 0, "KRW": 0, "VND": 0, "CLP": 0, "ISK": 0, "UGX": 0, "XAF": 0, "XOF": 0,
    "KWD": 3, "BHD": 3, "OMR": 3, "JOD": 3, "TND": 3, "LYD": 3, "IQD": 3,
}

ONE = Decimal("1")


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value) -> int:
    """Nearest integer, halves away from zero"""
    return int(_as_decimal(value).quantize(ONE, rounding=ROUND_HALF_UP))


def currency_exponent(currency_code: Optional[str], db: Session = None) -> int:
    code = (currency_code or settings.DEFAULT_CURRENCY).upper()
    if db is not None:
        currency = db.query(Currency).filter(Currency.code == code).first()
        if currency is not None and currency.decimal_places is not None:
            return int(currency.decimal_places)
    return ISO_EXPONENTS.get(code, 2)


def to_minor_units(amount, currency_code: Optional[str] = None, db: Session = None) -> int:
    if amount is None or amount == "":
        return 0
    exponent = currency_exponent(currency_code, db)
    return round_half_up(_as_decimal(amount).scaleb(exponent))


def to_major_units(minor: int, currency_code: Optional[str] = None, db: Session = None) -> Decimal:
    exponent = currency_exponent(currency_code, db)
    return Decimal(int(minor)).scaleb(-exponent)


def _default_currency(db: Session) -> Optional[Currency]:
    return (
        db.query(Currency).filter(Currency.is_default.is_(True)).first()
        or db.query(Currency).filter(Currency.code == settings.DEFAULT_CURRENCY).first()
    )


def resolve_currency_fields(db: Session, currency_code: Optional[str], at: datetime) -> Dict[str, Any]:
    """
    Currency id plus the rate into the accounting currency effective at `at`.
    Unknown currencies fall back to the default currency; missing rates to 1.
    """
    default = _default_currency(db)
    currency = None
    if currency_code:
        currency = db.query(Currency).filter(Currency.code == currency_code.upper()).first()
    if currency is None:
        if currency_code and default is not None and currency_code.upper() != default.code:
            logger.warning(f"Unknown currency {currency_code}, using default {default.code}")
        currency = default

    if currency is None:
        return {"currency_id": None, "exchange_rate": ONE}
    if default is None or currency.id == default.id:
        return {"currency_id": currency.id, "exchange_rate": ONE}

    direct = db.query(ExchangeRate).filter(
        ExchangeRate.from_currency_id == currency.id,
        ExchangeRate.to_currency_id == default.id,
        ExchangeRate.effective_date <= at,
    ).order_by(ExchangeRate.effective_date.desc()).first()
    if direct is not None:
        return {"currency_id": currency.id, "exchange_rate": _as_decimal(direct.rate)}

    inverse = db.query(ExchangeRate).filter(
        ExchangeRate.from_currency_id == default.id,
        ExchangeRate.to_currency_id == currency.id,
        ExchangeRate.effective_date <= at,
    ).order_by(ExchangeRate.effective_date.desc()).first()
    if inverse is not None and _as_decimal(inverse.rate) != 0:
        rate = (ONE / _as_decimal(inverse.rate)).quantize(Decimal("0.00000001"), rounding=ROUND_HALF_UP)
        return {"currency_id": currency.id, "exchange_rate": rate}

    logger.info(f"No exchange rate {currency.code}->{default.code} at {at}, using 1.0")
    return {"currency_id": currency.id, "exchange_rate": ONE}
