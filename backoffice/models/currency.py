"""
Currency Models
"""
from sqlalchemy import Column, String, Integer, Boolean, Numeric, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin


class Currency(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "currency"

    code = Column(String(3), unique=True, nullable=False)
    name = Column(String(100))
    symbol = Column(String(10))
    decimal_places = Column(Integer, default=2, nullable=False)
    is_default = Column(Boolean, default=False)

    def __repr__(self):
        return f"<Currency {self.code}>"


class ExchangeRate(Base, UUIDMixin, TimestampMixin):
    """Rate converting one unit of from_currency into to_currency"""
    __tablename__ = "exchange_rate"

    from_currency_id = Column(Uuid(as_uuid=True), ForeignKey("currency.id"), nullable=False)
    to_currency_id = Column(Uuid(as_uuid=True), ForeignKey("currency.id"), nullable=False)
    rate = Column(Numeric(18, 8), nullable=False)
    effective_date = Column(DateTime, nullable=False, index=True)

    from_currency = relationship("Currency", foreign_keys=[from_currency_id])
    to_currency = relationship("Currency", foreign_keys=[to_currency_id])
