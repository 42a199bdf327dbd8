"""
Shipping Models - Carriers and desi-based rate tables
"""
import enum
from typing import Optional
from sqlalchemy import Column, String, Boolean, BigInteger, Numeric, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin


class ShippingCarrier(str, enum.Enum):
    ARAS = "aras"
    DHL = "dhl"
    KOLAY_GELSIN = "kolay_gelsin"
    PTT = "ptt"
    SURAT = "surat"
    TEX = "tex"
    YURTICI = "yurtici"
    BORUSAN = "borusan"
    CEVA = "ceva"
    HOROZ = "horoz"

    @classmethod
    def from_string(cls, name: Optional[str]) -> Optional["ShippingCarrier"]:
        """Parse carrier names such as "Aras Kargo", "ARAS", "Yurtiçi Kargo" """
        if not name:
            return None
        normalized = name.strip().lower()

        for carrier in cls:
            if carrier.value == normalized:
                return carrier

        # Fuzzy matches
        aliases = [
            (("aras",), cls.ARAS),
            (("dhl",), cls.DHL),
            (("kolay",), cls.KOLAY_GELSIN),
            (("ptt",), cls.PTT),
            (("sürat", "surat"), cls.SURAT),
            (("tex",), cls.TEX),
            (("yurtiçi", "yurtici"), cls.YURTICI),
            (("borusan",), cls.BORUSAN),
            (("ceva",), cls.CEVA),
            (("horoz",), cls.HOROZ),
        ]
        for needles, carrier in aliases:
            if any(needle in normalized for needle in needles):
                return carrier
        return None


class ShippingRateTable(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "shipping_rate_table"

    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True)

    rates = relationship("ShippingRate", back_populates="rate_table", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ShippingRateTable {self.name}>"


class ShippingRate(Base, UUIDMixin, TimestampMixin):
    """Price for one carrier over a desi band; desi_to NULL means open-ended"""
    __tablename__ = "shipping_rate"

    rate_table_id = Column(Uuid(as_uuid=True), ForeignKey("shipping_rate_table.id"), nullable=False)
    carrier = Column(String(30), nullable=False, index=True)
    desi_from = Column(Numeric(8, 2), nullable=False, default=0)
    desi_to = Column(Numeric(8, 2))

    # Minor units
    price_excluding_vat = Column(BigInteger, nullable=False)
    vat_rate = Column(Numeric(5, 2), default=20)
    vat_amount = Column(BigInteger, default=0)
    total_price = Column(BigInteger, default=0)

    rate_table = relationship("ShippingRateTable", back_populates="rates")

    def __repr__(self):
        return f"<ShippingRate {self.carrier} {self.desi_from}-{self.desi_to}>"
