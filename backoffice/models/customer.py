"""
Customer Model
"""
from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship
from backoffice.core.database import Base
from .base import UUIDMixin, TimestampMixin


class Customer(Base, UUIDMixin, TimestampMixin):
    """Canonical person; may start life as a masked-data placeholder"""
    __tablename__ = "customer"

    first_name = Column(String(100))
    last_name = Column(String(100))
    email = Column(String(200), index=True)
    phone = Column(String(50))
    channel = Column(String(30))  # channel of origin
    notes = Column(Text)

    orders = relationship("Order", back_populates="customer")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self):
        return f"<Customer {self.full_name} {self.email}>"
