"""
Supplier and product models

Master data owned by the CRUD collaborators; the ledger only reads them.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean
from sqlalchemy.orm import relationship

from shipment_ledger.db.base import Base


class Supplier(Base):
    """Supplier model - matches suppliers table"""
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    # Starting point of the balance chain before the first settlement
    opening_balance = Column(Numeric(15, 2), default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    shipments = relationship("Shipment", back_populates="supplier")

    def __repr__(self):
        return f"<Supplier {self.id}: {self.name}>"


class Product(Base):
    """Product model - matches products table"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    name_en = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Product {self.sku}: {self.name}>"
