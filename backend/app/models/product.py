"""
Modello SQLAlchemy per i prodotti
Progetto: Gestionale Ristorante

Il catalogo è gestito altrove: qui serve solo come riferimento
delle righe ordinazione.
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base
from app.models.mixins import TimestampMixin, UUIDMixin


class Product(Base, UUIDMixin, TimestampMixin):
    """Prodotto del menu."""

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
        doc="Nome del prodotto",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        doc="Prezzo di listino corrente",
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Product(name={self.name}, price={self.price})>"
