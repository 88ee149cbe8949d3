"""
Modello SQLAlchemy per i tavoli
Progetto: Gestionale Ristorante
"""

from __future__ import annotations
from typing import TYPE_CHECKING, List

from sqlalchemy import CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base
from app.models.mixins import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from app.models.order import Order


# Gli stati sono definiti in app.schemas.order.TableStatus


class Table(Base, UUIDMixin, TimestampMixin):
    """
    Tavolo della sala.

    Il gestore pagamenti lo porta da "occupied" a "free" solo quando
    l'ultima ordinazione attiva del tavolo risulta pagata.

    Attributes:
        id: UUID primary key
        number: Numero/etichetta del tavolo (es. "12", "T3")
        status: Stato (free, occupied, reserved, cleaning)
    """

    __tablename__ = "restaurant_tables"

    number: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        doc="Numero del tavolo",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="free",
        doc="Stato corrente del tavolo",
    )

    orders: Mapped[List["Order"]] = relationship(
        "Order",
        back_populates="table",
        lazy="raise",
        doc="Ordinazioni associate al tavolo",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('free', 'occupied', 'reserved', 'cleaning')",
            name="ck_restaurant_tables_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Table(number={self.number}, status={self.status})>"
