"""
Modelli SQLAlchemy per le Ordinazioni
Progetto: Gestionale Ristorante

Contiene:
- Order: Ordinazione (tavolo, asporto o banco)
- OrderLine: Riga dell'ordinazione (prodotto × quantità)
"""


from __future__ import annotations
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from sqlalchemy.sql import func

from app.models import Base
from app.models.mixins import TimestampMixin, UUIDMixin

# Import per type hinting relazioni (evita circular import)
if TYPE_CHECKING:
    from app.models.table import Table
    from app.models.product import Product
    from app.models.payment import Payment


# Gli stati sono definiti in app.schemas.order (OrderStatus, PaymentStatus, OrderType)


class Order(Base, UUIDMixin, TimestampMixin):
    """
    Modello per le ordinazioni.

    Lo stato generale segue il ciclo di vita di sala/cucina; lo stato di
    pagamento è gestito esclusivamente dal gestore pagamenti ed è sempre
    allineato allo stato generale (fully_paid ⇔ paid).

    Attributes:
        id: UUID primary key
        table_id: Tavolo (NULL per asporto/banco)
        order_type: table, takeaway, counter
        status: open, in_progress, ready, delivered, paid, cancelled
        payment_status: unpaid, partially_paid, fully_paid
        customer_name: Nome cliente (asporto)
        opened_at: Data/ora apertura
        closed_at: Data/ora chiusura (valorizzata al pagamento completo)

    States (pagamento):
        unpaid → partially_paid → fully_paid
    """

    __tablename__ = "orders"

    # ------------------------------------------------------------
    # Colonne Relazioni
    # ------------------------------------------------------------
    table_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("restaurant_tables.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        doc="UUID del tavolo (NULL per asporto/banco)",
    )

    # ------------------------------------------------------------
    # Colonne Stato e Dati
    # ------------------------------------------------------------
    order_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="table",
        doc="Tipo di ordinazione",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        doc="Stato corrente dell'ordinazione",
    )

    payment_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unpaid",
        doc="Stato del pagamento",
    )

    customer_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Nome del cliente (asporto/banco)",
    )

    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        doc="Data/ora apertura ordinazione",
    )

    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Data/ora chiusura (pagamento completo)",
    )

    # ------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------
    table: Mapped[Optional["Table"]] = relationship(
        "Table",
        back_populates="orders",
        lazy="raise",
        doc="Tavolo dell'ordinazione",
    )

    lines: Mapped[List["OrderLine"]] = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by=lambda: (OrderLine.created_at, OrderLine.line_number),
        lazy="raise",
        doc="Righe dell'ordinazione",
    )

    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at",
        lazy="raise",
        doc="Pagamenti registrati",
    )

    # ------------------------------------------------------------
    # Properties Calcolate
    # ------------------------------------------------------------
    @property
    def nominal_total(self) -> Decimal:
        """Somma di prezzo × quantità su tutte le righe caricate."""
        return sum((line.line_total for line in self.lines), Decimal("0.00"))

    @property
    def paid_total(self) -> Decimal:
        """Somma degli importi dei pagamenti caricati."""
        return sum((p.amount for p in self.payments), Decimal("0.00"))

    @property
    def unpaid_total(self) -> Decimal:
        """Costo delle righe ancora da pagare."""
        return sum(
            (line.line_total for line in self.lines if not line.is_paid),
            Decimal("0.00"),
        )

    # ------------------------------------------------------------
    # Indici e Vincoli
    # ------------------------------------------------------------
    __table_args__ = (
        Index("ix_orders_status", "status"),
        Index("ix_orders_table_status", "table_id", "status"),
        CheckConstraint(
            "order_type IN ('table', 'takeaway', 'counter')",
            name="ck_orders_order_type",
        ),
        CheckConstraint(
            "status IN ('open', 'in_progress', 'ready', 'delivered', 'paid', 'cancelled')",
            name="ck_orders_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'partially_paid', 'fully_paid')",
            name="ck_orders_payment_status",
        ),
        # fully_paid ⇔ paid
        CheckConstraint(
            "(payment_status = 'fully_paid') = (status = 'paid')",
            name="ck_orders_paid_in_sync",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status}, "
            f"payment_status={self.payment_status})>"
        )


class OrderLine(Base, UUIDMixin, TimestampMixin):
    """
    Riga di un'ordinazione.

    Una riga si paga sempre per intero: il flag is_paid passa da False a True
    una sola volta e non torna mai indietro.

    Attributes:
        order_id: Ordinazione di appartenenza
        product_id: Prodotto (opzionale, il nome è denormalizzato)
        product_name: Nome del prodotto al momento dell'ordine
        line_number: Progressivo della riga nell'ordinazione
        quantity: Quantità (>= 1)
        unit_price: Prezzo unitario applicato
        is_paid: Riga pagata
        paid_by: Nome di chi ha pagato la riga
        paid_at: Data/ora del pagamento
    """

    __tablename__ = "order_lines"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        doc="UUID dell'ordinazione",
    )

    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
        doc="UUID del prodotto",
    )

    product_name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
        doc="Nome del prodotto al momento dell'ordine",
    )

    line_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Progressivo della riga nell'ordinazione",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Quantità",
    )

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        doc="Prezzo unitario",
    )

    is_paid: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Riga pagata",
    )

    paid_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Nome di chi ha pagato la riga",
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Data/ora del pagamento della riga",
    )

    # ------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------
    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="lines",
        lazy="raise",
    )

    product: Mapped[Optional["Product"]] = relationship(
        "Product",
        lazy="raise",
    )

    # ------------------------------------------------------------
    # Properties Calcolate
    # ------------------------------------------------------------
    @property
    def line_total(self) -> Decimal:
        """Totale della riga (quantity * unit_price)."""
        return self.unit_price * self.quantity

    @validates("is_paid")
    def validate_is_paid(self, key: str, value: bool) -> bool:
        """Impedisce di riportare a non pagata una riga già pagata."""
        if self.is_paid and not value:
            raise ValueError(f"La riga {self.id} è già pagata e non può essere riaperta")
        return value

    __table_args__ = (
        Index("ix_order_lines_order_paid", "order_id", "is_paid"),
        CheckConstraint("quantity >= 1", name="ck_order_lines_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_lines_unit_price_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderLine(id={self.id}, product={self.product_name}, "
            f"qty={self.quantity}, paid={self.is_paid})>"
        )
