"""
Modelli SQLAlchemy per i Pagamenti
Progetto: Gestionale Ristorante

Contiene:
- Payment: Registro append-only dei pagamenti
- PaymentHistory: Audit trail delle operazioni di pagamento
"""


from __future__ import annotations
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models import Base
from app.models.mixins import CreatedAtMixin, UUIDMixin

if TYPE_CHECKING:
    from app.models.order import Order


# I metodi sono definiti in app.schemas.payment.PaymentMethod


class Payment(Base, UUIDMixin, CreatedAtMixin):
    """
    Pagamento registrato su un'ordinazione.

    I record non vengono mai modificati né cancellati: l'importo è quello
    effettivamente incassato, anche quando supera il costo delle righe saldate.

    Attributes:
        id: UUID primary key
        order_id: Ordinazione pagata
        amount: Importo incassato (> 0)
        method: card, cash, mixed
        payer_name: Nome di chi ha pagato
        operator_id: Operatore che ha registrato il pagamento
        line_ids: Righe saldate da questo pagamento (lista di UUID)
        created_at: Data/ora registrazione
    """

    __tablename__ = "payments"

    # ------------------------------------------------------------
    # Colonne Relazione
    # ------------------------------------------------------------
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        doc="UUID dell'ordinazione pagata",
    )

    # ------------------------------------------------------------
    # Colonne Dati
    # ------------------------------------------------------------
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        doc="Importo incassato",
    )

    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Metodo di pagamento",
    )

    payer_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Nome di chi ha pagato",
    )

    operator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        doc="UUID dell'operatore che ha registrato il pagamento",
    )

    line_ids: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="UUID delle righe saldate da questo pagamento",
    )

    # ------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------
    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="payments",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_payments_order_created", "order_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "method IN ('card', 'cash', 'mixed')",
            name="ck_payments_method",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, method={self.method})>"
        )


class PaymentHistory(Base, UUIDMixin, CreatedAtMixin):
    """
    Voce di audit di un'operazione di pagamento.

    Conserva lo stato dell'ordinazione prima e dopo l'operazione, insieme
    all'identità dell'operatore. La scrittura è best-effort: un errore qui
    non annulla il pagamento.
    """

    __tablename__ = "payment_history"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=False,
        doc="UUID del pagamento",
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        doc="UUID dell'ordinazione",
    )

    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="create",
        doc="Operazione (create, void)",
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        doc="Importo del pagamento",
    )

    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Metodo di pagamento",
    )

    operator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        doc="UUID dell'operatore",
    )

    operator_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Nome dell'operatore",
    )

    previous_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Stato dell'ordinazione prima del pagamento",
    )

    new_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Stato dell'ordinazione dopo il pagamento",
    )

    # "metadata" è riservato da DeclarativeBase
    extra_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        doc="Dati aggiuntivi (pagatore, righe saldate, importo non allocato)",
    )

    __table_args__ = (
        Index("ix_payment_history_order", "order_id"),
        CheckConstraint(
            "action IN ('create', 'void')",
            name="ck_payment_history_action",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentHistory(payment_id={self.payment_id}, action={self.action}, "
            f"operator={self.operator_name})>"
        )
