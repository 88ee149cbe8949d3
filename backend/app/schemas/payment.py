"""
Schemas Pydantic per i Pagamenti delle ordinazioni
Progetto: Gestionale Ristorante

Contiene:
- Enums: PaymentMethod, PaymentHistoryAction
- Schemas di richiesta (pagamento a importo, pagamento per righe)
- Schemas di risultato dell'allocazione
- Schemas per il dettaglio pagamenti per pagatore
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.order import OrderLineRead, OrderStatus, PaymentStatus


# Importo massimo accettato per singolo pagamento
MAX_PAYMENT_AMOUNT = Decimal("99999.99")

# Nome usato quando il pagatore non è indicato
ANONYMOUS_PAYER = "Cliente Anonimo"


# -------------------------------------------------------------------
# Enum
# -------------------------------------------------------------------

class PaymentMethod(str, Enum):
    """Metodi di pagamento accettati in cassa."""
    CARD = "card"
    CASH = "cash"
    MIXED = "mixed"


class PaymentHistoryAction(str, Enum):
    """Operazioni registrate nello storico pagamenti."""
    CREATE = "create"
    VOID = "void"


# -------------------------------------------------------------------
# Schemas di richiesta
# -------------------------------------------------------------------

class PaymentRequestBase(BaseModel):
    """Campi comuni alle richieste di pagamento."""

    method: PaymentMethod = Field(..., description="Metodo di pagamento")
    payer_name: Optional[str] = Field(
        None,
        min_length=2,
        max_length=100,
        description="Nome di chi paga (opzionale)",
    )

    @field_validator("payer_name", mode="before")
    @classmethod
    def strip_payer_name(cls, v):
        """Rimuove gli spazi; una stringa vuota equivale a pagatore anonimo."""
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class PayByAmountRequest(PaymentRequestBase):
    """Pagamento di un importo su un'ordinazione (allocazione FIFO)."""

    amount: Decimal = Field(
        ...,
        gt=0,
        le=MAX_PAYMENT_AMOUNT,
        decimal_places=2,
        description="Importo incassato",
    )


class PayByLinesRequest(PaymentRequestBase):
    """Pagamento di righe specifiche, anche di ordinazioni diverse."""

    line_ids: List[uuid.UUID] = Field(
        ...,
        min_length=1,
        description="UUID delle righe da pagare",
    )

    @field_validator("line_ids")
    @classmethod
    def dedupe_line_ids(cls, v: List[uuid.UUID]) -> List[uuid.UUID]:
        """Rimuove i duplicati mantenendo l'ordine."""
        return list(dict.fromkeys(v))


# -------------------------------------------------------------------
# Schemas di risultato
# -------------------------------------------------------------------

class SettledLineRead(BaseModel):
    """Riga saldata da un pagamento."""

    id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    total: Decimal

    model_config = ConfigDict(from_attributes=True)


class AllocationResult(BaseModel):
    """
    Esito di un pagamento su una singola ordinazione.

    settled_amount è il costo delle righe saldate; unallocated_amount è la
    parte dell'importo che non copre alcuna riga (mancia/arrotondamento).
    """

    order_id: uuid.UUID
    payment_id: uuid.UUID
    amount: Decimal
    method: PaymentMethod
    payer_name: Optional[str] = None
    settled_line_ids: List[uuid.UUID]
    settled_lines: List[SettledLineRead] = Field(default_factory=list)
    settled_amount: Decimal
    unallocated_amount: Decimal
    remaining_unpaid_lines: int
    remaining_amount: Decimal
    payment_status: PaymentStatus
    order_status: OrderStatus
    table_released: bool = False


class OrderPaymentOutcome(BaseModel):
    """Esito del pagamento per righe di una singola ordinazione."""

    order_id: uuid.UUID
    success: bool
    result: Optional[AllocationResult] = None
    error_code: Optional[str] = None
    detail: Optional[str] = None


class LinesPaymentResult(BaseModel):
    """Esito complessivo di un pagamento per righe."""

    outcomes: List[OrderPaymentOutcome]

    @property
    def succeeded(self) -> List[OrderPaymentOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[OrderPaymentOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def is_partial(self) -> bool:
        """True se almeno un gruppo è fallito."""
        return bool(self.failed)


class PaymentRequestResult(BaseModel):
    """Esito della richiesta di pagamento inviata alla cassa."""

    order_id: uuid.UUID
    remaining_amount: Decimal
    requested_by: str
    requested_at: datetime


# -------------------------------------------------------------------
# Schemas per il dettaglio pagamenti
# -------------------------------------------------------------------

class PaymentRead(BaseModel):
    """Pagamento registrato."""

    id: uuid.UUID
    order_id: uuid.UUID
    amount: Decimal
    method: PaymentMethod
    payer_name: Optional[str] = None
    operator_id: uuid.UUID
    line_ids: List[uuid.UUID]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayerSummary(BaseModel):
    """Pagamenti di un'ordinazione raggruppati per pagatore."""

    payer_name: str
    total_paid: Decimal
    methods: List[PaymentMethod]
    payments: List[PaymentRead]
    lines: List[OrderLineRead]


class OrderPaymentDetails(BaseModel):
    """Dettaglio pagamenti di un'ordinazione."""

    order_id: uuid.UUID
    payment_status: PaymentStatus
    nominal_total: Decimal
    paid_total: Decimal
    remaining_amount: Decimal
    payers: List[PayerSummary]
    unpaid_lines: List[OrderLineRead]
