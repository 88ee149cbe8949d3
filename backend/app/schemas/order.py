"""
Schemas Pydantic per Ordinazioni e Tavoli
Progetto: Gestionale Ristorante

Contiene:
- Enums: OrderStatus, PaymentStatus, OrderType, TableStatus
- Schemas di lettura per righe e ordinazioni da pagare
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# -------------------------------------------------------------------
# Enum
# -------------------------------------------------------------------

class OrderStatus(str, Enum):
    """Stato generale dell'ordinazione."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    DELIVERED = "delivered"
    PAID = "paid"
    CANCELLED = "cancelled"


# Stati che non contano come "ordinazione attiva" sul tavolo
INACTIVE_ORDER_STATUSES = (OrderStatus.PAID.value, OrderStatus.CANCELLED.value)


class PaymentStatus(str, Enum):
    """Stato del pagamento dell'ordinazione (monotono)."""
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"


class OrderType(str, Enum):
    """Tipo di ordinazione."""
    TABLE = "table"
    TAKEAWAY = "takeaway"
    COUNTER = "counter"


class TableStatus(str, Enum):
    """Stato del tavolo."""
    FREE = "free"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    CLEANING = "cleaning"


# -------------------------------------------------------------------
# Schemas per OrderLine
# -------------------------------------------------------------------

class OrderLineRead(BaseModel):
    """Riga ordinazione in lettura."""

    id: uuid.UUID
    order_id: uuid.UUID
    product_name: str
    line_number: int
    quantity: int = Field(..., ge=1)
    unit_price: Decimal
    is_paid: bool
    paid_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    @computed_field
    @property
    def total(self) -> Decimal:
        """Totale riga (quantity * unit_price)."""
        return self.unit_price * self.quantity

    model_config = ConfigDict(from_attributes=True)


# -------------------------------------------------------------------
# Schemas per ordinazioni da pagare
# -------------------------------------------------------------------

class OrderToPay(BaseModel):
    """
    Riepilogo di un'ordinazione con righe ancora da pagare.

    Usato dalla cassa per la lista "da incassare".
    """

    id: uuid.UUID
    order_type: OrderType
    status: OrderStatus
    payment_status: PaymentStatus
    table_id: Optional[uuid.UUID] = None
    table_number: Optional[str] = None
    customer_name: Optional[str] = None
    opened_at: datetime
    nominal_total: Decimal = Field(..., description="Somma prezzo × quantità su tutte le righe")
    paid_total: Decimal = Field(..., description="Somma degli importi incassati")
    remaining_amount: Decimal = Field(..., description="Costo delle righe ancora da pagare")
    paid_lines: int
    unpaid_lines: int

    @computed_field
    @property
    def has_partial_payment(self) -> bool:
        """True se almeno una riga è già stata pagata."""
        return self.paid_lines > 0

    model_config = ConfigDict(from_attributes=True)


class OrdersToPayList(BaseModel):
    """Lista delle ordinazioni da incassare."""

    items: List[OrderToPay]
    total: int
