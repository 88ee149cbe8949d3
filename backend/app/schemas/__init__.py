"""
Schemas Pydantic per il progetto Gestionale Ristorante

Questo modulo contiene tutti gli schemi Pydantic utilizzati per la validazione
e serializzazione delle risposte API.
"""

# Import degli schemi per renderli disponibili tramite import diretto
# es: from app.schemas import Operator, PayByAmountRequest, etc.

from app.schemas.operator import Operator, OperatorRole
from app.schemas.order import (
    OrderLineRead,
    OrderStatus,
    OrdersToPayList,
    OrderToPay,
    OrderType,
    PaymentStatus,
    TableStatus,
)
from app.schemas.payment import (
    AllocationResult,
    LinesPaymentResult,
    OrderPaymentDetails,
    OrderPaymentOutcome,
    PayByAmountRequest,
    PayByLinesRequest,
    PayerSummary,
    PaymentHistoryAction,
    PaymentMethod,
    PaymentRead,
    PaymentRequestResult,
    SettledLineRead,
)

__all__ = [
    # Operator
    "Operator",
    "OperatorRole",
    # Order
    "OrderLineRead",
    "OrderStatus",
    "OrdersToPayList",
    "OrderToPay",
    "OrderType",
    "PaymentStatus",
    "TableStatus",
    # Payment
    "AllocationResult",
    "LinesPaymentResult",
    "OrderPaymentDetails",
    "OrderPaymentOutcome",
    "PayByAmountRequest",
    "PayByLinesRequest",
    "PayerSummary",
    "PaymentHistoryAction",
    "PaymentMethod",
    "PaymentRead",
    "PaymentRequestResult",
    "SettledLineRead",
]
