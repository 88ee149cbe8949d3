"""
Router FastAPI per l'incasso delle ordinazioni
Progetto: Gestionale Ristorante

Definisce gli endpoint di cassa: incasso a importo, incasso per righe,
ordinazioni da incassare, dettaglio pagamenti e richiesta del conto.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import CurrentOperator, StaffOperator
from app.schemas.order import OrdersToPayList
from app.schemas.payment import (
    AllocationResult,
    LinesPaymentResult,
    OrderPaymentDetails,
    PayByAmountRequest,
    PayByLinesRequest,
    PaymentRequestResult,
)
from app.services.order_payment_query_service import OrderPaymentQueryService
from app.services.payment_allocator import PaymentAllocator

# Logger per questo modulo
logger = logging.getLogger(__name__)

# Istanze dei service
payment_allocator = PaymentAllocator()
order_payment_query_service = OrderPaymentQueryService()


def get_payment_allocator() -> PaymentAllocator:
    """Dependency per il gestore pagamenti (sovrascrivibile nei test)."""
    return payment_allocator


def get_query_service() -> OrderPaymentQueryService:
    """Dependency per il service di consultazione."""
    return order_payment_query_service


# Router con tag
router = APIRouter(
    tags=["Pagamenti"],
)


# -------------------------------------------------------------------
# Endpoints di incasso
# -------------------------------------------------------------------

@router.post(
    "/orders/{order_id}/payments",
    name="ordinazione_incassa_importo",
    summary="Incassa un importo",
    description=(
        "Registra un pagamento su un'ordinazione. L'importo salda per intero "
        "le righe non pagate dalla più vecchia; l'eventuale eccedenza resta "
        "registrata come mancia."
    ),
    response_model=AllocationResult,
    status_code=status.HTTP_201_CREATED,
)
async def pay_order_by_amount(
    payment_data: PayByAmountRequest,
    operator: CurrentOperator,
    order_id: uuid.UUID = Path(..., description="UUID dell'ordinazione"),
    allocator: PaymentAllocator = Depends(get_payment_allocator),
) -> AllocationResult:
    """
    Incassa un importo su un'ordinazione.

    Errori:
    - 403 PERMISSION_DENIED: ruolo non autorizzato
    - 404 RESOURCE_NOT_FOUND: ordinazione inesistente
    - 409 ALREADY_PAID / BUSY: già pagata o in elaborazione
    - 422 INVALID_AMOUNT / AMOUNT_TOO_HIGH: importo non valido o eccessivo
    """
    return await allocator.pay_by_amount(
        order_id=order_id,
        amount=payment_data.amount,
        method=payment_data.method,
        operator=operator,
        payer_name=payment_data.payer_name,
    )


@router.post(
    "/payments/lines",
    name="righe_incassa",
    summary="Incassa righe specifiche",
    description=(
        "Paga le righe indicate, anche di ordinazioni diverse. Ogni "
        "ordinazione è confermata separatamente: la risposta riporta "
        "l'esito per ciascuna."
    ),
    response_model=LinesPaymentResult,
    status_code=status.HTTP_201_CREATED,
)
async def pay_lines(
    payment_data: PayByLinesRequest,
    operator: CurrentOperator,
    allocator: PaymentAllocator = Depends(get_payment_allocator),
) -> LinesPaymentResult:
    """Incassa un elenco di righe."""
    result = await allocator.pay_by_lines(
        line_ids=payment_data.line_ids,
        method=payment_data.method,
        operator=operator,
        payer_name=payment_data.payer_name,
    )
    if result.is_partial:
        logger.warning(
            "Pagamento righe parziale: %d ordinazioni confermate, %d fallite",
            len(result.succeeded),
            len(result.failed),
        )
    return result


# -------------------------------------------------------------------
# Endpoints di consultazione
# -------------------------------------------------------------------

@router.get(
    "/orders/to-pay",
    name="ordinazioni_da_incassare",
    summary="Ordinazioni da incassare",
    description="Ordinazioni aperte con righe ancora da pagare, dalla più vecchia.",
    response_model=OrdersToPayList,
    status_code=status.HTTP_200_OK,
)
async def get_orders_to_pay(
    operator: StaffOperator,
    db: AsyncSession = Depends(get_db),
    service: OrderPaymentQueryService = Depends(get_query_service),
) -> OrdersToPayList:
    return await service.list_orders_to_pay(db)


@router.get(
    "/orders/{order_id}/payments",
    name="ordinazione_dettaglio_pagamenti",
    summary="Dettaglio pagamenti",
    description="Pagamenti dell'ordinazione raggruppati per pagatore e righe ancora da pagare.",
    response_model=OrderPaymentDetails,
    status_code=status.HTTP_200_OK,
)
async def get_order_payments(
    operator: StaffOperator,
    order_id: uuid.UUID = Path(..., description="UUID dell'ordinazione"),
    db: AsyncSession = Depends(get_db),
    service: OrderPaymentQueryService = Depends(get_query_service),
) -> OrderPaymentDetails:
    return await service.get_payment_details(db, order_id)


@router.post(
    "/orders/{order_id}/payment-request",
    name="ordinazione_richiedi_conto",
    summary="Richiedi il conto",
    description="Segnala alla cassa che l'ordinazione è pronta per l'incasso.",
    response_model=PaymentRequestResult,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_order_payment(
    operator: CurrentOperator,
    order_id: uuid.UUID = Path(..., description="UUID dell'ordinazione"),
    db: AsyncSession = Depends(get_db),
    service: OrderPaymentQueryService = Depends(get_query_service),
) -> PaymentRequestResult:
    return await service.request_payment(db, order_id, operator)
