"""
Service Layer per la consultazione dei pagamenti
Progetto: Gestionale Ristorante

Query di sola lettura per la cassa (ordinazioni da incassare, dettaglio
pagamenti per pagatore) e richiesta del conto da parte della sala.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.exceptions import AlreadyPaidError, ConflictError, NotFoundError
from app.models import Order
from app.schemas.operator import Operator
from app.schemas.order import (
    INACTIVE_ORDER_STATUSES,
    OrderLineRead,
    OrderStatus,
    OrdersToPayList,
    OrderToPay,
    PaymentStatus,
)
from app.schemas.payment import (
    ANONYMOUS_PAYER,
    OrderPaymentDetails,
    PayerSummary,
    PaymentMethod,
    PaymentRead,
    PaymentRequestResult,
)
from app.services.allocation import to_money
from app.services.notification_service import NotificationService
from app.services.payment_allocator import check_role

# Logger per questo modulo
logger = logging.getLogger(__name__)


class OrderPaymentQueryService:
    """
    Service per le viste di cassa sulle ordinazioni.

    Le query non prendono lock: i totali sono una fotografia e
    il gestore pagamenti ricontrolla tutto sotto lock.
    """

    def __init__(self, notifier: Optional[NotificationService] = None):
        self.notifier = notifier or NotificationService()

    async def _get_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.lines),
                selectinload(Order.payments),
                selectinload(Order.table),
            )
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError(f"Ordinazione {order_id} non trovata")
        return order

    async def list_orders_to_pay(self, db: AsyncSession) -> OrdersToPayList:
        """
        Ordinazioni aperte con righe ancora da pagare, dalla più vecchia.

        Returns:
            OrdersToPayList con totali e conteggi per ordinazione
        """
        result = await db.execute(
            select(Order)
            .where(Order.status.notin_(INACTIVE_ORDER_STATUSES))
            .options(
                selectinload(Order.lines),
                selectinload(Order.payments),
                selectinload(Order.table),
            )
            .order_by(Order.opened_at, Order.created_at)
        )
        orders = result.scalars().all()

        items = []
        for order in orders:
            remaining = to_money(order.unpaid_total)
            if remaining <= 0:
                continue
            paid_lines = sum(1 for line in order.lines if line.is_paid)
            items.append(
                OrderToPay(
                    id=order.id,
                    order_type=order.order_type,
                    status=order.status,
                    payment_status=order.payment_status,
                    table_id=order.table_id,
                    table_number=order.table.number if order.table else None,
                    customer_name=order.customer_name,
                    opened_at=order.opened_at,
                    nominal_total=to_money(order.nominal_total),
                    paid_total=to_money(order.paid_total),
                    remaining_amount=remaining,
                    paid_lines=paid_lines,
                    unpaid_lines=len(order.lines) - paid_lines,
                )
            )

        return OrdersToPayList(items=items, total=len(items))

    async def get_payment_details(
        self, db: AsyncSession, order_id: uuid.UUID
    ) -> OrderPaymentDetails:
        """
        Pagamenti di un'ordinazione raggruppati per pagatore.

        I pagamenti senza nome confluiscono in "Cliente Anonimo".

        Raises:
            NotFoundError: Ordinazione inesistente
        """
        order = await self._get_order(db, order_id)
        lines_by_id = {str(line.id): line for line in order.lines}

        payers: dict[str, PayerSummary] = {}
        for payment in order.payments:
            name = payment.payer_name or ANONYMOUS_PAYER
            summary = payers.get(name)
            if summary is None:
                summary = PayerSummary(
                    payer_name=name,
                    total_paid=Decimal("0.00"),
                    methods=[],
                    payments=[],
                    lines=[],
                )
                payers[name] = summary

            summary.total_paid = to_money(summary.total_paid + payment.amount)
            method = PaymentMethod(payment.method)
            if method not in summary.methods:
                summary.methods.append(method)
            summary.payments.append(PaymentRead.model_validate(payment))
            summary.lines.extend(
                OrderLineRead.model_validate(lines_by_id[line_id])
                for line_id in payment.line_ids
                if line_id in lines_by_id
            )

        return OrderPaymentDetails(
            order_id=order.id,
            payment_status=order.payment_status,
            nominal_total=to_money(order.nominal_total),
            paid_total=to_money(order.paid_total),
            remaining_amount=to_money(order.unpaid_total),
            payers=list(payers.values()),
            unpaid_lines=[
                OrderLineRead.model_validate(line) for line in order.lines if not line.is_paid
            ],
        )

    async def request_payment(
        self, db: AsyncSession, order_id: uuid.UUID, operator: Operator
    ) -> PaymentRequestResult:
        """
        Richiesta del conto alla cassa da parte della sala.

        Raises:
            PermissionDeniedError: Ruolo non autorizzato
            NotFoundError: Ordinazione inesistente
            AlreadyPaidError: Nulla da pagare
            ConflictError: Ordinazione annullata
        """
        check_role(operator, settings.payment_request_roles, "richiedere il conto")

        order = await self._get_order(db, order_id)
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(
                f"Ordinazione {order_id} annullata",
                error_code="ORDER_CANCELLED",
            )

        remaining = to_money(order.unpaid_total)
        if order.payment_status == PaymentStatus.FULLY_PAID.value or remaining <= 0:
            raise AlreadyPaidError(f"Ordinazione {order_id} già pagata")

        table_number = order.table.number if order.table else None
        await self.notifier.payment_requested(
            order_id=order.id,
            table_number=table_number,
            remaining_amount=remaining,
            requested_by=operator.name,
        )
        logger.info(
            "Conto richiesto per ordinazione %s da %s (residuo %s)",
            order.id,
            operator.name,
            remaining,
        )

        return PaymentRequestResult(
            order_id=order.id,
            remaining_amount=remaining,
            requested_by=operator.name,
            requested_at=datetime.now(timezone.utc),
        )
