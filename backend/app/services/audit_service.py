"""
Service Layer per lo storico dei pagamenti
Progetto: Gestionale Ristorante

Scrive le voci di audit (PaymentHistory) nella stessa sessione del
pagamento, dentro un SAVEPOINT: un errore di scrittura dell'audit viene
registrato senza annullare il pagamento.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Payment, PaymentHistory
from app.schemas.operator import Operator
from app.schemas.payment import PaymentHistoryAction

# Logger per questo modulo
logger = logging.getLogger(__name__)


class AuditService:
    """Service per la scrittura dello storico pagamenti."""

    async def record_payment(
        self,
        db: AsyncSession,
        payment: Payment,
        operator: Operator,
        *,
        previous_state: dict[str, Any],
        new_state: dict[str, Any],
        unallocated_amount: Decimal = Decimal("0.00"),
        action: PaymentHistoryAction = PaymentHistoryAction.CREATE,
    ) -> Optional[PaymentHistory]:
        """
        Registra una voce di storico per un pagamento.

        Deve essere chiamato dentro la transazione del pagamento.

        Returns:
            La voce creata, oppure None se la scrittura è fallita
        """
        entry = PaymentHistory(
            payment_id=payment.id,
            order_id=payment.order_id,
            action=action.value,
            amount=payment.amount,
            method=payment.method,
            operator_id=operator.id,
            operator_name=operator.name,
            previous_state=previous_state,
            new_state=new_state,
            extra_data={
                "payer_name": payment.payer_name,
                "line_ids": list(payment.line_ids),
                "unallocated_amount": str(unallocated_amount),
                "operator_role": operator.role.value,
            },
        )

        try:
            async with db.begin_nested():
                db.add(entry)
        except SQLAlchemyError:
            logger.exception(
                "Scrittura storico fallita per pagamento %s (ordinazione %s)",
                payment.id,
                payment.order_id,
            )
            return None

        return entry
