"""
Service Layer per la coda scontrini
Progetto: Gestionale Ristorante

Accoda su una lista Redis i job di stampa letti dal servizio di stampa:
uno scontrino non fiscale con il dettaglio delle righe e uno fiscale
con una sola riga di riepilogo.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis

from app.core.config import settings
from app.core.redis_client import get_redis
from app.schemas.payment import AllocationResult

# Logger per questo modulo
logger = logging.getLogger(__name__)


class ReceiptType(str, Enum):
    """Tipi di scontrino."""
    NON_FISCAL = "non_fiscal"
    FISCAL = "fiscal"


class ReceiptPriority(str, Enum):
    """Priorità di stampa."""
    NORMAL = "normal"
    HIGH = "high"


def summary_description(order_type: str, table_number: Optional[str], customer_name: Optional[str]) -> str:
    """Descrizione della riga unica dello scontrino fiscale."""
    if table_number:
        return f"Tavolo {table_number}"
    label = "Asporto" if order_type == "takeaway" else "Banco"
    return f"{label} {customer_name}" if customer_name else label


class ReceiptQueueService:
    """
    Service per l'accodamento degli scontrini.

    Come per gli eventi, un errore Redis viene registrato e ignorato:
    il pagamento è già confermato quando gli scontrini vengono accodati.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        queue_key: Optional[str] = None,
    ):
        self._client = client
        self.queue_key = queue_key or settings.receipt_queue_key

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def enqueue(self, job: dict[str, Any]) -> bool:
        """
        Accoda un job di stampa.

        Returns:
            True se il job è stato accodato
        """
        try:
            await self.client.lpush(self.queue_key, json.dumps(job, default=str))
        except redis.RedisError:
            logger.exception(
                "Accodamento scontrino %s per ordinazione %s fallito",
                job.get("receipt_type"),
                job.get("order_id"),
            )
            return False
        return True

    async def enqueue_payment_receipts(
        self,
        result: AllocationResult,
        *,
        order_type: str,
        table_number: Optional[str],
        customer_name: Optional[str],
        operator_name: str,
    ) -> int:
        """
        Accoda lo scontrino non fiscale e quello fiscale di un pagamento.

        Returns:
            Numero di job accodati con successo
        """
        base = {
            "order_id": result.order_id,
            "payment_id": result.payment_id,
            "order_type": order_type,
            "table_number": table_number,
            "customer_name": customer_name,
            "payer_name": result.payer_name,
            "method": result.method.value,
            "amount": result.amount,
            "operator_name": operator_name,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        non_fiscal = {
            **base,
            "receipt_type": ReceiptType.NON_FISCAL.value,
            "priority": ReceiptPriority.NORMAL.value,
            "rows": [
                {
                    "description": line.product_name,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "total": line.total,
                }
                for line in result.settled_lines
            ],
        }

        fiscal = {
            **base,
            "receipt_type": ReceiptType.FISCAL.value,
            "priority": ReceiptPriority.HIGH.value,
            "rows": [
                {
                    "description": summary_description(order_type, table_number, customer_name),
                    "quantity": 1,
                    "unit_price": result.amount,
                    "total": result.amount,
                }
            ],
        }

        queued = 0
        for job in (non_fiscal, fiscal):
            if await self.enqueue(job):
                queued += 1
        return queued
