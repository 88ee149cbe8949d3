"""
Service Layer per gli eventi di dominio
Progetto: Gestionale Ristorante

Pubblica gli eventi (order:paid, order:partially-paid, payment:requested)
sul canale Redis letto dai client di sala e cassa.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis

from app.core.config import settings
from app.core.redis_client import get_redis

# Logger per questo modulo
logger = logging.getLogger(__name__)

EVENT_ORDER_PAID = "order:paid"
EVENT_ORDER_PARTIALLY_PAID = "order:partially-paid"
EVENT_PAYMENT_REQUESTED = "payment:requested"


class NotificationService:
    """
    Service per l'emissione degli eventi di dominio.

    La pubblicazione è best-effort: un errore Redis viene registrato
    nel log e non arriva mai al chiamante.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        channel: Optional[str] = None,
    ):
        self._client = client
        self.channel = channel or settings.events_channel

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def emit(self, event: str, payload: dict[str, Any]) -> bool:
        """
        Pubblica un evento sul canale configurato.

        Args:
            event: Nome dell'evento
            payload: Dati dell'evento (UUID e Decimal vengono serializzati come stringhe)

        Returns:
            True se l'evento è stato pubblicato
        """
        message = json.dumps(
            {
                "event": event,
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await self.client.publish(self.channel, message)
        except redis.RedisError:
            logger.exception("Pubblicazione evento %s fallita", event)
            return False

        logger.debug("Evento %s pubblicato su %s", event, self.channel)
        return True

    async def order_paid(
        self,
        *,
        order_id,
        table_number: Optional[str],
        order_type: str,
        amount,
        payer_name: Optional[str],
        customer_name: Optional[str],
        fully_paid: bool,
    ) -> bool:
        """
        Evento di pagamento registrato (completo o parziale).

        payerName è chi ha pagato; customerName è il cliente
        dell'ordinazione (asporto/banco).
        """
        event = EVENT_ORDER_PAID if fully_paid else EVENT_ORDER_PARTIALLY_PAID
        return await self.emit(
            event,
            {
                "orderId": order_id,
                "tableNumber": table_number,
                "orderType": order_type,
                "amount": amount,
                "payerName": payer_name,
                "customerName": customer_name,
            },
        )

    async def payment_requested(
        self,
        *,
        order_id,
        table_number: Optional[str],
        remaining_amount,
        requested_by: str,
    ) -> bool:
        """Evento di richiesta conto inviato alla cassa."""
        return await self.emit(
            EVENT_PAYMENT_REQUESTED,
            {
                "orderId": order_id,
                "tableNumber": table_number,
                "remainingAmount": remaining_amount,
                "requestedBy": requested_by,
            },
        )
