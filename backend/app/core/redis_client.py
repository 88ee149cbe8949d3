"""
Client Redis condiviso
Progetto: Gestionale Ristorante

Redis trasporta gli eventi di dominio (pub/sub) e la coda degli scontrini.
Il client viene creato alla prima richiesta e chiuso allo shutdown.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from app.core.config import settings

# Logger per questo modulo
logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """
    Restituisce il client Redis dell'applicazione.

    La connessione vera e propria viene aperta dal pool al primo comando.
    """
    global _client
    if _client is None:
        _client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def ping_redis() -> bool:
    """Verifica che Redis sia raggiungibile, senza sollevare eccezioni."""
    try:
        return bool(await get_redis().ping())
    except redis.RedisError as e:
        logger.warning("Redis non raggiungibile: %s", e)
        return False


async def close_redis() -> None:
    """Chiude il client Redis. Da chiamare durante lo shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("Connessione Redis chiusa")
