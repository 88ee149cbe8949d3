"""
Configurazione Database - SQLAlchemy 2.0 Async
Progetto: Gestionale Ristorante

Definisce engine, session factory e dependency injection per FastAPI,
più la classificazione degli errori di concorrenza del database.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

# Logger per questo modulo
logger = logging.getLogger(__name__)

# SQLSTATE PostgreSQL che indicano contesa sulle righe:
# 55P03 lock_not_available (NOWAIT), 40001 serialization_failure, 40P01 deadlock_detected
LOCK_CONTENTION_SQLSTATES = frozenset({"55P03", "40001", "40P01"})

# ------------------------------------------------------------
# Engine Async SQLAlchemy 2.0
# ------------------------------------------------------------
engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=settings.debug,  # Log query in modalità debug
    pool_pre_ping=True,   # Verifica connessione prima di usarla
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)


# ------------------------------------------------------------
# Session Factory
# ------------------------------------------------------------
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency injection per FastAPI.

    Crea una sessione database per ogni richiesta e la chiude
    automaticamente al termine.

    Yields:
        AsyncSession: Sessione database async
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def is_lock_contention(exc: DBAPIError) -> bool:
    """
    Indica se l'errore del driver deriva da contesa sui lock.

    Riconosce lo SQLSTATE esposto da asyncpg/psycopg e, per SQLite,
    il messaggio "database is locked".

    Args:
        exc: Eccezione sollevata da SQLAlchemy

    Returns:
        True se l'operazione può essere ripetuta
    """
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in LOCK_CONTENTION_SQLSTATES:
        return True

    message = str(orig if orig is not None else exc).lower()
    return "could not obtain lock" in message or "database is locked" in message


async def init_db() -> None:
    """
    Inizializza la connessione al database.

    Esegue un test di connessione per verificare
    che il database sia raggiungibile.
    """
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Connessione al database stabilita con successo")
    except Exception as e:
        logger.error("Errore connessione database: %s", e)
        raise


async def close_db() -> None:
    """
    Chiude le connessioni al database.

    Da chiamare durante lo shutdown dell'applicazione.
    """
    await engine.dispose()
    logger.info("Connessioni database chiuse")
