"""
Modelli Database SQLAlchemy
Progetto: Gestionale Ristorante

Import centralizzato di tutti i modelli per Alembic e usage generico.

Modelli:
- Table: Tavoli della sala
- Product: Prodotti referenziati dalle righe
- Order: Ordinazioni
- OrderLine: Righe ordinazione
- Payment: Pagamenti (registro append-only)
- PaymentHistory: Audit trail dei pagamenti
"""

# SQLAlchemy 2.0 Base declarativa
# Importato qui per essere disponibile per tutti i modelli
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class per tutti i modelli SQLAlchemy."""
    pass


# Import modelli implementati
from app.models.table import Table
from app.models.product import Product
from app.models.order import Order, OrderLine
from app.models.payment import Payment, PaymentHistory

# Esportazione di tutti i modelli per Alembic
__all__ = [
    "Base",
    "Table",
    "Product",
    "Order",
    "OrderLine",
    "Payment",
    "PaymentHistory",
]
