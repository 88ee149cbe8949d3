"""
Schemas Pydantic per l'operatore autenticato
Progetto: Gestionale Ristorante

L'identità arriva dal token emesso dal servizio di autenticazione e viene
passata esplicitamente ai servizi.
"""

import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OperatorRole(str, Enum):
    """Ruoli degli operatori."""
    ADMIN = "admin"
    MANAGER = "manager"
    CASHIER = "cashier"
    WAITER = "waiter"


class Operator(BaseModel):
    """Operatore che esegue l'operazione."""

    id: uuid.UUID = Field(..., description="UUID dell'operatore")
    name: str = Field(..., min_length=1, max_length=100, description="Nome visualizzato")
    role: OperatorRole = Field(..., description="Ruolo dell'operatore")

    model_config = ConfigDict(frozen=True)
