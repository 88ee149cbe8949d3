"""
Schemas Pydantic per il payload dei token JWT
Progetto: Gestionale Ristorante
"""

import uuid

from pydantic import BaseModel, Field

from app.schemas.operator import Operator, OperatorRole


class TokenPayload(BaseModel):
    """
    Schema per il payload contenuto nei token JWT.

    Attributes:
        sub: Subject - UUID dell'operatore
        name: Nome visualizzato dell'operatore
        role: Ruolo dell'operatore
        type: Tipo di token (solo "access" è accettato dalle API)
    """

    sub: uuid.UUID = Field(..., description="UUID operatore")
    name: str = Field(..., min_length=1, description="Nome operatore")
    role: OperatorRole = Field(..., description="Ruolo dell'operatore")
    type: str = Field(default="access", description="Tipo di token")

    def to_operator(self) -> Operator:
        return Operator(id=self.sub, name=self.name, role=self.role)


# Export degli schemas
__all__ = [
    "TokenPayload",
]
