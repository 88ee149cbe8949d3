"""
Dependency Injection per l'identità dell'operatore
Progetto: Gestionale Ristorante

L'operatore viene ricavato dal token bearer e passato esplicitamente
ai servizi; i ruoli ammessi per ogni operazione sono verificati
anche dai servizi stessi.
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.core.security import decode_token
from app.schemas.operator import Operator

# OAuth2 scheme - estrae il token dall'header Authorization
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/v1/auth/login",
    auto_error=False,
)


async def get_current_operator(
    token: Optional[str] = Depends(oauth2_scheme),
) -> Operator:
    """
    Dependency per ottenere l'operatore corrente dal token JWT.

    Args:
        token: Token JWT estratto dall'header Authorization

    Returns:
        L'operatore corrente

    Raises:
        HTTPException 401: Se il token manca, è invalido o scaduto
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token di autenticazione non fornito",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_token(token)

    # Verifica che sia un token di accesso
    if token_data.type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token di refresh non valido per questa operazione",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_data.to_operator()


def require_role(*allowed_roles: str):
    """
    Factory function per creare una dependency che verifica il ruolo.

    Args:
        allowed_roles: Ruoli permessi per l'endpoint

    Returns:
        Dependency che verifica il ruolo dell'operatore

    Example:
        @router.get("/orders/to-pay")
        async def orders_to_pay(
            operator: Operator = Depends(require_role("admin", "manager", "cashier"))
        ):
            ...
    """
    async def role_checker(
        current_operator: Annotated[Operator, Depends(get_current_operator)]
    ) -> Operator:
        """
        Verifica che l'operatore abbia uno dei ruoli permessi.

        Raises:
            HTTPException 403: Se l'operatore non ha i permessi necessari
        """
        if current_operator.role.value not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Accesso negato. Ruolo richiesto: {', '.join(allowed_roles)}",
            )
        return current_operator

    return role_checker


# Type aliases per uso comune
CurrentOperator = Annotated[Operator, Depends(get_current_operator)]
StaffOperator = Annotated[
    Operator, Depends(require_role("admin", "manager", "cashier", "waiter"))
]


# Export
__all__ = [
    "get_current_operator",
    "require_role",
    "oauth2_scheme",
    "CurrentOperator",
    "StaffOperator",
]
