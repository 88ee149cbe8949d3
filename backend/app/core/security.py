"""
Modulo di sicurezza per i token JWT
Progetto: Gestionale Ristorante

I token sono emessi dal servizio di autenticazione della piattaforma;
qui vengono solo verificati. create_access_token serve per gli strumenti
di sviluppo e per i test.
"""

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt
from pydantic import ValidationError

from app.core.config import settings
from app.schemas.operator import Operator
from app.schemas.token import TokenPayload


def create_access_token(operator: Operator, expires_minutes: int = 60) -> str:
    """
    Crea un token di accesso JWT per un operatore.

    Args:
        operator: Operatore da rappresentare nel token
        expires_minutes: Validità del token in minuti

    Returns:
        Token JWT codificato
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)

    payload = {
        "sub": str(operator.id),
        "name": operator.name,
        "role": operator.role.value,
        "exp": expire,
        "type": "access",
    }

    return jwt.encode(
        payload,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> TokenPayload:
    """
    Decodifica e valida un token JWT.

    Args:
        token: Token JWT da decodificare

    Returns:
        TokenPayload con i dati del token

    Raises:
        HTTPException: Se il token è invalido o scaduto
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(
            sub=payload.get("sub"),
            name=payload.get("name"),
            role=payload.get("role"),
            type=payload.get("type", "access"),
        )

    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Token invalido o scaduto: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token invalido: dati operatore mancanti",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Export delle funzioni
__all__ = [
    "create_access_token",
    "decode_token",
]
