"""
Eccezioni Custom per l'applicazione.
Progetto: Gestionale Ristorante

Definisce eccezioni specifiche del dominio per una gestione
centralizzata degli errori.

Ogni eccezione porta un `error_code` stabile: la cassa mostra un messaggio
diverso per ciascuno perché ognuno implica un'azione correttiva diversa
(ordine già pagato, importo eccessivo, riprovare, ...).
"""

from typing import Any, Dict, Optional

__all__ = [
    "AppException",
    "NotFoundError",
    "ConflictError",
    "AuthorizationError",
    "PermissionDeniedError",  # alias di AuthorizationError
    "AlreadyPaidError",
    "InvalidAmountError",
    "AmountTooHighError",
    "BusyError",
    "InternalError",
]


class AppException(Exception):
    """
    Base exception per l'applicazione.

    Tutte le eccezioni custom ereditano da questa classe base.

    Attributes:
        status_code: HTTP status code da restituire al client
        error_code: Identificativo univoco dell'errore per il frontend
        detail: Messaggio di errore leggibile per l'utente
        extra: Dizionario con dati aggiuntivi per il frontend
        retryable: True se il chiamante può ripetere l'operazione
    """

    # Default values - overridden in subclasses
    status_code: int = 500
    error_code: str = "INTERNAL_SERVER_ERROR"
    retryable: bool = False

    def __init__(
        self,
        detail: str,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Inizializza l'eccezione.

        Args:
            detail: Messaggio di errore dettagliato
            error_code: Identificativo univoco (default: quello di classe)
            extra: Dati aggiuntivi da passare al frontend (default: None)
        """
        self.detail = detail
        self.error_code = error_code if error_code is not None else self.error_code
        self.extra = extra
        self.status_code = self.__class__.status_code
        super().__init__(detail)


class NotFoundError(AppException):
    """
    Eccezione sollevata quando una risorsa non viene trovata.

    Utilizzata quando un'ordinazione o una riga cercata non esiste nel database.
    """

    status_code: int = 404
    error_code: str = "RESOURCE_NOT_FOUND"

    def __init__(
        self,
        detail: str = "Risorsa non trovata",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class ConflictError(AppException):
    """
    Eccezione sollevata per conflitti di stato.

    Utilizzata quando un'operazione non può essere eseguita
    a causa dello stato corrente della risorsa.
    """

    status_code: int = 409
    error_code: str = "CONFLICT_STATE"

    def __init__(
        self,
        detail: str = "Conflitto di stato",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class AuthorizationError(AppException):
    """
    Eccezione sollevata per accesso non autorizzato.

    Esempi di utilizzo:
        - "Permessi insufficienti per incassare"
        - "Solo camerieri e responsabili possono richiedere il conto"
    """

    status_code: int = 403
    error_code: str = "PERMISSION_DENIED"

    def __init__(
        self,
        detail: str = "Permessi insufficienti",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


PermissionDeniedError = AuthorizationError


class AlreadyPaidError(ConflictError):
    """L'ordinazione (o la riga) risulta già pagata."""

    error_code: str = "ALREADY_PAID"

    def __init__(
        self,
        detail: str = "Ordinazione già pagata",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class InvalidAmountError(AppException):
    """Importo nullo, negativo o selezione di righe vuota."""

    status_code: int = 422
    error_code: str = "INVALID_AMOUNT"

    def __init__(
        self,
        detail: str = "L'importo deve essere maggiore di zero",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class AmountTooHighError(AppException):
    """L'importo supera il residuo oltre la tolleranza ammessa."""

    status_code: int = 422
    error_code: str = "AMOUNT_TOO_HIGH"

    def __init__(
        self,
        detail: str = "Importo superiore al massimo consentito",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class BusyError(ConflictError):
    """
    Ordinazione in elaborazione da un altro operatore.

    Sollevata quando il lock sulla riga non è disponibile, quando il database
    segnala un conflitto di serializzazione o quando la transazione scade.
    L'operazione può essere ripetuta dopo qualche istante.
    """

    error_code: str = "BUSY"
    retryable: bool = True

    def __init__(
        self,
        detail: str = "Ordine in elaborazione da un altro operatore. Riprova.",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class InternalError(AppException):
    """Errore inatteso di persistenza: la transazione è stata annullata."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        detail: str = "Errore interno del server",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)
