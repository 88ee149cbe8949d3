"""
Algoritmo di allocazione dei pagamenti sulle righe
Progetto: Gestionale Ristorante

Funzioni pure, senza accesso al database: decidono quali righe un importo
salda e calcolano lo stato di pagamento risultante.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Protocol, Sequence

from app.schemas.order import PaymentStatus


CENT = Decimal("0.01")


class PayableLine(Protocol):
    """Quanto serve all'algoritmo di una riga ordinazione."""

    id: uuid.UUID
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class AllocationPlan:
    """
    Risultato dell'allocazione FIFO.

    Attributes:
        settled_ids: Righe saldate, nell'ordine in cui sono state coperte
        consumed: Costo totale delle righe saldate
        leftover: Parte dell'importo non allocata (mancia/arrotondamento)
    """

    settled_ids: List[uuid.UUID] = field(default_factory=list)
    consumed: Decimal = Decimal("0.00")
    leftover: Decimal = Decimal("0.00")


def to_money(value: Decimal) -> Decimal:
    """Arrotonda al centesimo (ROUND_HALF_UP)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_cost(line: PayableLine) -> Decimal:
    """Costo pieno di una riga: prezzo unitario × quantità."""
    return to_money(Decimal(line.unit_price) * line.quantity)


def total_cost(lines: Iterable[PayableLine]) -> Decimal:
    return sum((line_cost(line) for line in lines), Decimal("0.00"))


def allocate_fifo(amount: Decimal, lines: Sequence[PayableLine]) -> AllocationPlan:
    """
    Alloca un importo sulle righe non pagate, dalla più vecchia.

    Una riga viene saldata solo se il residuo ne copre l'intero costo;
    alla prima riga non coperta l'allocazione si ferma. Il residuo non
    viene mai distribuito su righe successive né usato per pagamenti
    parziali di una riga.

    Args:
        amount: Importo incassato (> 0)
        lines: Righe non pagate, già ordinate dalla più vecchia

    Returns:
        AllocationPlan con righe saldate, importo consumato e residuo
    """
    remaining = to_money(amount)
    settled: List[uuid.UUID] = []
    consumed = Decimal("0.00")

    for line in lines:
        cost = line_cost(line)
        if cost > remaining:
            break
        settled.append(line.id)
        consumed += cost
        remaining -= cost

    return AllocationPlan(settled_ids=settled, consumed=consumed, leftover=remaining)


def max_allowed_amount(base: Decimal, tolerance: Decimal) -> Decimal:
    """Importo massimo accettato su una base, inclusa la tolleranza di sovrapagamento."""
    return to_money(Decimal(base) * (Decimal("1") + Decimal(tolerance)))


def compute_payment_status(unpaid_lines: int, has_payments: bool) -> PaymentStatus:
    """
    Stato di pagamento in base alle righe ancora aperte.

    Un'ordinazione che ha ricevuto almeno un pagamento è partially_paid
    anche se quel pagamento non ha saldato alcuna riga.
    """
    if not has_payments:
        return PaymentStatus.UNPAID
    if unpaid_lines == 0:
        return PaymentStatus.FULLY_PAID
    return PaymentStatus.PARTIALLY_PAID
