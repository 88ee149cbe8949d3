"""
Service Layer per l'incasso delle ordinazioni
Progetto: Gestionale Ristorante

Il gestore pagamenti trasforma una richiesta di incasso (importo oppure
elenco di righe) in righe pagate, un pagamento registrato e lo stato
aggiornato di ordinazione e tavolo, tutto in un'unica transazione.
Eventi e scontrini partono solo dopo il commit.

Concorrenza:
- lock della riga ordinazione con SELECT ... FOR UPDATE NOWAIT
- transazione SERIALIZABLE con durata massima configurabile
- UPDATE delle righe condizionato a is_paid = false
Lock occupato, conflitto di serializzazione o timeout diventano BusyError;
nessun tentativo automatico di ripetizione.
"""

import asyncio
import functools
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings
from app.core.database import AsyncSessionLocal, is_lock_contention
from app.core.exceptions import (
    AlreadyPaidError,
    AmountTooHighError,
    AppException,
    BusyError,
    ConflictError,
    InternalError,
    InvalidAmountError,
    NotFoundError,
    PermissionDeniedError,
)
from app.models import Order, OrderLine, Payment, Table
from app.schemas.operator import Operator
from app.schemas.order import INACTIVE_ORDER_STATUSES, OrderStatus, PaymentStatus, TableStatus
from app.schemas.payment import (
    MAX_PAYMENT_AMOUNT,
    AllocationResult,
    LinesPaymentResult,
    OrderPaymentOutcome,
    PaymentMethod,
    SettledLineRead,
)
from app.services.allocation import (
    CENT,
    allocate_fifo,
    compute_payment_status,
    line_cost,
    max_allowed_amount,
    to_money,
    total_cost,
)
from app.services.audit_service import AuditService
from app.services.notification_service import NotificationService
from app.services.receipt_queue_service import ReceiptQueueService

# Logger per questo modulo
logger = logging.getLogger(__name__)

T = TypeVar("T")


def check_role(operator: Operator, allowed_roles: Sequence[str], action: str) -> None:
    """
    Verifica che l'operatore abbia uno dei ruoli ammessi.

    Raises:
        PermissionDeniedError: Ruolo non autorizzato
    """
    if operator.role.value not in allowed_roles:
        logger.warning(
            "Operatore %s (%s) non autorizzato a %s",
            operator.id,
            operator.role.value,
            action,
        )
        raise PermissionDeniedError(
            f"Permessi insufficienti per {action}",
            extra={"role": operator.role.value},
        )


@dataclass
class _CommittedPayment:
    """Pagamento confermato, con i dati che servono per eventi e scontrini."""

    result: AllocationResult
    order_type: str
    table_number: Optional[str]
    customer_name: Optional[str]


class PaymentAllocator:
    """
    Service per l'incasso delle ordinazioni.

    Ogni chiamata apre le proprie sessioni dalla session factory: una
    transazione per ordinazione. Collaboratori esterni (eventi, coda
    scontrini, storico) sono iniettabili per i test.

    Implementa:
    - pay_by_amount: importo allocato FIFO sulle righe non pagate
    - pay_by_lines: righe scelte esplicitamente, anche su più ordinazioni
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        notifier: Optional[NotificationService] = None,
        receipt_queue: Optional[ReceiptQueueService] = None,
        audit: Optional[AuditService] = None,
        app_settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or NotificationService()
        self.receipt_queue = receipt_queue or ReceiptQueueService()
        self.audit = audit or AuditService()
        self.settings = app_settings or settings

    # ------------------------------------------------------------
    # Operazioni pubbliche
    # ------------------------------------------------------------

    async def pay_by_amount(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        operator: Operator,
        payer_name: Optional[str] = None,
    ) -> AllocationResult:
        """
        Incassa un importo su un'ordinazione.

        L'importo salda le righe non pagate dalla più vecchia, solo per
        intero; la parte che non copre alcuna riga resta registrata nel
        pagamento come mancia/arrotondamento, purché le righe rimaste
        restino saldabili entro il totale più la tolleranza.

        Args:
            order_id: UUID dell'ordinazione
            amount: Importo incassato
            method: Metodo di pagamento
            operator: Operatore che registra l'incasso
            payer_name: Nome di chi paga (opzionale)

        Returns:
            AllocationResult con righe saldate e nuovo stato

        Raises:
            PermissionDeniedError: Ruolo non autorizzato
            InvalidAmountError: Importo non valido
            NotFoundError: Ordinazione inesistente
            AlreadyPaidError: Ordinazione già pagata
            AmountTooHighError: Importo oltre il residuo più la tolleranza, o
                non allocato oltre il margine di tolleranza
            BusyError: Ordinazione bloccata da un'altra operazione
            InternalError: Errore di persistenza
        """
        check_role(operator, self.settings.payment_allowed_roles, "incassare")
        amount = self._validate_amount(amount)
        method = PaymentMethod(method)

        committed = await self._run_payment_transaction(
            order_id,
            functools.partial(
                self._pay_amount_tx, order_id, amount, method, operator, payer_name
            ),
        )
        await self._after_commit(committed, operator)
        return committed.result

    async def pay_by_lines(
        self,
        line_ids: Sequence[uuid.UUID],
        method: PaymentMethod,
        operator: Operator,
        payer_name: Optional[str] = None,
    ) -> LinesPaymentResult:
        """
        Incassa un elenco di righe, anche di ordinazioni diverse.

        Le righe vengono raggruppate per ordinazione e ogni gruppo è pagato
        in una transazione separata: un gruppo fallito non annulla quelli
        già confermati. Se nessun gruppo va a buon fine viene sollevato
        l'errore del primo gruppo.

        Args:
            line_ids: UUID delle righe da pagare
            method: Metodo di pagamento
            operator: Operatore che registra l'incasso
            payer_name: Nome di chi paga (opzionale)

        Returns:
            LinesPaymentResult con l'esito per ordinazione

        Raises:
            PermissionDeniedError: Ruolo non autorizzato
            InvalidAmountError: Nessuna riga selezionata
            NotFoundError: Una o più righe inesistenti
            AlreadyPaidError: Una o più righe già pagate
        """
        check_role(operator, self.settings.payment_allowed_roles, "incassare")
        ids = list(dict.fromkeys(line_ids))
        if not ids:
            raise InvalidAmountError("Nessuna riga selezionata")
        method = PaymentMethod(method)

        groups = await self._group_lines_by_order(ids)

        outcomes: list[OrderPaymentOutcome] = []
        first_error: Optional[AppException] = None

        for order_id, group_ids in groups.items():
            try:
                committed = await self._run_payment_transaction(
                    order_id,
                    functools.partial(
                        self._pay_lines_tx, order_id, group_ids, method, operator, payer_name
                    ),
                )
            except AppException as e:
                logger.warning(
                    "Pagamento righe dell'ordinazione %s fallito: %s (%s)",
                    order_id,
                    e.detail,
                    e.error_code,
                )
                outcomes.append(
                    OrderPaymentOutcome(
                        order_id=order_id,
                        success=False,
                        error_code=e.error_code,
                        detail=e.detail,
                    )
                )
                if first_error is None:
                    first_error = e
                continue

            await self._after_commit(committed, operator)
            outcomes.append(
                OrderPaymentOutcome(order_id=order_id, success=True, result=committed.result)
            )

        if first_error is not None and not any(o.success for o in outcomes):
            raise first_error

        return LinesPaymentResult(outcomes=outcomes)

    # ------------------------------------------------------------
    # Transazione e lock
    # ------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Sessione con transazione al livello di isolamento configurato."""
        async with self.session_factory() as db:
            async with db.begin():
                conn = await db.connection(
                    execution_options={"isolation_level": self.settings.payment_isolation_level}
                )
                if conn.dialect.name == "postgresql":
                    await db.execute(
                        text(
                            "SET LOCAL statement_timeout = %d"
                            % self.settings.payment_transaction_timeout_ms
                        )
                    )
                yield db

    async def _run_payment_transaction(
        self,
        order_id: uuid.UUID,
        work: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Esegue una transazione di pagamento entro il tempo massimo.

        Gli errori di dominio passano invariati; quelli del database
        vengono tradotti in BusyError o InternalError.
        """
        timeout = self.settings.payment_transaction_timeout_ms / 1000
        try:
            async with asyncio.timeout(timeout):
                return await work()
        except TimeoutError:
            logger.warning("Timeout transazione di pagamento per ordinazione %s", order_id)
            raise BusyError(extra={"order_id": str(order_id)})
        except DBAPIError as e:
            if is_lock_contention(e):
                logger.info("Ordinazione %s bloccata da un'altra operazione", order_id)
                raise BusyError(extra={"order_id": str(order_id)}) from e
            logger.exception("Errore database durante il pagamento dell'ordinazione %s", order_id)
            raise InternalError() from e
        except SQLAlchemyError as e:
            logger.exception("Errore database durante il pagamento dell'ordinazione %s", order_id)
            raise InternalError() from e

    async def _lock_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        """
        Blocca la riga dell'ordinazione (FOR UPDATE NOWAIT).

        Raises:
            NotFoundError: Ordinazione inesistente
            ConflictError: Ordinazione annullata
        """
        result = await db.execute(
            select(Order).where(Order.id == order_id).with_for_update(nowait=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Ordinazione {order_id} non trovata")
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError(
                f"Ordinazione {order_id} annullata",
                error_code="ORDER_CANCELLED",
            )
        return order

    # ------------------------------------------------------------
    # Transazioni di pagamento
    # ------------------------------------------------------------

    async def _pay_amount_tx(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        operator: Operator,
        payer_name: Optional[str],
    ) -> _CommittedPayment:
        async with self._transaction() as db:
            order = await self._lock_order(db, order_id)

            # Ricontrollo sotto lock: un altro operatore può aver chiuso il conto
            if order.payment_status == PaymentStatus.FULLY_PAID.value:
                raise AlreadyPaidError(f"Ordinazione {order_id} già pagata")

            all_lines = await self._order_lines(db, order.id)
            unpaid = [line for line in all_lines if not line.is_paid]
            remaining = total_cost(unpaid)
            nominal = total_cost(all_lines)
            paid_so_far = await self._paid_total(db, order.id)

            tolerance = self.settings.payment_overpayment_tolerance
            max_cumulative = max_allowed_amount(nominal, tolerance)
            allowed = min(
                max_allowed_amount(remaining, tolerance),
                max(max_cumulative - paid_so_far, Decimal("0.00")),
            )
            if amount > allowed:
                logger.warning(
                    "Importo %s rifiutato per ordinazione %s: residuo %s, massimo %s",
                    amount,
                    order_id,
                    remaining,
                    allowed,
                )
                raise AmountTooHighError(
                    f"Importo {amount} superiore al massimo consentito ({allowed})",
                    extra={
                        "remaining_amount": str(remaining),
                        "max_amount": str(allowed),
                    },
                )

            plan = allocate_fifo(amount, unpaid)

            # Le righe rimaste devono restare saldabili entro il massimo cumulativo
            max_unallocated = max(max_cumulative - paid_so_far - remaining, Decimal("0.00"))
            if plan.leftover > max_unallocated:
                logger.warning(
                    "Importo %s rifiutato per ordinazione %s: %s non allocati, massimo %s",
                    amount,
                    order_id,
                    plan.leftover,
                    max_unallocated,
                )
                raise AmountTooHighError(
                    f"Importo {amount}: {plan.leftover} non coprono alcuna riga e le "
                    f"righe rimaste non sarebbero più saldabili",
                    extra={
                        "remaining_amount": str(remaining),
                        "max_amount": str(allowed),
                        "max_unallocated": str(max_unallocated),
                    },
                )

            if plan.leftover > 0:
                logger.warning(
                    "Pagamento su ordinazione %s: %s non allocati su alcuna riga",
                    order_id,
                    plan.leftover,
                )

            settled_ids = set(plan.settled_ids)
            settled = [line for line in unpaid if line.id in settled_ids]

            result = await self._apply_payment(
                db,
                order,
                settled,
                amount=amount,
                method=method,
                operator=operator,
                payer_name=payer_name,
                remaining_before=remaining,
                unallocated=plan.leftover,
            )
            return await self._committed(db, order, result)

    async def _pay_lines_tx(
        self,
        order_id: uuid.UUID,
        line_ids: list[uuid.UUID],
        method: PaymentMethod,
        operator: Operator,
        payer_name: Optional[str],
    ) -> _CommittedPayment:
        async with self._transaction() as db:
            order = await self._lock_order(db, order_id)

            all_lines = await self._order_lines(db, order.id)
            selected = set(line_ids)
            lines = [line for line in all_lines if line.id in selected]
            if len(lines) != len(selected):
                raise NotFoundError(
                    f"Righe non trovate nell'ordinazione {order_id}",
                    extra={"line_ids": [str(i) for i in line_ids]},
                )

            # Ricontrollo sotto lock
            already_paid = [line.id for line in lines if line.is_paid]
            if already_paid:
                raise AlreadyPaidError(
                    "Una o più righe risultano già pagate",
                    extra={"line_ids": [str(i) for i in already_paid]},
                )

            amount = total_cost(lines)
            if amount <= 0:
                raise InvalidAmountError("Le righe selezionate non hanno importo da pagare")

            remaining = total_cost(line for line in all_lines if not line.is_paid)
            paid_so_far = await self._paid_total(db, order.id)
            max_cumulative = max_allowed_amount(
                total_cost(all_lines), self.settings.payment_overpayment_tolerance
            )
            if paid_so_far + amount > max_cumulative:
                allowed = max(max_cumulative - paid_so_far, Decimal("0.00"))
                logger.warning(
                    "Righe per %s rifiutate su ordinazione %s: già incassati %s, massimo %s",
                    amount,
                    order_id,
                    paid_so_far,
                    max_cumulative,
                )
                raise AmountTooHighError(
                    f"Importo {amount} superiore al massimo consentito ({allowed})",
                    extra={
                        "remaining_amount": str(remaining),
                        "max_amount": str(allowed),
                    },
                )

            result = await self._apply_payment(
                db,
                order,
                lines,
                amount=amount,
                method=method,
                operator=operator,
                payer_name=payer_name,
                remaining_before=remaining,
                unallocated=Decimal("0.00"),
            )
            return await self._committed(db, order, result)

    async def _apply_payment(
        self,
        db: AsyncSession,
        order: Order,
        settled: Sequence[OrderLine],
        *,
        amount: Decimal,
        method: PaymentMethod,
        operator: Operator,
        payer_name: Optional[str],
        remaining_before: Decimal,
        unallocated: Decimal,
    ) -> AllocationResult:
        """
        Scrive righe pagate, pagamento, stato ordinazione/tavolo e storico.

        Va chiamato con la riga dell'ordinazione già bloccata.
        """
        now = datetime.now(timezone.utc)
        settled_ids = [line.id for line in settled]

        if settled_ids:
            await self._mark_lines_paid(db, settled_ids, payer_name, now)

        payment = Payment(
            order_id=order.id,
            amount=amount,
            method=method.value,
            payer_name=payer_name,
            operator_id=operator.id,
            line_ids=[str(i) for i in settled_ids],
        )
        db.add(payment)

        previous_state = {
            "status": order.status,
            "payment_status": order.payment_status,
        }

        unpaid_count = await self._count_unpaid_lines(db, order.id)
        new_status = compute_payment_status(unpaid_count, has_payments=True)
        order.payment_status = new_status.value

        table_released = False
        if new_status == PaymentStatus.FULLY_PAID:
            order.status = OrderStatus.PAID.value
            order.closed_at = now
            if order.table_id is not None:
                table_released = await self._release_table(db, order)

        await db.flush()

        logger.info(
            "Pagamento %s registrato su ordinazione %s: %s (%s), righe saldate %d, stato %s -> %s",
            payment.id,
            order.id,
            amount,
            method.value,
            len(settled_ids),
            previous_state["payment_status"],
            order.payment_status,
        )

        await self.audit.record_payment(
            db,
            payment,
            operator,
            previous_state=previous_state,
            new_state={
                "status": order.status,
                "payment_status": order.payment_status,
                "table_released": table_released,
            },
            unallocated_amount=unallocated,
        )

        settled_amount = total_cost(settled)
        return AllocationResult(
            order_id=order.id,
            payment_id=payment.id,
            amount=amount,
            method=method,
            payer_name=payer_name,
            settled_line_ids=settled_ids,
            settled_lines=[
                SettledLineRead(
                    id=line.id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total=line_cost(line),
                )
                for line in settled
            ],
            settled_amount=settled_amount,
            unallocated_amount=unallocated,
            remaining_unpaid_lines=unpaid_count,
            remaining_amount=max(remaining_before - settled_amount, Decimal("0.00")),
            payment_status=new_status,
            order_status=OrderStatus(order.status),
            table_released=table_released,
        )

    async def _mark_lines_paid(
        self,
        db: AsyncSession,
        line_ids: list[uuid.UUID],
        payer_name: Optional[str],
        now: datetime,
    ) -> None:
        """
        Segna le righe come pagate, solo se ancora non pagate.

        Raises:
            BusyError: Un'altra operazione ha pagato alcune righe nel frattempo
        """
        result = await db.execute(
            update(OrderLine)
            .where(OrderLine.id.in_(line_ids), OrderLine.is_paid.is_(False))
            .values(is_paid=True, paid_by=payer_name, paid_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(line_ids):
            logger.warning(
                "Righe pagate da un'altra operazione: attese %d, aggiornate %d",
                len(line_ids),
                result.rowcount,
            )
            raise BusyError()

    async def _release_table(self, db: AsyncSession, order: Order) -> bool:
        """
        Libera il tavolo se non restano altre ordinazioni attive.

        Solo un tavolo occupato passa a libero: prenotato o in pulizia
        resta com'è.

        Returns:
            True se il tavolo è stato liberato
        """
        active_others = await db.scalar(
            select(func.count())
            .select_from(Order)
            .where(
                Order.table_id == order.table_id,
                Order.id != order.id,
                Order.status.notin_(INACTIVE_ORDER_STATUSES),
            )
        )
        if active_others:
            logger.info(
                "Tavolo %s non liberato: %d altre ordinazioni attive",
                order.table_id,
                active_others,
            )
            return False

        result = await db.execute(
            update(Table)
            .where(Table.id == order.table_id, Table.status == TableStatus.OCCUPIED.value)
            .values(status=TableStatus.FREE.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("Tavolo %s non occupato: stato invariato", order.table_id)
            return False

        logger.info("Tavolo %s liberato", order.table_id)
        return True

    # ------------------------------------------------------------
    # Query di supporto
    # ------------------------------------------------------------

    async def _order_lines(self, db: AsyncSession, order_id: uuid.UUID) -> list[OrderLine]:
        """Tutte le righe dell'ordinazione, dalla più vecchia."""
        result = await db.execute(
            select(OrderLine)
            .where(OrderLine.order_id == order_id)
            .order_by(OrderLine.created_at, OrderLine.line_number)
        )
        return list(result.scalars().all())

    async def _count_unpaid_lines(self, db: AsyncSession, order_id: uuid.UUID) -> int:
        return await db.scalar(
            select(func.count())
            .select_from(OrderLine)
            .where(OrderLine.order_id == order_id, OrderLine.is_paid.is_(False))
        ) or 0

    async def _paid_total(self, db: AsyncSession, order_id: uuid.UUID) -> Decimal:
        total = await db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.order_id == order_id)
        )
        return to_money(Decimal(str(total or 0)))

    async def _group_lines_by_order(
        self, line_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, list[uuid.UUID]]:
        """
        Carica le righe e le raggruppa per ordinazione, nell'ordine ricevuto.

        Raises:
            NotFoundError: Righe inesistenti
            AlreadyPaidError: Righe già pagate
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(OrderLine).where(OrderLine.id.in_(line_ids)))
                found = {line.id: line for line in result.scalars().all()}
        except SQLAlchemyError as e:
            logger.exception("Errore nel caricamento delle righe da pagare")
            raise InternalError() from e

        missing = [i for i in line_ids if i not in found]
        if missing:
            raise NotFoundError(
                f"{len(missing)} righe non trovate",
                extra={"line_ids": [str(i) for i in missing]},
            )

        paid = [i for i in line_ids if found[i].is_paid]
        if paid:
            raise AlreadyPaidError(
                "Una o più righe risultano già pagate",
                extra={"line_ids": [str(i) for i in paid]},
            )

        groups: dict[uuid.UUID, list[uuid.UUID]] = {}
        for line_id in line_ids:
            groups.setdefault(found[line_id].order_id, []).append(line_id)
        return groups

    async def _committed(
        self, db: AsyncSession, order: Order, result: AllocationResult
    ) -> _CommittedPayment:
        table_number = None
        if order.table_id is not None:
            table_number = await db.scalar(select(Table.number).where(Table.id == order.table_id))
        return _CommittedPayment(
            result=result,
            order_type=order.order_type,
            table_number=table_number,
            customer_name=order.customer_name,
        )

    # ------------------------------------------------------------
    # Dopo il commit
    # ------------------------------------------------------------

    async def _after_commit(self, committed: _CommittedPayment, operator: Operator) -> None:
        """Evento di dominio e scontrini; entrambi best-effort."""
        result = committed.result
        await self.notifier.order_paid(
            order_id=result.order_id,
            table_number=committed.table_number,
            order_type=committed.order_type,
            amount=result.amount,
            payer_name=result.payer_name,
            customer_name=committed.customer_name,
            fully_paid=result.payment_status == PaymentStatus.FULLY_PAID,
        )
        await self.receipt_queue.enqueue_payment_receipts(
            result,
            order_type=committed.order_type,
            table_number=committed.table_number,
            customer_name=committed.customer_name,
            operator_name=operator.name,
        )

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        """
        Valida l'importo: positivo, al massimo due decimali, entro il limite.

        Raises:
            InvalidAmountError: Importo non valido
        """
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmountError(f"Importo non valido: {amount}")

        if not value.is_finite() or value <= 0:
            raise InvalidAmountError()
        if value != value.quantize(CENT):
            raise InvalidAmountError("L'importo può avere al massimo due decimali")
        if value > MAX_PAYMENT_AMOUNT:
            raise InvalidAmountError(f"L'importo non può superare {MAX_PAYMENT_AMOUNT}")
        return value.quantize(CENT)
