"""
Integration tests per il gestore pagamenti.

Usano un database SQLite su file (vedi conftest) con eventi e coda
scontrini finti. Le verifiche leggono sempre con una sessione nuova.
"""

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AlreadyPaidError,
    AmountTooHighError,
    BusyError,
    ConflictError,
    InternalError,
    InvalidAmountError,
    NotFoundError,
    PermissionDeniedError,
)
from app.models import Order, OrderLine, Payment, PaymentHistory, Table
from app.schemas.order import OrderStatus, PaymentStatus
from app.schemas.payment import PaymentMethod
from app.services.audit_service import AuditService
from app.services.payment_allocator import PaymentAllocator


STANDARD_LINES = [("Acqua", 2, "5.00"), ("Margherita", 1, "10.00")]


async def load_order(session_factory, order_id) -> Order:
    async with session_factory() as session:
        return await session.get(Order, order_id)


async def load_lines(session_factory, order_id) -> list[OrderLine]:
    async with session_factory() as session:
        result = await session.execute(
            select(OrderLine)
            .where(OrderLine.order_id == order_id)
            .order_by(OrderLine.line_number)
        )
        return list(result.scalars().all())


async def load_payments(session_factory, order_id) -> list[Payment]:
    async with session_factory() as session:
        result = await session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())


async def load_table(session_factory, table_id) -> Table:
    async with session_factory() as session:
        return await session.get(Table, table_id)


async def count_history(session_factory, order_id) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(PaymentHistory).where(PaymentHistory.order_id == order_id)
        )


# ============================================================
# Tests per pay_by_amount
# ============================================================


class TestPayByAmount:
    """Tests per l'incasso a importo."""

    async def test_full_payment_closes_order_and_frees_table(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €20 su [2×€5, 1×€10]: ordinazione pagata e tavolo liberato."""
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(
            order.id, Decimal("20.00"), PaymentMethod.CASH, cashier, payer_name="Mario"
        )

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.order_status == OrderStatus.PAID
        assert result.settled_amount == Decimal("20.00")
        assert result.unallocated_amount == Decimal("0.00")
        assert result.remaining_unpaid_lines == 0
        assert result.remaining_amount == Decimal("0.00")
        assert result.table_released is True

        saved = await load_order(session_factory, order.id)
        assert saved.status == "paid"
        assert saved.payment_status == "fully_paid"
        assert saved.closed_at is not None

        lines = await load_lines(session_factory, order.id)
        assert all(line.is_paid for line in lines)
        assert all(line.paid_by == "Mario" for line in lines)

        table = await load_table(session_factory, order.table_id)
        assert table.status == "free"

    async def test_partial_payment_settles_oldest_line(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €10: saldata solo la riga più vecchia, stato partially_paid."""
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CARD, cashier)

        lines = await load_lines(session_factory, order.id)
        assert result.settled_line_ids == [lines[0].id]
        assert result.payment_status == PaymentStatus.PARTIALLY_PAID
        assert result.remaining_unpaid_lines == 1
        assert result.remaining_amount == Decimal("10.00")
        assert result.table_released is False
        assert [line.is_paid for line in lines] == [True, False]

        saved = await load_order(session_factory, order.id)
        assert saved.status == "delivered"
        assert saved.payment_status == "partially_paid"

        table = await load_table(session_factory, order.table_id)
        assert table.status == "occupied"

    async def test_amount_over_tolerance_rejected(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €25 con residuo €20: rifiutato (massimo €22), nulla scritto."""
        order = await order_factory(STANDARD_LINES)

        with pytest.raises(AmountTooHighError) as exc_info:
            await allocator.pay_by_amount(order.id, Decimal("25.00"), PaymentMethod.CASH, cashier)

        assert exc_info.value.extra["max_amount"] == "22.00"
        assert await load_payments(session_factory, order.id) == []
        assert not any(line.is_paid for line in await load_lines(session_factory, order.id))

    async def test_amount_at_tolerance_accepted_with_tip(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €22: accettato, €2 restano come mancia sul pagamento."""
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(order.id, Decimal("22.00"), PaymentMethod.CASH, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.unallocated_amount == Decimal("2.00")
        payments = await load_payments(session_factory, order.id)
        assert payments[0].amount == Decimal("22.00")

    async def test_cumulative_overpayment_rejected(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test i pagamenti senza righe saldate non superano il totale più la tolleranza."""
        order = await order_factory([("Menu degustazione", 1, "20.00")])

        # €2 non coprono la riga ma restano nel margine (€22 - €20)
        await allocator.pay_by_amount(order.id, Decimal("2.00"), PaymentMethod.CASH, cashier)

        with pytest.raises(AmountTooHighError) as exc_info:
            await allocator.pay_by_amount(order.id, Decimal("1.00"), PaymentMethod.CASH, cashier)
        assert exc_info.value.extra["max_unallocated"] == "0.00"

        # L'ordinazione resta saldabile: €2 + €20 = €22
        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        payments = await load_payments(session_factory, order.id)
        assert sum(p.amount for p in payments) == Decimal("22.00")

    async def test_leftover_blocking_remaining_lines_rejected(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €99 su [€10, €100]: saldata solo la prima riga, €89 renderebbero la seconda non saldabile."""
        order = await order_factory([("Antipasto", 1, "10.00"), ("Aragosta", 1, "100.00")])

        with pytest.raises(AmountTooHighError) as exc_info:
            await allocator.pay_by_amount(order.id, Decimal("99.00"), PaymentMethod.CASH, cashier)

        assert exc_info.value.extra["max_unallocated"] == "11.00"
        assert await load_payments(session_factory, order.id) == []
        assert not any(line.is_paid for line in await load_lines(session_factory, order.id))

        # Con €11 di mancia la seconda riga resta saldabile a importo
        first = await allocator.pay_by_amount(order.id, Decimal("21.00"), PaymentMethod.CASH, cashier)
        assert first.unallocated_amount == Decimal("11.00")

        second = await allocator.pay_by_amount(order.id, Decimal("100.00"), PaymentMethod.CARD, cashier)

        assert second.payment_status == PaymentStatus.FULLY_PAID
        payments = await load_payments(session_factory, order.id)
        assert sum(p.amount for p in payments) == Decimal("121.00")

    async def test_payment_settling_no_line_is_recorded(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test importo inferiore alla prima riga: pagamento registrato, nessuna riga saldata."""
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(order.id, Decimal("2.00"), PaymentMethod.CASH, cashier)

        assert result.settled_line_ids == []
        assert result.unallocated_amount == Decimal("2.00")
        assert result.payment_status == PaymentStatus.PARTIALLY_PAID
        payments = await load_payments(session_factory, order.id)
        assert len(payments) == 1
        assert payments[0].line_ids == []

    async def test_payment_settling_no_line_over_margin_rejected(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test €7 su [2×€5, 1×€10]: nessuna riga coperta e margine di soli €2, rifiutato."""
        order = await order_factory(STANDARD_LINES)

        with pytest.raises(AmountTooHighError):
            await allocator.pay_by_amount(order.id, Decimal("7.00"), PaymentMethod.CASH, cashier)

        assert await load_payments(session_factory, order.id) == []

    async def test_payment_record_and_audit(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test pagamento con righe saldate, operatore e voce di storico."""
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(
            order.id, Decimal("10.00"), PaymentMethod.CARD, cashier, payer_name="Anna"
        )

        payments = await load_payments(session_factory, order.id)
        assert len(payments) == 1
        payment = payments[0]
        assert payment.id == result.payment_id
        assert payment.method == "card"
        assert payment.payer_name == "Anna"
        assert payment.operator_id == cashier.id
        assert payment.line_ids == [str(i) for i in result.settled_line_ids]

        async with session_factory() as session:
            history = (
                await session.execute(select(PaymentHistory).where(PaymentHistory.order_id == order.id))
            ).scalar_one()
        assert history.payment_id == payment.id
        assert history.action == "create"
        assert history.operator_name == cashier.name
        assert history.previous_state["payment_status"] == "unpaid"
        assert history.new_state["payment_status"] == "partially_paid"

    async def test_second_payment_completes_order(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test due pagamenti parziali successivi chiudono l'ordinazione."""
        order = await order_factory(STANDARD_LINES)

        await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)
        result = await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CARD, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.table_released is True
        assert len(await load_payments(session_factory, order.id)) == 2
        assert await count_history(session_factory, order.id) == 2

    async def test_already_paid_rejected(self, allocator, order_factory, session_factory, cashier):
        """Test secondo incasso su ordinazione pagata: AlreadyPaid, nessun nuovo pagamento."""
        order = await order_factory(STANDARD_LINES)
        await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        with pytest.raises(AlreadyPaidError):
            await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert len(await load_payments(session_factory, order.id)) == 1

    async def test_table_kept_when_other_orders_active(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test tavolo non liberato se un'altra ordinazione attiva è aperta."""
        order = await order_factory(STANDARD_LINES, table_number="8")
        await order_factory([("Tiramisù", 1, "6.00")], table_number="8", status="in_progress")

        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.table_released is False
        table = await load_table(session_factory, order.table_id)
        assert table.status == "occupied"

    async def test_table_released_when_others_paid_or_cancelled(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test ordinazioni pagate o annullate non trattengono il tavolo."""
        order = await order_factory(STANDARD_LINES, table_number="9")
        await order_factory([("Caffè", 1, "1.50")], table_number="9", status="cancelled")

        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert result.table_released is True

    async def test_reserved_table_not_overwritten(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test tavolo già prenotato alla chiusura del conto: stato invariato."""
        order = await order_factory(STANDARD_LINES, table_number="10")
        async with session_factory() as session:
            table = await session.get(Table, order.table_id)
            table.status = "reserved"
            await session.commit()

        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.table_released is False
        table = await load_table(session_factory, order.table_id)
        assert table.status == "reserved"

    async def test_takeaway_order_without_table(
        self, allocator, order_factory, notifier, cashier
    ):
        """Test ordinazione d'asporto: nessun tavolo da liberare."""
        order = await order_factory(
            [("Pizza", 1, "8.00")],
            table_number=None,
            order_type="takeaway",
            customer_name="Rossi",
        )

        result = await allocator.pay_by_amount(
            order.id, Decimal("8.00"), PaymentMethod.CASH, cashier, payer_name="Luca"
        )

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert result.table_released is False
        kwargs = notifier.order_paid.call_args.kwargs
        assert kwargs["table_number"] is None
        assert kwargs["payer_name"] == "Luca"
        assert kwargs["customer_name"] == "Rossi"
        assert kwargs["order_type"] == "takeaway"

    async def test_unknown_order(self, allocator, cashier):
        with pytest.raises(NotFoundError):
            await allocator.pay_by_amount(uuid.uuid4(), Decimal("10.00"), PaymentMethod.CASH, cashier)

    async def test_cancelled_order_rejected(self, allocator, order_factory, cashier):
        order = await order_factory(STANDARD_LINES, status="cancelled")

        with pytest.raises(ConflictError) as exc_info:
            await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)

        assert exc_info.value.error_code == "ORDER_CANCELLED"


# ============================================================
# Tests per la validazione preliminare
# ============================================================


class TestPreconditions:
    """Tests per permessi e importo, verificati prima di accedere ai dati."""

    @pytest.mark.parametrize("amount", ["0", "-5.00", "10.001", "100000.00", "abc"])
    async def test_invalid_amount(self, allocator, order_factory, session_factory, cashier, amount):
        order = await order_factory(STANDARD_LINES)

        with pytest.raises(InvalidAmountError):
            await allocator.pay_by_amount(order.id, amount, PaymentMethod.CASH, cashier)

        assert await load_payments(session_factory, order.id) == []

    async def test_waiter_cannot_collect(self, notifier, receipt_queue, waiter):
        """Test il cameriere non può incassare: nessuna sessione aperta."""
        session_factory = AsyncMock()
        allocator = PaymentAllocator(
            session_factory=session_factory, notifier=notifier, receipt_queue=receipt_queue
        )

        with pytest.raises(PermissionDeniedError):
            await allocator.pay_by_amount(uuid.uuid4(), Decimal("10.00"), PaymentMethod.CASH, waiter)
        with pytest.raises(PermissionDeniedError):
            await allocator.pay_by_lines([uuid.uuid4()], PaymentMethod.CASH, waiter)

        session_factory.assert_not_called()
        notifier.order_paid.assert_not_called()

    async def test_manager_can_collect(self, allocator, order_factory, manager):
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.MIXED, manager)

        assert result.method == PaymentMethod.MIXED


# ============================================================
# Tests per pay_by_lines
# ============================================================


class TestPayByLines:
    """Tests per l'incasso di righe specifiche."""

    async def test_pay_selected_line(self, allocator, order_factory, session_factory, cashier):
        """Test pagamento della sola seconda riga: importo pari al suo costo."""
        order = await order_factory(STANDARD_LINES)
        lines = await load_lines(session_factory, order.id)

        result = await allocator.pay_by_lines([lines[1].id], PaymentMethod.CARD, cashier, payer_name="Sara")

        assert not result.is_partial
        outcome = result.outcomes[0]
        assert outcome.success
        assert outcome.result.amount == Decimal("10.00")
        assert outcome.result.settled_line_ids == [lines[1].id]
        assert outcome.result.payment_status == PaymentStatus.PARTIALLY_PAID

        saved_lines = await load_lines(session_factory, order.id)
        assert [line.is_paid for line in saved_lines] == [False, True]
        assert saved_lines[1].paid_by == "Sara"

    async def test_lines_across_orders(self, allocator, order_factory, session_factory, notifier, cashier):
        """Test righe di due ordinazioni: un pagamento per ordinazione."""
        first = await order_factory(STANDARD_LINES, table_number="1")
        second = await order_factory([("Birra", 2, "4.00")], table_number="2")
        first_lines = await load_lines(session_factory, first.id)
        second_lines = await load_lines(session_factory, second.id)

        result = await allocator.pay_by_lines(
            [first_lines[0].id, second_lines[0].id], PaymentMethod.CASH, cashier
        )

        assert [o.order_id for o in result.outcomes] == [first.id, second.id]
        assert all(o.success for o in result.outcomes)
        assert result.outcomes[0].result.amount == Decimal("10.00")
        assert result.outcomes[1].result.amount == Decimal("8.00")
        assert result.outcomes[1].result.payment_status == PaymentStatus.FULLY_PAID
        assert notifier.order_paid.await_count == 2

    async def test_partial_failure_keeps_committed_orders(
        self, allocator, order_factory, session_factory, cashier, monkeypatch
    ):
        """Test fallimento su una ordinazione: l'altra resta pagata, esito per ordinazione."""
        first = await order_factory(STANDARD_LINES, table_number="1")
        second = await order_factory([("Birra", 2, "4.00")], table_number="2")
        first_lines = await load_lines(session_factory, first.id)
        second_lines = await load_lines(session_factory, second.id)

        original_lock = allocator._lock_order

        async def lock_or_busy(db, order_id):
            if order_id == second.id:
                raise BusyError()
            return await original_lock(db, order_id)

        monkeypatch.setattr(allocator, "_lock_order", lock_or_busy)

        result = await allocator.pay_by_lines(
            [first_lines[0].id, second_lines[0].id], PaymentMethod.CASH, cashier
        )

        assert result.is_partial
        assert [o.success for o in result.outcomes] == [True, False]
        assert result.outcomes[1].error_code == "BUSY"
        assert len(await load_payments(session_factory, first.id)) == 1
        assert await load_payments(session_factory, second.id) == []
        assert not any(line.is_paid for line in await load_lines(session_factory, second.id))

    async def test_all_groups_failing_raises_first_error(
        self, allocator, order_factory, session_factory, cashier, monkeypatch
    ):
        order = await order_factory(STANDARD_LINES)
        lines = await load_lines(session_factory, order.id)

        async def always_busy(db, order_id):
            raise BusyError()

        monkeypatch.setattr(allocator, "_lock_order", always_busy)

        with pytest.raises(BusyError):
            await allocator.pay_by_lines([lines[0].id], PaymentMethod.CASH, cashier)

    async def test_empty_selection(self, allocator, cashier):
        with pytest.raises(InvalidAmountError):
            await allocator.pay_by_lines([], PaymentMethod.CASH, cashier)

    async def test_unknown_line(self, allocator, order_factory, session_factory, cashier):
        order = await order_factory(STANDARD_LINES)
        lines = await load_lines(session_factory, order.id)
        missing = uuid.uuid4()

        with pytest.raises(NotFoundError) as exc_info:
            await allocator.pay_by_lines([lines[0].id, missing], PaymentMethod.CASH, cashier)

        assert exc_info.value.extra["line_ids"] == [str(missing)]
        assert await load_payments(session_factory, order.id) == []

    async def test_already_paid_line(self, allocator, order_factory, session_factory, cashier):
        """Test riga già pagata nella selezione: AlreadyPaid, nulla scritto."""
        order = await order_factory(STANDARD_LINES)
        lines = await load_lines(session_factory, order.id)
        await allocator.pay_by_lines([lines[0].id], PaymentMethod.CASH, cashier)

        with pytest.raises(AlreadyPaidError):
            await allocator.pay_by_lines([lines[0].id, lines[1].id], PaymentMethod.CASH, cashier)

        assert len(await load_payments(session_factory, order.id)) == 1
        assert not (await load_lines(session_factory, order.id))[1].is_paid

    async def test_cumulative_cap_applies_to_lines(
        self, allocator, order_factory, session_factory, cashier
    ):
        """Test righe su ordinazione con €15 già incassati senza righe: €15 + €20 supera €22."""
        order = await order_factory([("Menu degustazione", 1, "20.00")])
        async with session_factory() as session:
            session.add(
                Payment(
                    order_id=order.id,
                    amount=Decimal("15.00"),
                    method="cash",
                    operator_id=cashier.id,
                    line_ids=[],
                )
            )
            await session.commit()
        lines = await load_lines(session_factory, order.id)

        with pytest.raises(AmountTooHighError) as exc_info:
            await allocator.pay_by_lines([lines[0].id], PaymentMethod.CARD, cashier)

        assert exc_info.value.extra["max_amount"] == "7.00"
        assert len(await load_payments(session_factory, order.id)) == 1
        assert not (await load_lines(session_factory, order.id))[0].is_paid

    async def test_duplicate_ids_paid_once(self, allocator, order_factory, session_factory, cashier):
        order = await order_factory(STANDARD_LINES)
        lines = await load_lines(session_factory, order.id)

        result = await allocator.pay_by_lines([lines[1].id, lines[1].id], PaymentMethod.CASH, cashier)

        assert result.outcomes[0].result.amount == Decimal("10.00")


# ============================================================
# Tests per la concorrenza
# ============================================================


class TestConcurrency:
    """Tests per incassi contemporanei sulla stessa ordinazione."""

    async def test_double_submit_is_rejected(self, allocator, order_factory, session_factory, cashier):
        """Test doppio invio del conto intero: un solo pagamento, l'altro AlreadyPaid o Busy."""
        order = await order_factory(STANDARD_LINES)

        results = await asyncio.gather(
            allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier),
            allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (AlreadyPaidError, BusyError))

        payments = await load_payments(session_factory, order.id)
        assert len(payments) == 1

    async def test_two_half_payments(self, allocator, order_factory, session_factory, cashier):
        """Test due metà in parallelo (con un tentativo in più su Busy): totale €20, una sola chiusura."""
        order = await order_factory([("Primo", 1, "10.00"), ("Secondo", 1, "10.00")])

        async def pay_half():
            try:
                return await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)
            except BusyError:
                return await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)

        results = await asyncio.gather(pay_half(), pay_half())

        payments = await load_payments(session_factory, order.id)
        assert sum(p.amount for p in payments) == Decimal("20.00")
        assert [r.payment_status for r in results].count(PaymentStatus.FULLY_PAID) == 1
        assert all(line.is_paid for line in await load_lines(session_factory, order.id))

        settled = [line_id for r in results for line_id in r.settled_line_ids]
        assert len(settled) == len(set(settled)) == 2


# ============================================================
# Tests per errori e side channel
# ============================================================


class TestFailures:
    """Tests per errori di persistenza e collaboratori esterni."""

    async def test_lock_contention_maps_to_busy(
        self, allocator, order_factory, session_factory, cashier, monkeypatch
    ):
        order = await order_factory(STANDARD_LINES)

        async def locked(db, order_id):
            raise OperationalError("SELECT ... FOR UPDATE NOWAIT", {}, Exception("could not obtain lock on row"))

        monkeypatch.setattr(allocator, "_lock_order", locked)

        with pytest.raises(BusyError) as exc_info:
            await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)

        assert exc_info.value.retryable is True

    async def test_other_database_error_maps_to_internal(
        self, allocator, order_factory, session_factory, cashier, monkeypatch
    ):
        order = await order_factory(STANDARD_LINES)

        async def broken(db, order_id):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(allocator, "_lock_order", broken)

        with pytest.raises(InternalError):
            await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)

        assert await load_payments(session_factory, order.id) == []

    async def test_transaction_timeout_maps_to_busy(
        self, allocator, order_factory, cashier, monkeypatch
    ):
        order = await order_factory(STANDARD_LINES)
        allocator.settings = allocator.settings.model_copy(update={"payment_transaction_timeout_ms": 50})

        async def slow(db, order_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(allocator, "_lock_order", slow)

        with pytest.raises(BusyError):
            await allocator.pay_by_amount(order.id, Decimal("10.00"), PaymentMethod.CASH, cashier)

    async def test_audit_failure_does_not_roll_back_payment(
        self, session_factory, notifier, receipt_queue, order_factory, cashier
    ):
        """Test errore nello storico: pagamento confermato, nessuna voce di storico."""

        class BrokenAudit(AuditService):
            async def record_payment(self, db, payment, operator, **kwargs):
                # Operatore senza nome: viola NOT NULL dentro il SAVEPOINT
                broken = operator.model_copy(update={"name": None})
                return await super().record_payment(db, payment, broken, **kwargs)

        allocator = PaymentAllocator(
            session_factory=session_factory,
            notifier=notifier,
            receipt_queue=receipt_queue,
            audit=BrokenAudit(),
        )
        order = await order_factory(STANDARD_LINES)

        result = await allocator.pay_by_amount(order.id, Decimal("20.00"), PaymentMethod.CASH, cashier)

        assert result.payment_status == PaymentStatus.FULLY_PAID
        assert len(await load_payments(session_factory, order.id)) == 1
        assert await count_history(session_factory, order.id) == 0

    async def test_events_and_receipts_after_commit(
        self, allocator, order_factory, notifier, receipt_queue, cashier
    ):
        """Test evento order:paid e scontrini inviati con i dati dell'ordinazione."""
        order = await order_factory(STANDARD_LINES, table_number="12")

        result = await allocator.pay_by_amount(
            order.id, Decimal("20.00"), PaymentMethod.CASH, cashier, payer_name="Mario"
        )

        notifier.order_paid.assert_awaited_once()
        kwargs = notifier.order_paid.call_args.kwargs
        assert kwargs["order_id"] == order.id
        assert kwargs["table_number"] == "12"
        assert kwargs["amount"] == Decimal("20.00")
        assert kwargs["payer_name"] == "Mario"
        assert kwargs["fully_paid"] is True

        receipt_queue.enqueue_payment_receipts.assert_awaited_once()
        assert receipt_queue.enqueue_payment_receipts.call_args.args[0] == result
        assert receipt_queue.enqueue_payment_receipts.call_args.kwargs["operator_name"] == cashier.name

    async def test_no_events_on_failure(self, allocator, order_factory, notifier, receipt_queue, cashier):
        order = await order_factory(STANDARD_LINES)

        with pytest.raises(AmountTooHighError):
            await allocator.pay_by_amount(order.id, Decimal("50.00"), PaymentMethod.CASH, cashier)

        notifier.order_paid.assert_not_called()
        receipt_queue.enqueue_payment_receipts.assert_not_called()
