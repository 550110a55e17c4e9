import asyncio
from decimal import Decimal

from conftest import make_gateway
from config import PaymentSettings
from payment_models import PaymentStatus
from payment_service import PaymentService, TransactionIdGenerator
from pix_controller import PixPaymentController, format_remaining


def build(store, clock, settle_when=None, **controller_options):
    checks = []

    def settle(transaction):
        checks.append(clock())
        return settle_when(transaction) if settle_when else False

    service = PaymentService(
        store,
        make_gateway(settle_when=settle),
        PaymentSettings(),
        clock=clock,
        id_generator=TransactionIdGenerator(clock),
    )
    successes, errors = [], []
    controller = PixPaymentController(
        service,
        Decimal('20'),
        on_success=successes.append,
        on_error=errors.append,
        clock=clock,
        sleep=clock.sleep,
        **controller_options,
    )
    return service, controller, checks, successes, errors


def test_format_remaining():
    assert format_remaining(1800) == '30:00'
    assert format_remaining(65) == '01:05'
    assert format_remaining(-3) == '00:00'


def test_timer_expiry_stops_polling(store, clock):
    async def scenario():
        service, controller, checks, successes, _ = build(store, clock, expires_in=5)
        response = await controller.start()
        assert response.success
        assert controller.remaining_time == 5
        assert controller.timers_running

        await clock.advance(6)
        assert controller.remaining_time == 0
        assert controller.expired
        assert not controller.timers_running

        status = await service.check_transaction_status(controller.transaction.id)
        assert status.transaction.status == PaymentStatus.pending
        assert successes == []
        await controller.close()

    asyncio.run(scenario())


def test_polls_every_five_seconds_until_expiry(store, clock):
    async def scenario():
        _, controller, checks, _, _ = build(store, clock, expires_in=12)
        await controller.start()
        start = clock()

        await clock.advance(30)
        assert [(t - start).total_seconds() for t in checks] == [5.0, 10.0]
        assert controller.remaining_time == 0
        assert not controller.timers_running

    asyncio.run(scenario())


def test_success_fires_once_and_stops_timers(store, clock):
    async def scenario():
        attempts = []

        def second_check_settles(transaction):
            attempts.append(transaction.id)
            return len(attempts) >= 2

        _, controller, checks, successes, _ = build(store, clock, settle_when=second_check_settles)
        await controller.start()

        await clock.advance(12)
        assert successes == [controller.transaction.id]
        assert controller.succeeded
        assert not controller.timers_running
        remaining = controller.remaining_time

        # A late manual check after success does nothing
        assert await controller.check_payment_status() is None
        await clock.advance(60)
        assert successes == [controller.transaction.id]
        assert len(checks) == 2
        assert controller.remaining_time == remaining

    asyncio.run(scenario())


def test_second_start_keeps_the_running_charge(store, clock):
    async def scenario():
        _, controller, checks, _, _ = build(store, clock)
        first = await controller.start()
        countdown, poll = controller._countdown_task, controller._poll_task

        second = await controller.start()
        assert second.transaction.id == first.transaction.id
        assert (controller._countdown_task, controller._poll_task) == (countdown, poll)
        assert len(store.list_by_status(PaymentStatus.pending)) == 1

        await clock.advance(5)
        assert len(checks) == 1
        await controller.close()
        assert countdown.done() and poll.done()

    asyncio.run(scenario())


def test_close_cancels_both_timers(store, clock):
    async def scenario():
        _, controller, checks, successes, _ = build(store, clock)
        await controller.start()
        await clock.advance(3)

        await controller.close()
        assert not controller.timers_running
        await clock.advance(60)
        assert checks == []
        assert successes == []

    asyncio.run(scenario())


def test_no_poll_after_manual_cancel(store, clock):
    async def scenario():
        _, controller, checks, successes, errors = build(store, clock, settle_when=lambda transaction: True)
        await controller.start()
        await clock.advance(2)

        response = await controller.cancel('Cliente desistiu')
        assert response.success
        assert controller.transaction.status == PaymentStatus.cancelled
        assert not controller.timers_running

        await clock.advance(30)
        assert checks == []
        assert successes == []
        assert errors == []
        assert await controller.check_payment_status() is None

    asyncio.run(scenario())


def test_polling_stops_when_transaction_cancelled_elsewhere(store, clock):
    async def scenario():
        service, controller, checks, successes, _ = build(store, clock)
        await controller.start()
        await service.cancel_transaction(controller.transaction.id)

        await clock.advance(6)
        assert controller.transaction.status == PaymentStatus.cancelled
        assert not controller.timers_running
        assert successes == []
        await clock.advance(30)
        assert checks == []

    asyncio.run(scenario())


def test_start_reports_gateway_failure(store, clock):
    async def scenario():
        service = PaymentService(
            store,
            make_gateway(fail_when=lambda operation: True),
            PaymentSettings(),
            clock=clock,
        )
        errors = []
        controller = PixPaymentController(
            service, Decimal('20'), on_success=lambda tx_id: None, on_error=errors.append, clock=clock, sleep=clock.sleep
        )
        response = await controller.start()
        assert not response.success
        assert controller.transaction is None
        assert not controller.timers_running
        assert errors == ['Falha simulada na comunicação com a API de pagamentos']

    asyncio.run(scenario())
