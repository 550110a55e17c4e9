import asyncio
from decimal import Decimal

import pytest

from conftest import make_gateway
from config import PaymentSettings
from payment_errors import InvalidPaymentInput
from payment_models import CashPaymentInput, Customer, PaymentMethodType, PaymentStatus
from payment_processor import PaymentProcessor, ProcessorStep
from payment_service import PaymentService, TransactionIdGenerator
from receipts import OrderItem
from split_payment import SplitPayment


def test_cash_flow_completes_with_order_context(service):
    completed = []
    customer = Customer(name='João Silva')
    processor = PaymentProcessor(
        service,
        Decimal('50'),
        on_payment_complete=completed.append,
        reference='PED-42',
        customer=customer,
        order_items=[OrderItem('Café', 2, Decimal('5.00')), OrderItem('Pão de queijo', 1, Decimal('40.00'))],
    )
    controller = processor.select_method('cash')
    assert processor.step == ProcessorStep.payment_processing

    asyncio.run(controller.process('100'))
    assert processor.step == ProcessorStep.payment_complete
    assert processor.change_amount == Decimal('50')
    assert len(completed) == 1
    result = completed[0]
    assert result.status == PaymentStatus.approved
    assert result.reference == 'PED-42'
    assert result.customer == customer

    receipt = processor.receipt()
    assert 'PED-42' in receipt
    assert '2x Café' in receipt
    assert 'Troco:' in receipt
    assert 'João Silva' in receipt


def test_pix_flow_and_go_back(store, clock):
    async def scenario():
        service = PaymentService(
            store, make_gateway(), PaymentSettings(), clock=clock, id_generator=TransactionIdGenerator(clock)
        )
        processor = PaymentProcessor(
            service, Decimal('20'), on_payment_complete=lambda tx: None,
            pix_options={'clock': clock, 'sleep': clock.sleep},
        )
        controller = processor.select_method(PaymentMethodType.pix)
        await controller.start()
        assert controller.timers_running

        await processor.go_back()
        assert processor.step == ProcessorStep.method_selection
        assert processor.controller is None
        assert not controller.timers_running

        # The abandoned charge stays pending in the store
        assert store.find_by_id(controller.transaction.id).status == PaymentStatus.pending

    asyncio.run(scenario())


def test_pix_flow_completes_on_settlement(store, clock):
    async def scenario():
        service = PaymentService(
            store,
            make_gateway(settle_when=lambda transaction: True),
            PaymentSettings(),
            clock=clock,
            id_generator=TransactionIdGenerator(clock),
        )
        completed = []
        processor = PaymentProcessor(
            service, Decimal('20'), on_payment_complete=completed.append, reference='PED-9',
            pix_options={'clock': clock, 'sleep': clock.sleep},
        )
        controller = processor.select_method('pix')
        await controller.start()
        await clock.advance(5)

        assert processor.step == ProcessorStep.payment_complete
        assert [tx.status for tx in completed] == [PaymentStatus.approved]
        assert completed[0].reference == 'PED-9'
        assert not controller.timers_running

    asyncio.run(scenario())


def test_select_method_rules(service):
    processor = PaymentProcessor(service, Decimal('10'), on_payment_complete=lambda tx: None)
    with pytest.raises(ValueError):
        processor.select_method('transfer')

    controller = processor.select_method('debit')
    assert controller.payment_type == 'debit'
    with pytest.raises(RuntimeError):
        processor.select_method('cash')


def test_error_keeps_processing_step(service):
    processor = PaymentProcessor(service, Decimal('10'), on_payment_complete=lambda tx: None)
    controller = processor.select_method('voucher')
    asyncio.run(controller.process('123'))
    assert processor.step == ProcessorStep.payment_processing
    assert processor.error == controller.error
    assert processor.receipt() is None


def test_cancel_notifies_caller(service):
    cancelled = []
    processor = PaymentProcessor(service, Decimal('10'), on_payment_complete=lambda tx: None, on_cancel=lambda: cancelled.append(True))
    processor.select_method('cash')
    asyncio.run(processor.cancel())
    assert cancelled == [True]


def test_split_payment_allocation(service):
    split = SplitPayment('100')
    split.add('cash', '30')
    split.add('credit', '70')
    assert split.is_fully_allocated
    assert not split.is_settled
    with pytest.raises(InvalidPaymentInput):
        split.add('pix', '1')

    split.remove(1)
    assert split.remaining == Decimal('70')
    with pytest.raises(InvalidPaymentInput):
        split.add('pix', '0')
    split.add('debit', '70')

    cash = asyncio.run(service.process_cash_payment(CashPaymentInput(amount='30', amount_paid='50'))).transaction
    split.attach(0, cash)
    with pytest.raises(InvalidPaymentInput):
        split.remove(0)
    with pytest.raises(InvalidPaymentInput):
        split.attach(1, cash)

    processor = PaymentProcessor(service, Decimal('70'), on_payment_complete=lambda tx: None)
    card = processor.select_method('credit')
    response = asyncio.run(card.process())
    split.attach(1, response.transaction)
    assert split.is_settled
