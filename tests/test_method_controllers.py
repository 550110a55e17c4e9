import asyncio
from decimal import Decimal

import pytest

from method_controllers import CardPaymentController, CashPaymentController, VoucherPaymentController
from payment_errors import ErrorCode
from payment_models import PaymentMethodType


def test_quick_amounts_round_up_to_multiple_of_five(service):
    controller = CashPaymentController(service, Decimal('37'), on_success=lambda *a: None)
    assert controller.quick_amounts == [Decimal('40'), Decimal('20'), Decimal('50'), Decimal('100'), Decimal('200')]


def test_quick_amounts_small_value_and_duplicates(service):
    small = CashPaymentController(service, Decimal('7.50'), on_success=lambda *a: None)
    assert small.quick_amounts[0] == Decimal('7.50')
    assert small.quick_amounts[1:] == [Decimal(v) for v in (5, 10, 20, 50, 100, 200)]

    near_base = CashPaymentController(service, Decimal('48'), on_success=lambda *a: None)
    assert near_base.quick_amounts == [Decimal('50'), Decimal('100'), Decimal('200')]

    exact = CashPaymentController(service, Decimal('50'), on_success=lambda *a: None)
    assert exact.quick_amounts == [Decimal('50'), Decimal('100'), Decimal('200')]


def test_cash_rejects_insufficient_amount_before_service(service, store):
    calls = []
    controller = CashPaymentController(service, Decimal('50'), on_success=lambda *a: calls.append(a))
    assert asyncio.run(controller.process('30')) is None
    assert controller.error == 'O valor pago deve ser maior ou igual ao valor da compra'
    assert len(store) == 0
    assert calls == []
    assert controller.change_for('30') == Decimal('0')


def test_cash_success_reports_change(service):
    calls = []
    controller = CashPaymentController(service, Decimal('50'), on_success=lambda *a: calls.append(a), reference='PED-3')
    response = asyncio.run(controller.process('100'))
    assert response.success
    assert controller.status == 'success'
    assert calls == [(response.transaction.id, Decimal('50'))]
    assert response.transaction.description == 'Pagamento em dinheiro (PED-3)'


def test_card_installment_selection(service):
    controller = CardPaymentController(service, Decimal('300'), on_success=lambda tx_id: None, max_installments=10)
    assert [o.count for o in controller.installment_options] == list(range(1, 11))
    controller.select_installments(3)
    with pytest.raises(ValueError):
        controller.select_installments(11)

    controller.select_type('debit')
    assert controller.installments == 1
    with pytest.raises(ValueError):
        controller.select_installments(2)


def test_card_without_installments_allows_single_payment(service):
    controller = CardPaymentController(service, Decimal('80'), on_success=lambda tx_id: None, allow_installments=False)
    assert [o.count for o in controller.installment_options] == [1]


def test_card_process_calls_success(service):
    successes = []
    controller = CardPaymentController(service, Decimal('300'), on_success=successes.append)
    controller.select_installments(3)
    response = asyncio.run(controller.process('4242 4242 4242 4242'))
    assert response.success
    assert successes == [response.transaction.id]
    assert response.transaction.type == PaymentMethodType.credit
    assert response.transaction.card_info.installments == 3


def test_voucher_error_goes_to_on_error(service):
    errors = []
    controller = VoucherPaymentController(service, Decimal('25'), on_success=lambda tx_id: None, on_error=errors.append)
    response = asyncio.run(controller.process('1234'))
    assert not response.success
    assert response.error.code == ErrorCode.INVALID_PAYMENT_INPUT
    assert controller.status == 'error'
    assert errors == [controller.error]

    with pytest.raises(ValueError):
        controller.select_type('gift')
