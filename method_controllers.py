"""
Controladores de cartão, dinheiro e vale.

Cada controlador valida a entrada do operador, chama o PaymentService e
avisa o chamador por `on_success` / `on_error`.
"""
import logging
from decimal import ROUND_CEILING, Decimal
from typing import Callable, List, Optional

from installments import DEFAULT_MAX_INSTALLMENTS, calculate_installments
from payment_models import (
    CardPaymentInput,
    CashPaymentInput,
    Customer,
    PaymentResponse,
    VoucherPaymentInput,
    to_money,
)

logger = logging.getLogger(__name__)

QUICK_CASH_VALUES = [Decimal(v) for v in (5, 10, 20, 50, 100, 200)]


class _MethodController:
    def __init__(self, service, amount, on_success, on_error=None, reference=None, customer=None):
        self.service = service
        self.amount = to_money(amount)
        self.on_success = on_success
        self.on_error = on_error
        self.reference = reference
        self.customer = customer
        self.status = 'idle'  # idle | processing | success | error
        self.error: Optional[str] = None
        self.transaction = None

    @property
    def description(self) -> str:
        return f"Pagamento {self.reference or ''}".strip()

    def _handle_response(self, response: PaymentResponse, default_message: str) -> PaymentResponse:
        if response.success and response.transaction is not None:
            self.transaction = response.transaction
            self.status = 'success'
            return response
        message = response.error.message if response.error else default_message
        logger.error(f"{default_message}: {message}")
        self.status = 'error'
        self.error = message
        if self.on_error:
            self.on_error(message)
        return response


class CardPaymentController(_MethodController):
    def __init__(
        self,
        service,
        amount,
        on_success: Callable[[str], None],
        on_error: Optional[Callable[[str], None]] = None,
        reference: Optional[str] = None,
        customer: Optional[Customer] = None,
        allow_installments: bool = True,
        max_installments: int = DEFAULT_MAX_INSTALLMENTS,
    ):
        super().__init__(service, amount, on_success, on_error, reference, customer)
        self.allow_installments = allow_installments
        self.max_installments = max_installments if allow_installments else 1
        self.payment_type = 'credit'
        self.installments = 1

    @property
    def installment_options(self):
        return calculate_installments(self.amount, self.max_installments)

    def select_type(self, payment_type: str) -> None:
        if payment_type not in ('credit', 'debit'):
            raise ValueError(f"Tipo de cartão inválido: {payment_type}")
        self.payment_type = payment_type
        if payment_type == 'debit':
            self.installments = 1

    def select_installments(self, count: int) -> None:
        if self.payment_type != 'credit' and count != 1:
            raise ValueError('Parcelamento disponível apenas no crédito')
        if not 1 <= count <= self.max_installments:
            raise ValueError(f"Número de parcelas deve estar entre 1 e {self.max_installments}")
        self.installments = count

    async def process(self, card_number: Optional[str] = None) -> PaymentResponse:
        self.status = 'processing'
        self.error = None
        response = await self.service.process_card_payment(CardPaymentInput(
            amount=self.amount,
            type=self.payment_type,
            installments=self.installments,
            card_number=card_number,
            description=self.description,
            reference=self.reference,
            customer=self.customer,
        ))
        response = self._handle_response(response, 'Erro ao processar pagamento com cartão')
        if self.status == 'success':
            self.on_success(self.transaction.id)
        return response


class CashPaymentController(_MethodController):
    def __init__(self, service, amount, on_success: Callable[..., None], on_error=None, reference=None):
        super().__init__(service, amount, on_success, on_error, reference)

    @property
    def quick_amounts(self) -> List[Decimal]:
        values = [value for value in QUICK_CASH_VALUES if value > self.amount * Decimal('0.5')]
        if self.amount < 10:
            values.insert(0, self.amount)
        elif self.amount not in QUICK_CASH_VALUES:
            rounded = (self.amount / 5).to_integral_value(rounding=ROUND_CEILING) * 5
            values.insert(0, rounded)
        unique = []
        for value in values:
            if value not in unique:
                unique.append(value)
        return unique

    def change_for(self, amount_paid) -> Decimal:
        return max(Decimal('0'), to_money(amount_paid, 'amount_paid') - self.amount)

    async def process(self, amount_paid) -> Optional[PaymentResponse]:
        paid = to_money(amount_paid, 'amount_paid')
        if paid < self.amount:
            # Rejected here; the service itself accepts any amount paid
            self.error = 'O valor pago deve ser maior ou igual ao valor da compra'
            return None

        self.status = 'processing'
        self.error = None
        suffix = f" ({self.reference})" if self.reference else ''
        response = await self.service.process_cash_payment(CashPaymentInput(
            amount=self.amount,
            amount_paid=paid,
            description=f"Pagamento em dinheiro{suffix}",
            reference=self.reference,
        ))
        response = self._handle_response(response, 'Erro ao processar pagamento')
        if self.status == 'success':
            self.on_success(self.transaction.id, self.transaction.cash_info.change_amount)
        return response


class VoucherPaymentController(_MethodController):
    def __init__(self, service, amount, on_success, on_error=None, reference=None, customer=None):
        super().__init__(service, amount, on_success, on_error, reference, customer)
        self.voucher_type = 'meal'

    def select_type(self, voucher_type: str) -> None:
        if voucher_type not in ('meal', 'food'):
            raise ValueError(f"Tipo de vale inválido: {voucher_type}")
        self.voucher_type = voucher_type

    async def process(self, card_number: Optional[str] = None) -> PaymentResponse:
        self.status = 'processing'
        self.error = None
        response = await self.service.process_voucher_payment(VoucherPaymentInput(
            amount=self.amount,
            voucher_type=self.voucher_type,
            card_number=card_number,
            description=self.description or None,
            reference=self.reference,
            customer=self.customer,
        ))
        response = self._handle_response(response, 'Erro ao processar pagamento com vale')
        if self.status == 'success':
            self.on_success(self.transaction.id)
        return response
