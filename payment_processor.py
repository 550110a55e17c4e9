"""
Orquestra o fluxo de pagamento de um pedido:
seleção do método -> processamento -> pagamento concluído.
"""
import dataclasses
import logging
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from method_controllers import CardPaymentController, CashPaymentController, VoucherPaymentController
from payment_models import Customer, PaymentMethodType, PaymentTransaction, to_money
from pix_controller import PixPaymentController
from receipts import CompanyInfo, render_receipt

logger = logging.getLogger(__name__)


class ProcessorStep(str, Enum):
    method_selection = 'method-selection'
    payment_processing = 'payment-processing'
    payment_complete = 'payment-complete'


class PaymentProcessor:
    def __init__(
        self,
        service,
        amount,
        on_payment_complete: Callable[[PaymentTransaction], None],
        reference: Optional[str] = None,
        customer: Optional[Customer] = None,
        order_items=None,
        company: Optional[CompanyInfo] = None,
        on_cancel: Optional[Callable[[], None]] = None,
        max_installments: int = 12,
        pix_options: Optional[dict] = None,
    ):
        self.service = service
        self.amount = to_money(amount)
        self.on_payment_complete = on_payment_complete
        self.reference = reference
        self.customer = customer
        self.order_items = order_items or []
        self.company = company
        self.on_cancel = on_cancel
        self.max_installments = max_installments
        self.pix_options = pix_options or {}

        self.step = ProcessorStep.method_selection
        self.payment_method: Optional[PaymentMethodType] = None
        self.controller = None
        self.transaction: Optional[PaymentTransaction] = None
        self.error: Optional[str] = None
        self.change_amount = Decimal('0')

    def select_method(self, method):
        if self.step != ProcessorStep.method_selection:
            raise RuntimeError(f"Seleção de método indisponível na etapa {self.step.value}")
        method = PaymentMethodType(method)

        common = dict(
            service=self.service,
            amount=self.amount,
            on_error=self.handle_payment_error,
            reference=self.reference,
        )
        if method == PaymentMethodType.pix:
            controller = PixPaymentController(
                on_success=self.handle_payment_success, customer=self.customer, **common, **self.pix_options
            )
        elif method in (PaymentMethodType.credit, PaymentMethodType.debit):
            controller = CardPaymentController(
                on_success=self.handle_payment_success,
                customer=self.customer,
                max_installments=self.max_installments,
                **common,
            )
            controller.select_type(method.value)
        elif method == PaymentMethodType.cash:
            controller = CashPaymentController(on_success=self.handle_payment_success, **common)
        elif method == PaymentMethodType.voucher:
            controller = VoucherPaymentController(on_success=self.handle_payment_success, customer=self.customer, **common)
        else:
            raise ValueError(f"Método de pagamento não suportado: {method.value}")

        self.payment_method = method
        self.controller = controller
        self.error = None
        self.step = ProcessorStep.payment_processing
        return controller

    async def go_back(self) -> None:
        if self.step != ProcessorStep.payment_processing:
            return
        if isinstance(self.controller, PixPaymentController):
            await self.controller.close()
        self.step = ProcessorStep.method_selection
        self.payment_method = None
        self.controller = None
        self.error = None

    async def cancel(self) -> None:
        if isinstance(self.controller, PixPaymentController):
            await self.controller.close()
        if self.on_cancel:
            self.on_cancel()

    def handle_payment_success(self, transaction_id: str, change: Optional[Decimal] = None) -> None:
        if self.step == ProcessorStep.payment_complete:
            return
        logger.info(f"Pagamento bem-sucedido: {transaction_id}")

        result = self.controller.transaction if self.controller else None
        if result is None or result.id != transaction_id:
            result = self.service.store.find_by_id(transaction_id)
        if result is None:
            self.handle_payment_error('Transação não encontrada')
            return

        # Known order context fills what the method result does not carry
        display = dataclasses.replace(
            result,
            customer=result.customer or self.customer,
            reference=result.reference or self.reference,
            metadata=dict(result.metadata),
        )
        if change is not None:
            self.change_amount = change

        self.transaction = display
        self.step = ProcessorStep.payment_complete
        self.on_payment_complete(display)

    def handle_payment_error(self, message: str) -> None:
        logger.error(f"Erro no pagamento: {message}")
        self.error = message

    def receipt(self) -> Optional[str]:
        if self.transaction is None:
            return None
        return render_receipt(
            self.transaction,
            company=self.company,
            order_items=self.order_items,
            order_reference=self.reference,
        )
