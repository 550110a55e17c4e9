"""
Pagamento dividido: um total quitado por várias formas de pagamento.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from payment_errors import InvalidPaymentInput
from payment_models import PaymentMethodType, PaymentStatus, PaymentTransaction, to_money
from receipts import format_brl


@dataclass
class SplitPart:
    method: PaymentMethodType
    amount: Decimal
    transaction: Optional[PaymentTransaction] = None

    @property
    def is_paid(self) -> bool:
        return self.transaction is not None and self.transaction.status == PaymentStatus.approved


class SplitPayment:
    def __init__(self, total_amount):
        self.total_amount = to_money(total_amount)
        self.parts: List[SplitPart] = []

    @property
    def allocated(self) -> Decimal:
        return sum((part.amount for part in self.parts), Decimal('0'))

    @property
    def remaining(self) -> Decimal:
        return max(Decimal('0'), self.total_amount - self.allocated)

    @property
    def is_fully_allocated(self) -> bool:
        return self.remaining == 0

    @property
    def is_settled(self) -> bool:
        return self.is_fully_allocated and all(part.is_paid for part in self.parts)

    def add(self, method, amount) -> SplitPart:
        value = to_money(amount)
        if value <= 0:
            raise InvalidPaymentInput('Valor inválido', {'field': 'amount'})
        if value > self.remaining:
            raise InvalidPaymentInput(
                f'O valor não pode exceder o valor restante ({format_brl(self.remaining)})', {'field': 'amount'}
            )
        part = SplitPart(method=PaymentMethodType(method), amount=value)
        self.parts.append(part)
        return part

    def remove(self, index: int) -> SplitPart:
        part = self.parts[index]
        if part.transaction is not None:
            raise InvalidPaymentInput('Pagamento já processado não pode ser removido', {'index': index})
        return self.parts.pop(index)

    def attach(self, index: int, transaction: PaymentTransaction) -> None:
        part = self.parts[index]
        if transaction.type != part.method and not (
            part.method in (PaymentMethodType.credit, PaymentMethodType.debit)
            and transaction.type in (PaymentMethodType.credit, PaymentMethodType.debit)
        ):
            raise InvalidPaymentInput('Transação não corresponde ao método da parte', {'index': index})
        if transaction.amount != part.amount:
            raise InvalidPaymentInput('Valor da transação difere do valor da parte', {'index': index})
        part.transaction = transaction
