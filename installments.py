"""
Cálculo do menu de parcelamento para pagamentos com cartão de crédito.
Até 6 parcelas sem juros; acima disso, juros compostos de 1,99% ao mês
sobre as parcelas excedentes.
"""
from dataclasses import dataclass
from decimal import Decimal

INTEREST_FREE_LIMIT = 6
MONTHLY_INTEREST_RATE = Decimal('0.0199')
DEFAULT_MAX_INSTALLMENTS = 12


@dataclass(frozen=True)
class InstallmentOption:
    count: int
    per_installment: Decimal
    total: Decimal

    @property
    def has_interest(self) -> bool:
        return self.count > INTEREST_FREE_LIMIT

    def to_dict(self):
        return {
            'count': self.count,
            'per_installment': f"{self.per_installment:.2f}",
            'total': f"{self.total:.2f}",
            'has_interest': self.has_interest,
        }


def calculate_installments(amount, max_installments: int = DEFAULT_MAX_INSTALLMENTS) -> list:
    amount = Decimal(amount)
    interest_free = min(INTEREST_FREE_LIMIT, max_installments)
    options = []
    for i in range(1, max_installments + 1):
        total = amount
        if i > interest_free:
            total = amount * (1 + MONTHLY_INTEREST_RATE) ** (i - interest_free)
        options.append(InstallmentOption(count=i, per_installment=total / i, total=total))
    return options
