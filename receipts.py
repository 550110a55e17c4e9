"""
Comprovante de pagamento em texto (formato de impressora térmica).
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from payment_models import PaymentMethodType, PaymentStatus, PaymentTransaction

METHOD_NAMES = {
    PaymentMethodType.pix: 'PIX',
    PaymentMethodType.credit: 'Cartão de Crédito',
    PaymentMethodType.debit: 'Cartão de Débito',
    PaymentMethodType.cash: 'Dinheiro',
    PaymentMethodType.transfer: 'Transferência',
    PaymentMethodType.voucher: 'Vale',
    PaymentMethodType.other: 'Outros',
}

STATUS_LINES = {
    PaymentStatus.approved: 'PAGAMENTO APROVADO',
    PaymentStatus.pending: 'PAGAMENTO PENDENTE',
    PaymentStatus.denied: 'PAGAMENTO NEGADO',
    PaymentStatus.cancelled: 'PAGAMENTO CANCELADO',
    PaymentStatus.refunded: 'PAGAMENTO ESTORNADO',
    PaymentStatus.expired: 'PAGAMENTO EXPIRADO',
}


@dataclass
class CompanyInfo:
    name: str = 'Controlaí Comércio'
    document: str = '12.345.678/0001-90'
    address: str = 'Rua Exemplo, 123 - Centro'
    phone: str = '(11) 99999-8888'


@dataclass
class OrderItem:
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return Decimal(self.unit_price) * self.quantity


def format_brl(value) -> str:
    """Formata um valor no padrão pt-BR: R$ 1.234,56"""
    amount = Decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    text = f"{abs(amount):,.2f}".replace(',', 'X').replace('.', ',').replace('X', '.')
    sign = '-' if amount < 0 else ''
    return f"{sign}R$ {text}"


def method_name(method) -> str:
    return METHOD_NAMES.get(PaymentMethodType(method), str(method))


def _line(left: str, right: str, width: int) -> str:
    space = max(1, width - len(left) - len(right))
    return f"{left}{' ' * space}{right}"


def _method_details(transaction: PaymentTransaction, width: int) -> list:
    lines = []
    card = transaction.card_info
    if card:
        lines.append(_line('Bandeira:', card.brand, width))
        lines.append(_line('Cartão:', f"**** {card.last_digits}", width))
        lines.append(_line('Autorização:', card.authorization_code, width))
        lines.append(_line('NSU:', card.nsu_host, width))
        if transaction.type == PaymentMethodType.credit and card.installments > 1:
            per_installment = transaction.amount / card.installments
            lines.append(_line('Parcelas:', f"{card.installments}x de {format_brl(per_installment)}", width))
    cash = transaction.cash_info
    if cash:
        lines.append(_line('Valor recebido:', format_brl(cash.amount_paid), width))
        lines.append(_line('Troco:', format_brl(cash.change_amount), width))
    pix = transaction.pix_info
    if pix:
        lines.append(_line('ID PIX:', pix.transaction_id, width))
        if transaction.completed_at:
            lines.append(_line('Pago em:', transaction.completed_at.strftime('%d/%m/%Y %H:%M:%S'), width))
    voucher = transaction.voucher_info
    if voucher:
        kind = 'Refeição' if voucher.voucher_type == 'meal' else 'Alimentação'
        lines.append(_line('Vale:', kind, width))
        if voucher.last_digits:
            lines.append(_line('Cartão:', f"**** {voucher.last_digits}", width))
    return lines


def render_receipt(
    transaction: PaymentTransaction,
    company: Optional[CompanyInfo] = None,
    order_items: Optional[Iterable[OrderItem]] = None,
    order_reference: Optional[str] = None,
    width: int = 40,
) -> str:
    company = company or CompanyInfo()
    rule = '-' * width
    lines = [
        company.name.center(width).rstrip(),
        f"CNPJ: {company.document}".center(width).rstrip(),
        company.address.center(width).rstrip(),
        f"Tel: {company.phone}".center(width).rstrip(),
        rule,
        'COMPROVANTE DE PAGAMENTO'.center(width).rstrip(),
        rule,
        _line('TRANSAÇÃO:', transaction.id, width),
        _line('DATA:', transaction.created_at.strftime('%d/%m/%Y %H:%M:%S'), width),
    ]
    reference = order_reference or transaction.reference
    if reference:
        lines.append(_line('PEDIDO:', reference, width))

    items = list(order_items or [])
    if items:
        lines.append(rule)
        for item in items:
            lines.append(_line(f"{item.quantity}x {item.name}"[: width - 14], format_brl(item.total), width))
            if item.quantity > 1:
                lines.append(f"   {format_brl(item.unit_price)} un.")

    lines.append(rule)
    lines.append(_line('TOTAL:', format_brl(transaction.amount), width))
    lines.append(_line('FORMA DE PAGAMENTO:', method_name(transaction.type), width))
    lines.extend(_method_details(transaction, width))
    lines.append(rule)
    lines.append(STATUS_LINES.get(transaction.status, transaction.status.value.upper()).center(width).rstrip())

    customer = transaction.customer
    if customer and (customer.name or customer.document):
        lines.append(rule)
        lines.append('CLIENTE')
        if customer.name:
            lines.append(customer.name)
        if customer.document:
            lines.append(f"CPF/CNPJ: {customer.document}")

    lines.append(rule)
    lines.append('Obrigado pela preferência!'.center(width).rstrip())
    return '\n'.join(lines) + '\n'
