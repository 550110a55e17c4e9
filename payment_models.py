"""
Data shapes shared by the payment core: transactions, method-specific info,
operation inputs and the response envelope.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from payment_errors import InvalidPaymentInput


class PaymentMethodType(str, Enum):
    pix = 'pix'
    cash = 'cash'
    credit = 'credit'
    debit = 'debit'
    transfer = 'transfer'
    voucher = 'voucher'
    other = 'other'


class PaymentStatus(str, Enum):
    initialized = 'initialized'
    processing = 'processing'
    approved = 'approved'
    denied = 'denied'
    cancelled = 'cancelled'
    refunded = 'refunded'
    pending = 'pending'
    expired = 'expired'


TERMINAL_STATUSES = frozenset({
    PaymentStatus.approved,
    PaymentStatus.denied,
    PaymentStatus.cancelled,
    PaymentStatus.expired,
    PaymentStatus.refunded,
})

ALLOWED_TRANSITIONS = {
    PaymentStatus.initialized: frozenset({
        PaymentStatus.processing, PaymentStatus.pending, PaymentStatus.approved, PaymentStatus.denied,
    }),
    PaymentStatus.processing: frozenset({PaymentStatus.approved, PaymentStatus.denied}),
    PaymentStatus.pending: frozenset({
        PaymentStatus.approved, PaymentStatus.denied, PaymentStatus.expired, PaymentStatus.cancelled,
    }),
    PaymentStatus.approved: frozenset({PaymentStatus.cancelled, PaymentStatus.refunded}),
    PaymentStatus.denied: frozenset(),
    PaymentStatus.cancelled: frozenset(),
    PaymentStatus.refunded: frozenset(),
    PaymentStatus.expired: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def to_money(value, field_name: str = 'amount') -> Decimal:
    """Converte valores monetários (str, int, float ou Decimal) para Decimal."""
    if isinstance(value, bool) or value is None:
        raise InvalidPaymentInput(f'Valor inválido para {field_name}', {'field': field_name})
    try:
        amount = Decimal(str(value).strip().replace(',', '.'))
    except (InvalidOperation, ValueError):
        raise InvalidPaymentInput(f'Valor inválido para {field_name}', {'field': field_name})
    if not amount.is_finite():
        raise InvalidPaymentInput(f'Valor inválido para {field_name}', {'field': field_name})
    return amount


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Customer:
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    document: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'email': self.email, 'document': self.document}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['Customer']:
        if not data:
            return None
        return cls(
            id=data.get('id'),
            name=data.get('name'),
            email=data.get('email'),
            document=data.get('document'),
        )


@dataclass
class ProcessorResponse:
    """Gateway echo. Informational only."""
    code: str
    message: str
    processor_name: str
    raw: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message, 'processor_name': self.processor_name, 'raw': self.raw}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['ProcessorResponse']:
        if not data:
            return None
        return cls(data['code'], data['message'], data['processor_name'], data.get('raw'))


# ----------------------------------------------------------------------
# Method-specific info. Exactly one variant per transaction, keyed by type.
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PixTransactionInfo:
    qr_code_data: str
    expires_at: datetime
    key: str
    transaction_id: str
    qr_code_image: Optional[str] = None
    payment_link_url: Optional[str] = None

    kind = 'pix'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'qr_code_data': self.qr_code_data,
            'qr_code_image': self.qr_code_image,
            'expires_at': _iso(self.expires_at),
            'key': self.key,
            'transaction_id': self.transaction_id,
            'payment_link_url': self.payment_link_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PixTransactionInfo':
        return cls(
            qr_code_data=data['qr_code_data'],
            expires_at=_parse_dt(data['expires_at']),
            key=data['key'],
            transaction_id=data['transaction_id'],
            qr_code_image=data.get('qr_code_image'),
            payment_link_url=data.get('payment_link_url'),
        )


@dataclass(frozen=True)
class CardTransactionInfo:
    brand: str
    last_digits: str
    authorization_code: str
    nsu_host: str
    nsu_local: str
    installments: int = 1
    cardholder_name: Optional[str] = None
    receipt_data: Optional[str] = None

    kind = 'card'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'brand': self.brand,
            'last_digits': self.last_digits,
            'authorization_code': self.authorization_code,
            'nsu_host': self.nsu_host,
            'nsu_local': self.nsu_local,
            'installments': self.installments,
            'cardholder_name': self.cardholder_name,
            'receipt_data': self.receipt_data,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CardTransactionInfo':
        return cls(
            brand=data['brand'],
            last_digits=data['last_digits'],
            authorization_code=data['authorization_code'],
            nsu_host=data['nsu_host'],
            nsu_local=data['nsu_local'],
            installments=int(data.get('installments') or 1),
            cardholder_name=data.get('cardholder_name'),
            receipt_data=data.get('receipt_data'),
        )


@dataclass(frozen=True)
class CashTransactionInfo:
    amount_paid: Decimal
    change_amount: Decimal

    kind = 'cash'

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'amount_paid': str(self.amount_paid), 'change_amount': str(self.change_amount)}

    @classmethod
    def from_dict(cls, data: dict) -> 'CashTransactionInfo':
        return cls(amount_paid=Decimal(data['amount_paid']), change_amount=Decimal(data['change_amount']))


@dataclass(frozen=True)
class VoucherTransactionInfo:
    voucher_type: str  # meal | food
    last_digits: Optional[str] = None

    kind = 'voucher'

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'voucher_type': self.voucher_type, 'last_digits': self.last_digits}

    @classmethod
    def from_dict(cls, data: dict) -> 'VoucherTransactionInfo':
        return cls(voucher_type=data['voucher_type'], last_digits=data.get('last_digits'))


MethodInfo = Union[PixTransactionInfo, CardTransactionInfo, CashTransactionInfo, VoucherTransactionInfo]

METHOD_INFO_TYPES = {
    PaymentMethodType.pix: PixTransactionInfo,
    PaymentMethodType.credit: CardTransactionInfo,
    PaymentMethodType.debit: CardTransactionInfo,
    PaymentMethodType.cash: CashTransactionInfo,
    PaymentMethodType.voucher: VoucherTransactionInfo,
}

_INFO_BY_KIND = {info_type.kind: info_type for info_type in METHOD_INFO_TYPES.values()}


# ----------------------------------------------------------------------
# Transaction
# ----------------------------------------------------------------------

_IMMUTABLE_FIELDS = frozenset({'id', 'type', 'amount', 'currency', 'created_at', 'method_info'})


@dataclass
class PaymentTransaction:
    id: str
    type: PaymentMethodType
    status: PaymentStatus
    amount: Decimal
    currency: str
    created_at: datetime
    updated_at: datetime
    method_info: Optional[MethodInfo] = None
    completed_at: Optional[datetime] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    processor_response: Optional[ProcessorResponse] = None
    customer: Optional[Customer] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        expected = METHOD_INFO_TYPES.get(self.type)
        if expected is None:
            if self.method_info is not None:
                raise ValueError(f'{self.type.value} transactions carry no method info')
        elif not isinstance(self.method_info, expected):
            raise ValueError(f'{self.type.value} transactions require {expected.__name__}')

    def __setattr__(self, name, value):
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f'{name} is immutable once the transaction is created')
        super().__setattr__(name, value)

    @property
    def pix_info(self) -> Optional[PixTransactionInfo]:
        return self.method_info if isinstance(self.method_info, PixTransactionInfo) else None

    @property
    def card_info(self) -> Optional[CardTransactionInfo]:
        return self.method_info if isinstance(self.method_info, CardTransactionInfo) else None

    @property
    def cash_info(self) -> Optional[CashTransactionInfo]:
        return self.method_info if isinstance(self.method_info, CashTransactionInfo) else None

    @property
    def voucher_info(self) -> Optional[VoucherTransactionInfo]:
        return self.method_info if isinstance(self.method_info, VoucherTransactionInfo) else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'status': self.status.value,
            'amount': str(self.amount),
            'currency': self.currency,
            'description': self.description,
            'reference': self.reference,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'completed_at': _iso(self.completed_at),
            'method_info': self.method_info.to_dict() if self.method_info else None,
            'processor_response': self.processor_response.to_dict() if self.processor_response else None,
            'customer': self.customer.to_dict() if self.customer else None,
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PaymentTransaction':
        info_data = data.get('method_info')
        method_info = _INFO_BY_KIND[info_data['kind']].from_dict(info_data) if info_data else None
        return cls(
            id=data['id'],
            type=PaymentMethodType(data['type']),
            status=PaymentStatus(data['status']),
            amount=Decimal(data['amount']),
            currency=data['currency'],
            created_at=_parse_dt(data['created_at']),
            updated_at=_parse_dt(data['updated_at']),
            method_info=method_info,
            completed_at=_parse_dt(data.get('completed_at')),
            description=data.get('description'),
            reference=data.get('reference'),
            processor_response=ProcessorResponse.from_dict(data.get('processor_response')),
            customer=Customer.from_dict(data.get('customer')),
            metadata=dict(data.get('metadata') or {}),
        )


# ----------------------------------------------------------------------
# Operation inputs
# ----------------------------------------------------------------------

@dataclass
class PixPaymentInput:
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    expires_in: Optional[int] = None  # seconds
    customer: Optional[Customer] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class CardPaymentInput:
    amount: Decimal
    installments: int = 1
    type: str = 'credit'
    card_number: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    customer: Optional[Customer] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class CashPaymentInput:
    amount: Decimal
    amount_paid: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class VoucherPaymentInput:
    amount: Decimal
    voucher_type: str = 'meal'
    card_number: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    customer: Optional[Customer] = None
    metadata: Optional[Dict[str, Any]] = None


# ----------------------------------------------------------------------
# Response envelope
# ----------------------------------------------------------------------

@dataclass
class ErrorInfo:
    code: str
    message: str
    details: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message, 'details': self.details}


@dataclass
class PaymentResponse:
    success: bool
    transaction: Optional[PaymentTransaction] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, transaction: PaymentTransaction) -> 'PaymentResponse':
        return cls(success=True, transaction=transaction)

    @classmethod
    def fail(cls, code: str, message: str, details=None, transaction=None) -> 'PaymentResponse':
        return cls(success=False, transaction=transaction, error=ErrorInfo(code, message, details))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': self.success,
            'transaction': self.transaction.to_dict() if self.transaction else None,
        }
        if self.error:
            data['error'] = self.error.to_dict()
        return data
