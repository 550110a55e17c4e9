"""
Error codes and internal exceptions of the payment core.
Service operations catch these and turn them into a PaymentResponse envelope.
"""


class ErrorCode:
    PIX_DISABLED = 'PIX_DISABLED'
    CARD_DISABLED = 'CARD_DISABLED'
    VOUCHER_DISABLED = 'VOUCHER_DISABLED'
    API_COMMUNICATION_ERROR = 'API_COMMUNICATION_ERROR'
    PIX_PROCESSING_ERROR = 'PIX_PROCESSING_ERROR'
    CARD_PROCESSING_ERROR = 'CARD_PROCESSING_ERROR'
    CASH_PROCESSING_ERROR = 'CASH_PROCESSING_ERROR'
    VOUCHER_PROCESSING_ERROR = 'VOUCHER_PROCESSING_ERROR'
    STATUS_CHECK_ERROR = 'STATUS_CHECK_ERROR'
    CANCELLATION_ERROR = 'CANCELLATION_ERROR'
    REFUND_ERROR = 'REFUND_ERROR'
    SETTLEMENT_ERROR = 'SETTLEMENT_ERROR'
    RECEIPT_ERROR = 'RECEIPT_ERROR'
    TRANSACTION_NOT_FOUND = 'TRANSACTION_NOT_FOUND'
    INVALID_STATE_TRANSITION = 'INVALID_STATE_TRANSITION'
    INVALID_PAYMENT_INPUT = 'INVALID_PAYMENT_INPUT'


class PaymentError(Exception):
    code = 'PAYMENT_ERROR'

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class GatewayCommunicationError(PaymentError):
    code = ErrorCode.API_COMMUNICATION_ERROR


class TransactionNotFound(PaymentError):
    code = ErrorCode.TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id):
        super().__init__('Transação não encontrada', {'transaction_id': transaction_id})
        self.transaction_id = transaction_id


class InvalidStateTransition(PaymentError):
    code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, transaction_id, current, target):
        super().__init__(
            f'Transação no status {current} não pode passar para {target}',
            {'transaction_id': transaction_id, 'current': current, 'target': target},
        )


class InvalidPaymentInput(PaymentError):
    code = ErrorCode.INVALID_PAYMENT_INPUT
