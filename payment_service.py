"""
Serviço de processamento de pagamentos.

Emite, consulta, cancela e estorna transações de cada método. Todas as
operações públicas devolvem um PaymentResponse em vez de lançar exceções.
"""
import asyncio
import logging
import re
import threading
import weakref
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from config import PaymentSettings
from installments import INTEREST_FREE_LIMIT, MONTHLY_INTEREST_RATE, calculate_installments
from payment_errors import (
    ErrorCode,
    GatewayCommunicationError,
    InvalidPaymentInput,
    InvalidStateTransition,
    PaymentError,
    TransactionNotFound,
)
from payment_gateway import BaseGateway
from payment_models import (
    TERMINAL_STATUSES,
    CardPaymentInput,
    CardTransactionInfo,
    CashPaymentInput,
    CashTransactionInfo,
    PaymentMethodType,
    PaymentResponse,
    PaymentStatus,
    PaymentTransaction,
    PixPaymentInput,
    PixTransactionInfo,
    ProcessorResponse,
    VoucherPaymentInput,
    VoucherTransactionInfo,
    can_transition,
    to_money,
)
from receipts import render_receipt
from transaction_store import TransactionStore

logger = logging.getLogger(__name__)

VOUCHER_TYPES = ('meal', 'food')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionIdGenerator:
    """Ids no formato {PREFIXO}{timestamp em ms}; nunca repete um timestamp já emitido."""

    def __init__(self, clock=utcnow):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self, prefix: str) -> str:
        with self._lock:
            stamp = int(self._clock().timestamp() * 1000)
            if stamp <= self._last:
                stamp = self._last + 1
            self._last = stamp
        return f"{prefix}{stamp}"


DEFAULT_ID_GENERATOR = TransactionIdGenerator()


class PaymentService:
    def __init__(
        self,
        store: TransactionStore,
        gateway: BaseGateway,
        settings: Optional[PaymentSettings] = None,
        clock=utcnow,
        id_generator: Optional[TransactionIdGenerator] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings or PaymentSettings()
        self._clock = clock
        self._ids = id_generator or DEFAULT_ID_GENERATOR
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Emissão
    # ------------------------------------------------------------------

    async def process_pix_payment(self, data: PixPaymentInput) -> PaymentResponse:
        try:
            if not self.settings.pix_enabled:
                return PaymentResponse.fail(ErrorCode.PIX_DISABLED, 'Pagamento via PIX não está habilitado')

            amount = self._positive_amount(data.amount)
            expires_in = self.settings.pix_expires_in if data.expires_in is None else int(data.expires_in)
            if expires_in <= 0:
                raise InvalidPaymentInput('Tempo de expiração do PIX deve ser positivo', {'field': 'expires_in'})

            logger.info(f"Processando pagamento PIX: R$ {amount:.2f}")
            transaction_id = self._ids.next_id('PIX')
            try:
                charge = await self.gateway.create_pix(amount, transaction_id)
            except GatewayCommunicationError as exc:
                return self._gateway_failure(exc)

            now = self._clock()
            transaction = PaymentTransaction(
                id=transaction_id,
                type=PaymentMethodType.pix,
                status=PaymentStatus.pending,
                amount=amount,
                currency=self.settings.currency,
                created_at=now,
                updated_at=now,
                method_info=PixTransactionInfo(
                    qr_code_data=charge['qr_code_data'],
                    qr_code_image=charge.get('qr_code_image'),
                    expires_at=now + timedelta(seconds=expires_in),
                    key=charge['key'],
                    transaction_id=transaction_id,
                ),
                description=data.description or 'Pagamento via PIX',
                reference=data.reference,
                processor_response=ProcessorResponse('00', 'Sucesso', self.gateway.processor_names['pix']),
                customer=data.customer,
                metadata=dict(data.metadata or {}),
            )
            self.store.save(transaction)
            logger.info(f"PIX gerado. TX ID: {transaction.id}. Expira em {expires_in}s")
            return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception('Erro ao processar pagamento PIX')
            return PaymentResponse.fail(ErrorCode.PIX_PROCESSING_ERROR, str(exc) or 'Erro ao processar pagamento PIX')

    async def process_card_payment(self, data: CardPaymentInput) -> PaymentResponse:
        try:
            if not self.settings.card_enabled:
                return PaymentResponse.fail(ErrorCode.CARD_DISABLED, 'Pagamento via cartão não está habilitado')

            amount = self._positive_amount(data.amount)
            if data.type not in (PaymentMethodType.credit.value, PaymentMethodType.debit.value):
                raise InvalidPaymentInput('Tipo de cartão deve ser credit ou debit', {'field': 'type'})
            card_type = PaymentMethodType(data.type)

            installments = 1
            if card_type == PaymentMethodType.credit:
                installments = 1 if data.installments is None else int(data.installments)
                if not 1 <= installments <= self.settings.max_installments:
                    raise InvalidPaymentInput(
                        f'Número de parcelas deve estar entre 1 e {self.settings.max_installments}',
                        {'field': 'installments'},
                    )

            logger.info(f"Processando pagamento com cartão {card_type.value}: R$ {amount:.2f} em {installments}x")
            try:
                authorization = await self.gateway.charge_card(amount, card_type.value, installments, data.card_number)
            except GatewayCommunicationError as exc:
                return self._gateway_failure(exc)

            metadata = dict(data.metadata or {})
            if installments > INTEREST_FREE_LIMIT:
                option = calculate_installments(amount, installments)[-1]
                metadata['installment_interest'] = {
                    'monthly_rate': str(MONTHLY_INTEREST_RATE),
                    'total': f"{option.total:.2f}",
                    'per_installment': f"{option.per_installment:.2f}",
                }

            now = self._clock()
            transaction = PaymentTransaction(
                id=self._ids.next_id('CARD'),
                type=card_type,
                status=PaymentStatus.approved,
                amount=amount,
                currency=self.settings.currency,
                created_at=now,
                updated_at=now,
                completed_at=now,
                method_info=CardTransactionInfo(
                    brand=authorization['brand'],
                    last_digits=authorization['last_digits'],
                    authorization_code=authorization['authorization_code'],
                    nsu_host=authorization['nsu_host'],
                    nsu_local=authorization['nsu_local'],
                    installments=installments,
                    cardholder_name=(data.customer.name if data.customer and data.customer.name else 'CLIENTE'),
                    receipt_data='SIMULAÇÃO DE COMPROVANTE TEF',
                ),
                description=data.description or f'Pagamento com cartão {card_type.value}',
                reference=data.reference,
                processor_response=ProcessorResponse('00', 'Transação autorizada', self.gateway.processor_names['card']),
                customer=data.customer,
                metadata=metadata,
            )
            self.store.save(transaction)
            logger.info(f"Cartão aprovado. TX ID: {transaction.id}. PAN (masked): **** {authorization['last_digits']}")
            return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception('Erro ao processar pagamento com cartão')
            return PaymentResponse.fail(ErrorCode.CARD_PROCESSING_ERROR, str(exc) or 'Erro ao processar pagamento com cartão')

    async def process_cash_payment(self, data: CashPaymentInput) -> PaymentResponse:
        # Insufficient amounts are rejected by the caller; here any amount_paid is accepted.
        try:
            amount = self._positive_amount(data.amount)
            amount_paid = to_money(data.amount_paid, 'amount_paid')
            change_amount = max(Decimal('0'), amount_paid - amount)

            logger.info(f"Processando pagamento em dinheiro: R$ {amount:.2f}")
            now = self._clock()
            transaction = PaymentTransaction(
                id=self._ids.next_id('CASH'),
                type=PaymentMethodType.cash,
                status=PaymentStatus.approved,
                amount=amount,
                currency=self.settings.currency,
                created_at=now,
                updated_at=now,
                completed_at=now,
                method_info=CashTransactionInfo(amount_paid=amount_paid, change_amount=change_amount),
                description=data.description or 'Pagamento em dinheiro',
                reference=data.reference,
                processor_response=ProcessorResponse('00', 'Processado localmente', self.gateway.processor_names['cash']),
                metadata=dict(data.metadata or {}),
            )
            self.store.save(transaction)
            return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception('Erro ao processar pagamento em dinheiro')
            return PaymentResponse.fail(ErrorCode.CASH_PROCESSING_ERROR, str(exc) or 'Erro ao processar pagamento em dinheiro')

    async def process_voucher_payment(self, data: VoucherPaymentInput) -> PaymentResponse:
        try:
            if not self.settings.voucher_enabled:
                return PaymentResponse.fail(ErrorCode.VOUCHER_DISABLED, 'Pagamento com vale não está habilitado')

            amount = self._positive_amount(data.amount)
            if data.voucher_type not in VOUCHER_TYPES:
                raise InvalidPaymentInput('Tipo de vale deve ser meal ou food', {'field': 'voucher_type'})
            if data.card_number and len(re.sub(r'\D', '', data.card_number)) < 16:
                raise InvalidPaymentInput(
                    'Número de cartão inválido. Deve conter pelo menos 16 dígitos', {'field': 'card_number'}
                )

            logger.info(f"Processando pagamento com vale {data.voucher_type}: R$ {amount:.2f}")
            try:
                authorization = await self.gateway.authorize_voucher(amount, data.voucher_type, data.card_number)
            except GatewayCommunicationError as exc:
                return self._gateway_failure(exc)

            kind = 'refeição' if data.voucher_type == 'meal' else 'alimentação'
            now = self._clock()
            transaction = PaymentTransaction(
                id=self._ids.next_id('VOUCHER-'),
                type=PaymentMethodType.voucher,
                status=PaymentStatus.approved,
                amount=amount,
                currency=self.settings.currency,
                created_at=now,
                updated_at=now,
                completed_at=now,
                method_info=VoucherTransactionInfo(voucher_type=data.voucher_type, last_digits=authorization.get('last_digits')),
                description=data.description or f'Pagamento via vale {kind}',
                reference=data.reference,
                processor_response=ProcessorResponse('00', 'Aprovado', self.gateway.processor_names['voucher']),
                customer=data.customer,
                metadata=dict(data.metadata or {}),
            )
            self.store.save(transaction)
            return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception('Erro ao processar pagamento com vale')
            return PaymentResponse.fail(ErrorCode.VOUCHER_PROCESSING_ERROR, str(exc) or 'Erro ao processar pagamento com vale')

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def check_transaction_status(self, transaction_id: str) -> PaymentResponse:
        try:
            logger.info(f"Consultando status da transação: {transaction_id}")
            async with self._lock_for(transaction_id):
                transaction = self._get(transaction_id)
                if (
                    transaction.type == PaymentMethodType.pix
                    and transaction.status == PaymentStatus.pending
                    and not self._is_expired(transaction)
                    and self.gateway.should_settle(transaction)
                ):
                    self._transition(transaction, PaymentStatus.approved)
                    self.store.save(transaction)
                    logger.info(f"PIX confirmado. TX ID: {transaction.id}")
                return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception(f"Erro ao consultar status da transação {transaction_id}")
            return PaymentResponse.fail(ErrorCode.STATUS_CHECK_ERROR, str(exc) or 'Erro ao consultar status da transação')

    async def cancel_transaction(self, transaction_id: str, reason: Optional[str] = None) -> PaymentResponse:
        try:
            logger.info(f"Cancelando transação: {transaction_id}")
            async with self._lock_for(transaction_id):
                transaction = self._get(transaction_id)
                self._ensure_transition(transaction, PaymentStatus.cancelled)
                if transaction.type != PaymentMethodType.cash:
                    try:
                        await self.gateway.cancel(transaction.id)
                    except GatewayCommunicationError as exc:
                        return self._gateway_failure(exc, transaction)

                self._transition(transaction, PaymentStatus.cancelled)
                transaction.metadata = {
                    **transaction.metadata,
                    'cancellation_reason': reason or 'Solicitação do usuário',
                    'cancelled_at': transaction.updated_at.isoformat(),
                }
                self.store.save(transaction)
                return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception(f"Erro ao cancelar transação {transaction_id}")
            return PaymentResponse.fail(ErrorCode.CANCELLATION_ERROR, str(exc) or 'Erro ao cancelar transação')

    async def refund_transaction(self, transaction_id: str, reason: Optional[str] = None) -> PaymentResponse:
        try:
            logger.info(f"Estornando transação: {transaction_id}")
            async with self._lock_for(transaction_id):
                transaction = self._get(transaction_id)
                self._ensure_transition(transaction, PaymentStatus.refunded)
                if transaction.type != PaymentMethodType.cash:
                    try:
                        await self.gateway.refund(transaction.id)
                    except GatewayCommunicationError as exc:
                        return self._gateway_failure(exc, transaction)

                self._transition(transaction, PaymentStatus.refunded)
                transaction.metadata = {
                    **transaction.metadata,
                    'refund_reason': reason or 'Solicitação do usuário',
                    'refunded_at': transaction.updated_at.isoformat(),
                }
                self.store.save(transaction)
                return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception(f"Erro ao estornar transação {transaction_id}")
            return PaymentResponse.fail(ErrorCode.REFUND_ERROR, str(exc) or 'Erro ao estornar transação')

    async def settle_pix_transaction(self, transaction_id: str, approved: bool) -> PaymentResponse:
        """Out-of-band PIX confirmation (gateway webhook). Repeated notifications are idempotent."""
        target = PaymentStatus.approved if approved else PaymentStatus.denied
        try:
            async with self._lock_for(transaction_id):
                transaction = self._get(transaction_id)
                if transaction.type != PaymentMethodType.pix:
                    raise InvalidPaymentInput('Apenas transações PIX podem ser liquidadas', {'transaction_id': transaction_id})
                if transaction.status == target:
                    return PaymentResponse.ok(transaction)
                self._transition(transaction, target)
                self.store.save(transaction)
                logger.info(f"PIX {transaction.id} liquidado via webhook: {target.value}")
                return PaymentResponse.ok(transaction)
        except PaymentError as exc:
            return self._error_response(exc)
        except Exception as exc:
            logger.exception(f"Erro ao liquidar transação {transaction_id}")
            return PaymentResponse.fail(ErrorCode.SETTLEMENT_ERROR, str(exc) or 'Erro ao liquidar transação')

    async def expire_stale_transactions(self) -> List[PaymentTransaction]:
        expired = []
        for candidate in self.store.list_by_status(PaymentStatus.pending):
            if candidate.type != PaymentMethodType.pix or not self._is_expired(candidate):
                continue
            async with self._lock_for(candidate.id):
                transaction = self.store.find_by_id(candidate.id)
                if transaction is None or transaction.status != PaymentStatus.pending:
                    continue
                self._transition(transaction, PaymentStatus.expired)
                self.store.save(transaction)
                expired.append(transaction)
        if expired:
            logger.info(f"{len(expired)} transações PIX expiradas")
        return expired

    # ------------------------------------------------------------------
    # Recibos e configuração
    # ------------------------------------------------------------------

    async def generate_receipt(self, transaction_id: str, company=None, order_items=None) -> dict:
        try:
            transaction = self._get(transaction_id)
            return {'success': True, 'receipt': render_receipt(transaction, company=company, order_items=order_items)}
        except PaymentError as exc:
            return {'success': False, 'error': {'code': exc.code, 'message': exc.message}}
        except Exception as exc:
            logger.exception(f"Erro ao gerar recibo da transação {transaction_id}")
            return {'success': False, 'error': {'code': ErrorCode.RECEIPT_ERROR, 'message': str(exc) or 'Erro ao gerar recibo'}}

    async def check_configuration(self) -> dict:
        logger.info('Verificando configuração de pagamento')
        try:
            await self.gateway.ping()
        except GatewayCommunicationError as exc:
            return {'valid': False, 'issues': [exc.message]}

        issues = []
        settings = self.settings
        if not (settings.pix_enabled or settings.card_enabled or settings.voucher_enabled):
            issues.append('Nenhum método eletrônico de pagamento habilitado')
        if not settings.is_sandbox:
            if settings.pix_enabled and not settings.pix_key:
                issues.append('PIX_KEY não configurada para produção')
            if not settings.webhook_secret:
                issues.append('PAYMENT_WEBHOOK_SECRET não configurado para produção')
        return {'valid': not issues, 'issues': issues}

    # ------------------------------------------------------------------
    # Auxiliares
    # ------------------------------------------------------------------

    def _lock_for(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = self._locks[transaction_id] = asyncio.Lock()
        return lock

    def _get(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.store.find_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    def _positive_amount(self, value) -> Decimal:
        amount = to_money(value)
        if amount <= 0:
            raise InvalidPaymentInput('O valor do pagamento deve ser positivo.', {'field': 'amount'})
        return amount

    def _is_expired(self, transaction: PaymentTransaction) -> bool:
        pix = transaction.pix_info
        return pix is not None and pix.expires_at <= self._clock()

    def _ensure_transition(self, transaction: PaymentTransaction, target: PaymentStatus) -> None:
        if not can_transition(transaction.status, target):
            raise InvalidStateTransition(transaction.id, transaction.status.value, target.value)

    def _transition(self, transaction: PaymentTransaction, target: PaymentStatus) -> None:
        self._ensure_transition(transaction, target)
        now = self._clock()
        transaction.status = target
        transaction.updated_at = now
        if target in TERMINAL_STATUSES and transaction.completed_at is None:
            transaction.completed_at = now

    def _gateway_failure(self, exc: GatewayCommunicationError, transaction=None) -> PaymentResponse:
        logger.error(f"Falha de comunicação com o gateway: {exc.message}")
        return PaymentResponse.fail(
            ErrorCode.API_COMMUNICATION_ERROR,
            exc.message or 'Erro de comunicação com a API de pagamentos',
            exc.details,
            transaction=transaction,
        )

    def _error_response(self, exc: PaymentError) -> PaymentResponse:
        logger.warning(f"Operação de pagamento rejeitada ({exc.code}): {exc.message}")
        return PaymentResponse.fail(exc.code, exc.message, exc.details)
