"""
Fluxo de confirmação PIX.

Depois de gerar a cobrança, dois timers independentes rodam até a expiração:
uma contagem regressiva de 1 em 1 segundo (apenas exibição) e uma consulta
de status a cada 5 segundos. Ambos param juntos na expiração, na confirmação,
no cancelamento ou quando o controlador é fechado.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

from payment_models import TERMINAL_STATUSES, Customer, PaymentResponse, PaymentStatus, PixPaymentInput
from payment_service import utcnow

logger = logging.getLogger(__name__)


def format_remaining(total_seconds: int) -> str:
    minutes, seconds = divmod(max(0, int(total_seconds)), 60)
    return f"{minutes:02d}:{seconds:02d}"


class PixPaymentController:
    def __init__(
        self,
        service,
        amount,
        on_success: Callable[[str], None],
        on_error: Optional[Callable[[str], None]] = None,
        reference: Optional[str] = None,
        customer: Optional[Customer] = None,
        expires_in: int = 1800,
        poll_interval: float = 5.0,
        tick_interval: float = 1.0,
        clock=utcnow,
        sleep=asyncio.sleep,
    ):
        self.service = service
        self.amount = amount
        self.on_success = on_success
        self.on_error = on_error
        self.reference = reference
        self.customer = customer
        self.expires_in = expires_in
        self.poll_interval = poll_interval
        self.tick_interval = tick_interval
        self._clock = clock
        self._sleep = sleep

        self.transaction = None
        self.remaining_time = 0
        self.error: Optional[str] = None
        self.is_loading = False
        self.succeeded = False
        self.cancelled = False
        self._closed = False
        self._checking = False
        self._countdown_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def expired(self) -> bool:
        return self.transaction is not None and self.remaining_time <= 0

    @property
    def timers_running(self) -> bool:
        return any(task is not None and not task.done() for task in (self._countdown_task, self._poll_task))

    async def start(self) -> PaymentResponse:
        if self.transaction is not None:
            # Charge already issued; keep the running timers
            return PaymentResponse.ok(self.transaction)
        self.is_loading = True
        self.error = None
        try:
            response = await self.service.process_pix_payment(PixPaymentInput(
                amount=self.amount,
                description=f"Pagamento {self.reference or ''}".strip(),
                reference=self.reference,
                expires_in=self.expires_in,
                customer=self.customer,
            ))
        finally:
            self.is_loading = False

        if not response.success or response.transaction is None or response.transaction.pix_info is None:
            self._fail(response.error.message if response.error else 'Dados de PIX não encontrados na resposta')
            return response

        self.transaction = response.transaction
        remaining = (response.transaction.pix_info.expires_at - self._clock()).total_seconds()
        self.remaining_time = max(0, int(remaining))
        if self.remaining_time > 0 and not self._closed:
            self._countdown_task = asyncio.create_task(self._countdown())
            self._poll_task = asyncio.create_task(self._poll())
        return response

    async def check_payment_status(self) -> Optional[PaymentResponse]:
        if self.transaction is None or self._checking or self.succeeded or self.cancelled or self._closed:
            return None

        self._checking = True
        try:
            response = await self.service.check_transaction_status(self.transaction.id)
        finally:
            self._checking = False

        if not response.success or response.transaction is None:
            logger.warning(f"Erro ao verificar status do PIX {self.transaction.id}: {response.error.message if response.error else ''}")
            return response

        self.transaction = response.transaction
        status = response.transaction.status
        if status == PaymentStatus.approved:
            self._succeed()
        elif status in TERMINAL_STATUSES:
            # cancelled, expired or denied elsewhere: nothing left to wait for
            logger.info(f"PIX {self.transaction.id} encerrado com status {status.value}")
            self.stop()
        return response

    async def cancel(self, reason: Optional[str] = None) -> Optional[PaymentResponse]:
        if self.transaction is None:
            return None
        self.cancelled = True
        self.stop()
        response = await self.service.cancel_transaction(self.transaction.id, reason)
        if response.success:
            self.transaction = response.transaction
        else:
            self._fail(response.error.message)
        return response

    def stop(self) -> None:
        current = asyncio.current_task()
        for task in (self._countdown_task, self._poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def close(self) -> None:
        """Unmount: stop both timers and wait for them to finish."""
        self._closed = True
        self.stop()
        current = asyncio.current_task()
        for task in (self._countdown_task, self._poll_task):
            if task is not None and task is not current:
                with suppress(asyncio.CancelledError):
                    await task

    async def _countdown(self) -> None:
        while self.remaining_time > 0:
            await self._sleep(self.tick_interval)
            self.remaining_time = max(0, self.remaining_time - 1)
        logger.info(f"PIX {self.transaction.id} expirou sem confirmação")
        self.stop()

    async def _poll(self) -> None:
        while True:
            await self._sleep(self.poll_interval)
            if self.remaining_time <= 0 or self.succeeded or self.cancelled or self._closed:
                return
            await self.check_payment_status()
            if self.succeeded or self.cancelled or self.transaction.is_terminal:
                return

    def _succeed(self) -> None:
        if self.succeeded:
            return
        self.succeeded = True
        self.stop()
        self.on_success(self.transaction.id)

    def _fail(self, message: str) -> None:
        logger.error(f"Erro no pagamento PIX: {message}")
        self.error = message
        if self.on_error:
            self.on_error(message)
