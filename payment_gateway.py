"""
Gateway adapter for payments.
Supports a sandbox implementation for PIX, cards and vouchers.
Designed so a production gateway implementation can be plugged in.
"""
import asyncio
import base64
import hashlib
import hmac
import io
import logging
import random
import re
import string
import unicodedata
from decimal import Decimal
from typing import Callable, Dict, Optional

import qrcode

from payment_errors import GatewayCommunicationError

logger = logging.getLogger(__name__)

CARD_BRANDS = ['Visa', 'Mastercard', 'Elo', 'American Express', 'Hipercard']
PIX_KEY_ALPHABET = string.ascii_lowercase + string.digits


# ----------------------------------------------------------------------
# PIX "BR Code" helpers
# ----------------------------------------------------------------------

def _emv_field(field_id: str, value: str) -> str:
    return f"{field_id}{len(value):02d}{value}"


def _sanitize_pix_text(value: str, max_len: int) -> str:
    normalized = unicodedata.normalize('NFKD', value or '').encode('ascii', 'ignore').decode('ascii')
    normalized = re.sub(r'[^A-Za-z0-9 ]+', '', normalized).strip().upper()
    return normalized[:max_len]


def crc16_ccitt(payload: str) -> str:
    crc = 0xFFFF
    for byte in payload.encode('utf-8'):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def build_pix_payload(pix_key: str, amount: Decimal, txid: str, merchant_name: str, merchant_city: str) -> str:
    """Monta o payload EMV (copia-e-cola) de uma cobrança PIX estática."""
    merchant_account_info = _emv_field('00', 'BR.GOV.BCB.PIX') + _emv_field('01', pix_key)
    txid_clean = _sanitize_pix_text(txid, max_len=25).replace(' ', '') or '***'
    payload = ''.join([
        _emv_field('00', '01'),
        _emv_field('26', merchant_account_info),
        _emv_field('52', '0000'),
        _emv_field('53', '986'),
        _emv_field('54', f"{Decimal(amount).quantize(Decimal('0.01')):.2f}"),
        _emv_field('58', 'BR'),
        _emv_field('59', _sanitize_pix_text(merchant_name, max_len=25) or 'EMPRESA'),
        _emv_field('60', _sanitize_pix_text(merchant_city, max_len=15) or 'SAO PAULO'),
        _emv_field('62', _emv_field('05', txid_clean)),
        '6304',
    ])
    return payload + crc16_ccitt(payload)


def render_qr_data_uri(data: str) -> str:
    qr = qrcode.QRCode(box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    qr_b64 = base64.b64encode(buffered.getvalue()).decode('ascii')
    return f"data:image/png;base64,{qr_b64}"


def verify_hmac_signature(payload_body: bytes, signature_header: str, secret: str) -> bool:
    """Verify HMAC SHA256 signature of payload body.
    signature_header: value from header, expected as hex string.
    secret: shared secret string
    """
    if not signature_header or not secret:
        return False
    computed_hmac = hmac.new(secret.encode('utf-8'), payload_body, hashlib.sha256).hexdigest()
    # Use compare_digest to avoid timing attacks
    return hmac.compare_digest(computed_hmac, signature_header)


# ----------------------------------------------------------------------
# Gateways
# ----------------------------------------------------------------------

class BaseGateway:
    processor_names = {
        'pix': 'PIX Demo',
        'card': 'TEF Demo',
        'voucher': 'VR/Sodexo/Alelo',
        'cash': 'Local',
    }

    async def create_pix(self, amount, txid) -> Dict:
        raise NotImplementedError()

    async def charge_card(self, amount, card_type, installments, card_number=None) -> Dict:
        raise NotImplementedError()

    async def authorize_voucher(self, amount, voucher_type, card_number=None) -> Dict:
        raise NotImplementedError()

    async def cancel(self, transaction_id) -> None:
        raise NotImplementedError()

    async def refund(self, transaction_id) -> None:
        raise NotImplementedError()

    async def ping(self) -> None:
        raise NotImplementedError()

    def should_settle(self, transaction) -> bool:
        """Whether a pending PIX charge is reported as paid on this status check."""
        raise NotImplementedError()


class SandboxGateway(BaseGateway):
    """Sandbox that simulates latency, communication failures and PIX settlement.

    `fail_when(operation)` and `settle_when(transaction)` override the
    probability-based defaults, so callers can force any branch.
    """

    def __init__(
        self,
        pix_key: str = '',
        merchant_name: str = 'CONTROLAI COMERCIO',
        merchant_city: str = 'SAO PAULO',
        failure_rate: float = 0.1,
        settlement_probability: float = 0.3,
        min_latency: float = 0.5,
        max_latency: float = 1.5,
        render_qr_images: bool = True,
        rng: Optional[random.Random] = None,
        fail_when: Optional[Callable[[str], bool]] = None,
        settle_when: Optional[Callable[[object], bool]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.pix_key = pix_key
        self.merchant_name = merchant_name
        self.merchant_city = merchant_city
        self.failure_rate = failure_rate
        self.settlement_probability = settlement_probability
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.render_qr_images = render_qr_images
        self.rng = rng or random.Random()
        self._fail_when = fail_when or (lambda operation: self.rng.random() < self.failure_rate)
        self._settle_when = settle_when or (lambda transaction: self.rng.random() < self.settlement_probability)
        self._sleep = sleep

    async def _simulate_call(self, operation: str, longer: bool = False) -> None:
        delay = self.rng.uniform(self.min_latency, self.max_latency) if self.max_latency > 0 else 0.0
        if longer:
            delay *= 2
        if delay > 0:
            await self._sleep(delay)
        if self._fail_when(operation):
            logger.warning(f"Sandbox: falha simulada na operação {operation}")
            raise GatewayCommunicationError('Falha simulada na comunicação com a API de pagamentos')

    def _random_digits(self, length: int) -> str:
        return ''.join(str(self.rng.randrange(10)) for _ in range(length))

    def generate_pix_key(self) -> str:
        return ''.join(self.rng.choice(PIX_KEY_ALPHABET) for _ in range(32))

    async def create_pix(self, amount, txid) -> Dict:
        await self._simulate_call('create_pix')
        key = self.pix_key or self.generate_pix_key()
        payload = build_pix_payload(key, amount, txid, self.merchant_name, self.merchant_city)
        return {
            'key': key,
            'qr_code_data': payload,
            'qr_code_image': render_qr_data_uri(payload) if self.render_qr_images else None,
        }

    async def charge_card(self, amount, card_type, installments, card_number=None) -> Dict:
        await self._simulate_call('charge_card', longer=True)
        digits = re.sub(r'\D', '', card_number or '')
        return {
            'brand': self.rng.choice(CARD_BRANDS),
            'last_digits': digits[-4:] if len(digits) >= 4 else self._random_digits(4),
            'authorization_code': self._random_digits(6),
            'nsu_host': self._random_digits(12),
            'nsu_local': self._random_digits(10),
        }

    async def authorize_voucher(self, amount, voucher_type, card_number=None) -> Dict:
        await self._simulate_call('authorize_voucher')
        digits = re.sub(r'\D', '', card_number or '')
        return {'last_digits': digits[-4:] if digits else None}

    async def cancel(self, transaction_id) -> None:
        await self._simulate_call('cancel')

    async def refund(self, transaction_id) -> None:
        await self._simulate_call('refund')

    async def ping(self) -> None:
        await self._simulate_call('ping')

    def should_settle(self, transaction) -> bool:
        return self._settle_when(transaction)


# Simple factory to select gateway by settings
def get_gateway(settings) -> BaseGateway:
    provider = (settings.gateway_provider or 'sandbox').lower()
    if provider != 'sandbox':
        logger.warning(f"Gateway '{provider}' não disponível; usando sandbox.")
    return SandboxGateway(
        pix_key=settings.pix_key,
        merchant_name=settings.merchant_name,
        merchant_city=settings.merchant_city,
        # Communication failures are only injected in sandbox mode
        failure_rate=settings.gateway_failure_rate if settings.is_sandbox else 0.0,
        settlement_probability=settings.pix_settlement_probability,
        min_latency=settings.gateway_min_latency,
        max_latency=settings.gateway_max_latency,
    )
