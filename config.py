"""
Configuração do módulo de pagamentos.
Valores lidos de variáveis de ambiente (ou de um arquivo .env via python-dotenv).
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == 'true'


def _env_float(name: str, default: str) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return float(default)


def _env_int(name: str, default: str) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return int(default)


@dataclass
class PaymentSettings:
    environment: str = 'sandbox'
    pix_enabled: bool = True
    card_enabled: bool = True
    voucher_enabled: bool = True
    currency: str = 'BRL'
    pix_expires_in: int = 1800
    pix_key: str = ''
    merchant_name: str = 'CONTROLAI COMERCIO'
    merchant_city: str = 'SAO PAULO'
    max_installments: int = 12
    gateway_provider: str = 'sandbox'
    gateway_failure_rate: float = 0.1
    pix_settlement_probability: float = 0.3
    gateway_min_latency: float = 0.5
    gateway_max_latency: float = 1.5
    webhook_secret: str = ''
    operator_api_key: str = ''

    @property
    def is_sandbox(self) -> bool:
        return self.environment != 'production'

    @classmethod
    def from_env(cls) -> 'PaymentSettings':
        environment = 'production' if os.getenv('PAYMENT_ENVIRONMENT', 'sandbox').lower() == 'production' else 'sandbox'
        return cls(
            environment=environment,
            pix_enabled=_env_bool('PIX_ENABLED', 'true'),
            card_enabled=_env_bool('CARD_ENABLED', 'true'),
            voucher_enabled=_env_bool('VOUCHER_ENABLED', 'true'),
            currency=os.getenv('PAYMENT_CURRENCY', 'BRL'),
            pix_expires_in=_env_int('PIX_EXPIRES_IN', '1800'),
            pix_key=os.getenv('PIX_KEY', '').strip(),
            merchant_name=os.getenv('PIX_MERCHANT_NAME', 'CONTROLAI COMERCIO').strip(),
            merchant_city=os.getenv('PIX_MERCHANT_CITY', 'SAO PAULO').strip(),
            max_installments=_env_int('CARD_MAX_INSTALLMENTS', '12'),
            gateway_provider=os.getenv('GATEWAY_PROVIDER', 'sandbox').lower(),
            gateway_failure_rate=_env_float('GATEWAY_FAILURE_RATE', '0.1'),
            pix_settlement_probability=_env_float('PIX_SETTLEMENT_PROBABILITY', '0.3'),
            gateway_min_latency=_env_float('GATEWAY_MIN_LATENCY', '0.5'),
            gateway_max_latency=_env_float('GATEWAY_MAX_LATENCY', '1.5'),
            # Prefer the dedicated webhook secret; fall back to the provider secret
            webhook_secret=os.getenv('PAYMENT_WEBHOOK_SECRET') or os.getenv('GATEWAY_API_SECRET', ''),
            operator_api_key=os.getenv('OPERATOR_API_KEY', ''),
        )
