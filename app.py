import asyncio
import hmac
import logging
import os
import time

import click
from dotenv import load_dotenv
from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager, UserMixin, login_required
from flask_migrate import Migrate
from flask_talisman import Talisman

from config import PaymentSettings
from installments import calculate_installments
from payment_errors import ErrorCode, InvalidPaymentInput
from payment_gateway import get_gateway, verify_hmac_signature
from payment_models import (
    CardPaymentInput,
    CashPaymentInput,
    Customer,
    PixPaymentInput,
    VoucherPaymentInput,
    to_money,
)
from payment_service import PaymentService
from transaction_store import SqlAlchemyTransactionStore, db

# ----------------------------------------------------------------------
# 1. CONFIGURAÇÃO DE LOGGING
# ----------------------------------------------------------------------

LOG_FILE = os.getenv('PAYMENTS_LOG_FILE', 'payments.log')
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),  # Grava logs em arquivo para auditoria
        logging.StreamHandler()         # Mostra logs no console
    ]
)
logger = logging.getLogger(__name__)

load_dotenv()

# Inicialização de extensões (vinculadas ao app em create_app)
limiter = Limiter(key_func=get_remote_address)
login_manager = LoginManager()
migrate = Migrate()

payments = Blueprint('payments', __name__)

STATUS_BY_ERROR_CODE = {
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.INVALID_PAYMENT_INPUT: 400,
    ErrorCode.PIX_DISABLED: 403,
    ErrorCode.CARD_DISABLED: 403,
    ErrorCode.VOUCHER_DISABLED: 403,
    ErrorCode.API_COMMUNICATION_ERROR: 502,
}

WEBHOOK_STATUSES = {
    'approved': True,
    'confirmed': True,
    'denied': False,
    'failed': False,
}


# ----------------------------------------------------------------------
# 2. AUXILIARES
# ----------------------------------------------------------------------

def sanitize_for_log(value, maxlen: int = 120) -> str:
    s = str(value)
    s = s.replace('\n', '\\n').replace('\r', '\\r').replace('\t', ' ')
    if len(s) > maxlen:
        return s[:maxlen] + '...'
    return s


def run_async(coro):
    return asyncio.run(coro)


def get_payment_service() -> PaymentService:
    if 'payment_service' not in g:
        g.payment_service = PaymentService(
            SqlAlchemyTransactionStore(),
            current_app.extensions['payment_gateway'],
            current_app.extensions['payment_settings'],
        )
    return g.payment_service


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidPaymentInput('Corpo da requisição deve ser um objeto JSON')
    return data


def _int_field(data: dict, name: str, default: int) -> int:
    value = data.get(name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPaymentInput(f'Valor inválido para {name}', {'field': name})


def _respond(response, success_status: int = 200):
    if response.success:
        return jsonify(response.to_dict()), success_status
    return jsonify(response.to_dict()), STATUS_BY_ERROR_CODE.get(response.error.code, 500)


# ----------------------------------------------------------------------
# 3. AUTENTICAÇÃO DO OPERADOR
# ----------------------------------------------------------------------

class Operator(UserMixin):
    def __init__(self, operator_id: str):
        self.id = operator_id


@login_manager.request_loader
def load_operator_from_request(req):
    expected = current_app.config.get('OPERATOR_API_KEY')
    provided = req.headers.get('X-API-KEY')
    if not expected or not provided:
        return None
    if hmac.compare_digest(provided, expected):
        return Operator('operator')
    return None


@login_manager.unauthorized_handler
def unauthorized():
    logger.warning(f"Acesso NEGADO sem chave de operador válida: {request.path}")
    return {'status': 'unauthorized'}, 401


# ----------------------------------------------------------------------
# 4. ROTAS DE PAGAMENTO
# ----------------------------------------------------------------------

@payments.route('/health', methods=['GET'])
def health():
    return {'ok': True}


@payments.route('/payments/installments', methods=['GET'])
@login_required
def installments():
    amount = to_money(request.args.get('amount'))
    settings = current_app.extensions['payment_settings']
    max_installments = request.args.get('max', default=settings.max_installments, type=int)
    max_installments = max(1, min(max_installments, settings.max_installments))
    options = calculate_installments(amount, max_installments)
    return {'amount': f"{amount:.2f}", 'options': [option.to_dict() for option in options]}


@payments.route('/payments/pix', methods=['POST'])
@login_required
@limiter.limit("30 per minute")
def create_pix_payment():
    data = _json_body()
    expires_in = data.get('expires_in')
    response = run_async(get_payment_service().process_pix_payment(PixPaymentInput(
        amount=data.get('amount'),
        description=data.get('description'),
        reference=data.get('reference'),
        expires_in=_int_field(data, 'expires_in', 0) if expires_in is not None else None,
        customer=Customer.from_dict(data.get('customer')),
        metadata=data.get('metadata'),
    )))
    return _respond(response, 201)


@payments.route('/payments/card', methods=['POST'])
@login_required
@limiter.limit("30 per minute")
def create_card_payment():
    data = _json_body()
    response = run_async(get_payment_service().process_card_payment(CardPaymentInput(
        amount=data.get('amount'),
        installments=_int_field(data, 'installments', 1),
        type=data.get('type', 'credit'),
        card_number=data.get('card_number'),
        description=data.get('description'),
        reference=data.get('reference'),
        customer=Customer.from_dict(data.get('customer')),
        metadata=data.get('metadata'),
    )))
    return _respond(response, 201)


@payments.route('/payments/cash', methods=['POST'])
@login_required
@limiter.limit("30 per minute")
def create_cash_payment():
    data = _json_body()
    amount = to_money(data.get('amount'))
    amount_paid = to_money(data.get('amount_paid'), 'amount_paid')
    if amount_paid < amount:
        raise InvalidPaymentInput('O valor pago deve ser maior ou igual ao valor da compra', {'field': 'amount_paid'})
    response = run_async(get_payment_service().process_cash_payment(CashPaymentInput(
        amount=amount,
        amount_paid=amount_paid,
        description=data.get('description'),
        reference=data.get('reference'),
        metadata=data.get('metadata'),
    )))
    return _respond(response, 201)


@payments.route('/payments/voucher', methods=['POST'])
@login_required
@limiter.limit("30 per minute")
def create_voucher_payment():
    data = _json_body()
    response = run_async(get_payment_service().process_voucher_payment(VoucherPaymentInput(
        amount=data.get('amount'),
        voucher_type=data.get('voucher_type', 'meal'),
        card_number=data.get('card_number'),
        description=data.get('description'),
        reference=data.get('reference'),
        customer=Customer.from_dict(data.get('customer')),
        metadata=data.get('metadata'),
    )))
    return _respond(response, 201)


@payments.route('/payments/<transaction_id>', methods=['GET'])
@login_required
def transaction_status(transaction_id):
    return _respond(run_async(get_payment_service().check_transaction_status(transaction_id)))


@payments.route('/payments/<transaction_id>/cancel', methods=['POST'])
@login_required
def cancel_payment(transaction_id):
    reason = (request.get_json(silent=True) or {}).get('reason')
    logger.info(f"Cancelamento solicitado tx_id={transaction_id} motivo={sanitize_for_log(reason or '')}")
    return _respond(run_async(get_payment_service().cancel_transaction(transaction_id, reason)))


@payments.route('/payments/<transaction_id>/refund', methods=['POST'])
@login_required
def refund_payment(transaction_id):
    reason = (request.get_json(silent=True) or {}).get('reason')
    logger.info(f"Estorno solicitado tx_id={transaction_id} motivo={sanitize_for_log(reason or '')}")
    return _respond(run_async(get_payment_service().refund_transaction(transaction_id, reason)))


@payments.route('/payments/<transaction_id>/receipt', methods=['GET'])
@login_required
def payment_receipt(transaction_id):
    result = run_async(get_payment_service().generate_receipt(transaction_id))
    if not result['success']:
        return result, STATUS_BY_ERROR_CODE.get(result['error']['code'], 500)
    return Response(result['receipt'], mimetype='text/plain; charset=utf-8')


@payments.route('/payments/config-check', methods=['GET'])
@login_required
def config_check():
    return run_async(get_payment_service().check_configuration())


@payments.route('/webhook/pix', methods=['POST'])
@limiter.limit("120 per minute")
def pix_webhook():
    # Confirmações de PIX enviadas pelo gateway.
    # Prefer signature check (HMAC SHA256) via 'X-GATEWAY-SIGNATURE'; fallback to shared header secret 'X-WEBHOOK-SECRET'.
    signature_header = request.headers.get('X-GATEWAY-SIGNATURE')
    header_secret = request.headers.get('X-WEBHOOK-SECRET')
    secret = current_app.config.get('PAYMENT_WEBHOOK_SECRET')
    allow_unsigned = current_app.config.get('ALLOW_UNSIGNED_WEBHOOKS', False)

    if signature_header:
        if not verify_hmac_signature(request.get_data(), signature_header, secret or ''):
            logger.warning('Webhook chamada com assinatura inválida.')
            return {'status': 'forbidden'}, 403
    elif secret and header_secret:
        if not hmac.compare_digest(header_secret, secret):
            logger.warning('Webhook chamada com segredo inválido (header mismatch).')
            return {'status': 'forbidden'}, 403
    elif not allow_unsigned:
        logger.warning('Webhook chamada sem assinatura. Rejeitando.')
        return {'status': 'forbidden'}, 403

    data = request.get_json(silent=True) or {}
    # Anti-replay: require timestamp and nonce; skipped in TESTING
    if not current_app.config.get('TESTING'):
        tolerance_minutes = int(os.getenv('WEBHOOK_TOLERANCE_MINUTES', '5'))
        ts = data.get('timestamp')
        nonce = data.get('nonce')
        if not ts or not nonce:
            logger.warning('Webhook: faltando timestamp/nonce.')
            return {'status': 'bad_request', 'message': 'timestamp and nonce are required'}, 400
        try:
            ts = int(ts)
        except (TypeError, ValueError):
            return {'status': 'bad_request', 'message': 'invalid timestamp'}, 400
        if abs(int(time.time()) - ts) > tolerance_minutes * 60:
            logger.warning('Webhook: timestamp fora da janela tolerada.')
            return {'status': 'forbidden', 'message': 'stale or future timestamp'}, 403
        used_nonces = current_app.extensions['webhook_nonces']
        combo = f"{nonce}:{ts}"
        if combo in used_nonces:
            logger.warning('Webhook: nonce reutilizado (possível replay).')
            return {'status': 'forbidden', 'message': 'nonce replay detected'}, 403
        used_nonces.add(combo)

    tx_id = data.get('tx_id')
    status = data.get('status')
    if not tx_id or not status:
        logger.warning('Webhook chamada com payload incompleto.')
        return {'status': 'bad_request', 'message': 'tx_id and status are required'}, 400
    if status not in WEBHOOK_STATUSES:
        logger.warning(f'Webhook: status inválido recebido: {sanitize_for_log(status)}')
        return {'status': 'bad_request', 'message': 'status inválido'}, 400

    response = run_async(get_payment_service().settle_pix_transaction(tx_id, WEBHOOK_STATUSES[status]))
    if not response.success:
        return _respond(response)
    logger.info(f'Transação tx_id={tx_id} atualizada via webhook para status={response.transaction.status.value}')
    return {'status': 'ok', 'transaction_status': response.transaction.status.value}


@payments.app_errorhandler(InvalidPaymentInput)
def handle_invalid_input(e):
    logger.warning(f"Entrada inválida em {request.path}: {e.message}")
    return {'success': False, 'transaction': None, 'error': {'code': e.code, 'message': e.message, 'details': e.details}}, 400


@payments.app_errorhandler(404)
def handle_404(e):
    logger.info(f"404 Not Found: {request.path}")
    return {'status': 'not_found'}, 404


@payments.app_errorhandler(429)
def handle_429(e):
    logger.warning(f"429 Too Many Requests: {request.path}")
    return {'status': 'too_many_requests'}, 429


@payments.app_errorhandler(500)
def handle_500(e):
    # Log exception details with stack (server-side) but do not expose internals to client.
    logger.exception(f"Unhandled exception while handling request: {request.path}")
    return {'status': 'error', 'message': 'internal error'}, 500


# ----------------------------------------------------------------------
# 5. FÁBRICA DA APLICAÇÃO
# ----------------------------------------------------------------------

def create_app(config=None, settings=None, gateway=None):
    settings = settings or PaymentSettings.from_env()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///payments.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['RATELIMIT_STORAGE_URI'] = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    app.config['OPERATOR_API_KEY'] = settings.operator_api_key
    app.config['PAYMENT_WEBHOOK_SECRET'] = settings.webhook_secret
    app.config['ALLOW_UNSIGNED_WEBHOOKS'] = os.getenv('ALLOW_UNSIGNED_WEBHOOKS', 'false').lower() == 'true'
    app.config.update(config or {})
    if not app.config.get('SECRET_KEY'):
        raise RuntimeError("SECRET_KEY is not set; set environment variable SECRET_KEY")

    app.extensions['payment_settings'] = settings
    app.extensions['payment_gateway'] = gateway or get_gateway(settings)
    app.extensions['webhook_nonces'] = set()  # in-memory nonce store

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    login_manager.init_app(app)

    force_https = os.getenv('FORCE_HTTPS', 'false').lower() == 'true'
    Talisman(
        app,
        content_security_policy={'default-src': ["'none'"]},
        force_https=force_https,
        strict_transport_security=os.getenv('STRICT_HSTS', 'true').lower() == 'true',
    )

    app.register_blueprint(payments)

    @app.cli.command('expire-pix')
    def expire_pix():
        """Marca como expiradas as cobranças PIX pendentes vencidas."""
        expired = run_async(get_payment_service().expire_stale_transactions())
        for transaction in expired:
            logger.info(f"PIX expirado: {transaction.id}")
        click.echo(f"{len(expired)} transação(ões) PIX expirada(s).")

    with app.app_context():
        db.create_all()

    logger.info(f"Aplicação de pagamentos iniciada. Ambiente: {settings.environment}")
    return app


if __name__ == '__main__':
    # Em produção, use debug=False; control via env
    debug_mode = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    create_app().run(debug=debug_mode)
