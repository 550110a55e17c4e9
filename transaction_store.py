"""
Persistência de transações de pagamento.

Qualquer store precisa apenas de `save` (sobrescreve pelo id, sem duplicar)
e `find_by_id`. Escritas concorrentes convergem para a última gravação.
"""
import json
import logging
import threading
from typing import Dict, List, Optional

from flask_sqlalchemy import SQLAlchemy

from payment_models import PaymentStatus, PaymentTransaction

logger = logging.getLogger(__name__)

db = SQLAlchemy()


class PaymentRecord(db.Model):
    __tablename__ = 'payment_transaction'

    id = db.Column(db.String(64), primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)  # Use Numeric for monetary values
    currency = db.Column(db.String(3), nullable=False, default='BRL')
    reference = db.Column(db.String(120), nullable=True)
    payload = db.Column(db.Text, nullable=False)  # full transaction as JSON
    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self):
        return f'<PaymentRecord {self.id} {self.status}>'


class TransactionStore:
    def save(self, transaction: PaymentTransaction) -> None:
        raise NotImplementedError()

    def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        raise NotImplementedError()

    def list_by_status(self, status: PaymentStatus) -> List[PaymentTransaction]:
        raise NotImplementedError()


class InMemoryTransactionStore(TransactionStore):
    """Keeps serialized copies, so callers never share a mutable instance with the store."""

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, transaction):
        with self._lock:
            self._records[transaction.id] = transaction.to_dict()

    def find_by_id(self, transaction_id):
        with self._lock:
            data = self._records.get(transaction_id)
        return PaymentTransaction.from_dict(data) if data else None

    def list_by_status(self, status):
        with self._lock:
            rows = list(self._records.values())
        return [PaymentTransaction.from_dict(row) for row in rows if row['status'] == PaymentStatus(status).value]

    def __len__(self):
        return len(self._records)


class SqlAlchemyTransactionStore(TransactionStore):
    """Store backed by Flask-SQLAlchemy. Must be used inside an app context."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def save(self, transaction):
        record = self.session.get(PaymentRecord, transaction.id)
        if record is None:
            record = PaymentRecord(id=transaction.id)
            self.session.add(record)
        record.type = transaction.type.value
        record.status = transaction.status.value
        record.amount = transaction.amount
        record.currency = transaction.currency
        record.reference = transaction.reference
        record.payload = json.dumps(transaction.to_dict(), ensure_ascii=False)
        record.created_at = transaction.created_at
        record.updated_at = transaction.updated_at
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.critical(f"Falha ao gravar transação {transaction.id}")
            raise

    def find_by_id(self, transaction_id):
        record = self.session.get(PaymentRecord, transaction_id)
        if record is None:
            return None
        return PaymentTransaction.from_dict(json.loads(record.payload))

    def list_by_status(self, status):
        records = (
            self.session.query(PaymentRecord)
            .filter_by(status=PaymentStatus(status).value)
            .order_by(PaymentRecord.created_at.asc())
            .all()
        )
        return [PaymentTransaction.from_dict(json.loads(r.payload)) for r in records]

    def list_recent(self, limit: int = 20) -> List[PaymentTransaction]:
        records = self.session.query(PaymentRecord).order_by(PaymentRecord.created_at.desc()).limit(limit).all()
        return [PaymentTransaction.from_dict(json.loads(r.payload)) for r in records]
