from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from payment_models import (
    CashTransactionInfo,
    PaymentMethodType,
    PaymentStatus,
    PaymentTransaction,
    PixTransactionInfo,
)
from transaction_store import InMemoryTransactionStore, PaymentRecord, SqlAlchemyTransactionStore, db

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def pix_transaction(tx_id='PIX1', status=PaymentStatus.pending, created_at=NOW):
    return PaymentTransaction(
        id=tx_id,
        type=PaymentMethodType.pix,
        status=status,
        amount=Decimal('20.00'),
        currency='BRL',
        created_at=created_at,
        updated_at=created_at,
        method_info=PixTransactionInfo(
            qr_code_data='000201...',
            expires_at=created_at + timedelta(minutes=30),
            key='a' * 32,
            transaction_id=tx_id,
        ),
        reference='PED-1',
    )


def test_in_memory_store_returns_copies():
    store = InMemoryTransactionStore()
    tx = pix_transaction()
    store.save(tx)

    loaded = store.find_by_id('PIX1')
    loaded.status = PaymentStatus.cancelled
    assert store.find_by_id('PIX1').status == PaymentStatus.pending
    assert store.find_by_id('missing') is None


def test_in_memory_store_upserts_by_id():
    store = InMemoryTransactionStore()
    tx = pix_transaction()
    store.save(tx)
    tx.status = PaymentStatus.approved
    store.save(tx)
    assert len(store) == 1
    assert store.find_by_id('PIX1').status == PaymentStatus.approved
    assert store.list_by_status(PaymentStatus.pending) == []


def test_sqlalchemy_store_round_trip(test_app):
    with test_app.app_context():
        store = SqlAlchemyTransactionStore()
        tx = pix_transaction()
        store.save(tx)
        tx.status = PaymentStatus.approved
        tx.completed_at = NOW + timedelta(minutes=2)
        store.save(tx)

        assert PaymentRecord.query.count() == 1
        record = db.session.get(PaymentRecord, 'PIX1')
        assert record.status == 'approved'
        assert record.amount == Decimal('20.00')

        loaded = store.find_by_id('PIX1')
        assert loaded == tx
        assert loaded.pix_info.expires_at == tx.pix_info.expires_at


def test_sqlalchemy_store_lists_by_status_and_recent(test_app):
    with test_app.app_context():
        store = SqlAlchemyTransactionStore()
        store.save(pix_transaction('PIX1', created_at=NOW))
        store.save(pix_transaction('PIX2', created_at=NOW + timedelta(seconds=1)))
        store.save(PaymentTransaction(
            id='CASH1',
            type=PaymentMethodType.cash,
            status=PaymentStatus.approved,
            amount=Decimal('5'),
            currency='BRL',
            created_at=NOW + timedelta(seconds=2),
            updated_at=NOW + timedelta(seconds=2),
            method_info=CashTransactionInfo(amount_paid=Decimal('10'), change_amount=Decimal('5')),
        ))

        assert [t.id for t in store.list_by_status(PaymentStatus.pending)] == ['PIX1', 'PIX2']
        assert [t.id for t in store.list_recent(2)] == ['CASH1', 'PIX2']


def test_transaction_rejects_mismatched_method_info():
    with pytest.raises(ValueError):
        PaymentTransaction(
            id='CASH1',
            type=PaymentMethodType.cash,
            status=PaymentStatus.approved,
            amount=Decimal('5'),
            currency='BRL',
            created_at=NOW,
            updated_at=NOW,
        )


def test_transaction_identity_fields_are_immutable():
    tx = pix_transaction()
    with pytest.raises(AttributeError):
        tx.amount = Decimal('1')
    tx.status = PaymentStatus.approved
    assert tx.status == PaymentStatus.approved
