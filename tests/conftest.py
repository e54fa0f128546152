from decimal import Decimal

import pytest
from flask_jwt_extended import create_access_token

from palenque import create_app, db
from palenque.models import User, Wallet, WalletTransaction, Event, Fight
from datetime import datetime, timezone


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(username, role='user', balance='1000'):
        user = User(username=username, email=f"{username}@example.com", role=role)
        user.set_password('secret123')
        db.session.add(user)
        db.session.flush()
        amount = Decimal(balance)
        wallet = Wallet(user_id=user.user_id, balance=amount, frozen_amount=Decimal('0'))
        db.session.add(wallet)
        db.session.flush()
        if amount > 0:
            db.session.add(WalletTransaction(wallet_id=wallet.wallet_id, type='deposit', amount=amount,
                                             status='completed', description='Opening balance'))
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user('alice')


@pytest.fixture
def bob(make_user):
    return make_user('bob', role='gallera')


@pytest.fixture
def carol(make_user):
    return make_user('carol')


@pytest.fixture
def admin(make_user):
    return make_user('admin', role='admin', balance='0')


@pytest.fixture
def operator(make_user):
    return make_user('operator', role='operator', balance='0')


@pytest.fixture
def event(app, operator):
    event = Event(name='Derby de Prueba', venue='Palenque Central',
                  scheduled_date=datetime.now(timezone.utc), operator_id=operator.user_id)
    db.session.add(event)
    db.session.commit()
    return event


@pytest.fixture
def fight(event):
    """A fight with betting open and no window limits."""
    fight = Fight(event_id=event.event_id, number=1, red_corner='El Giro', blue_corner='Colorado',
                  status='betting')
    db.session.add(fight)
    event.total_fights = 1
    db.session.commit()
    return fight


@pytest.fixture
def auth_header():
    def _auth_header(user):
        token = create_access_token(identity=str(user.user_id), additional_claims={'role': user.role})
        return {'Authorization': f"Bearer {token}"}
    return _auth_header


def wallet_of(user):
    return Wallet.query.filter_by(user_id=user.user_id).first()


def ledger_balance(wallet):
    """Balance rebuilt from completed transactions."""
    total = Decimal('0')
    for tx in WalletTransaction.query.filter_by(wallet_id=wallet.wallet_id, status='completed'):
        if tx.type in ('deposit', 'bet-win'):
            total += tx.amount
        elif tx.type in ('withdrawal', 'bet-loss'):
            total -= tx.amount
    return total


def ledger_frozen(wallet):
    total = Decimal('0')
    for tx in WalletTransaction.query.filter_by(wallet_id=wallet.wallet_id, status='pending'):
        if tx.type in ('bet-loss', 'withdrawal'):
            total += tx.amount
    return total
