from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from palenque import db
from palenque.errors import BadRequestError, NotFoundError
from palenque.models import Wallet, WalletTransaction
from palenque.services import betting_service, wallet_service
from conftest import wallet_of, ledger_balance, ledger_frozen


def test_get_or_create_wallet(make_user):
    user = make_user('walletless', balance='0')
    Wallet.query.filter_by(user_id=user.user_id).delete()

    wallet = wallet_service.get_or_create_wallet(user.user_id)
    assert wallet.balance == Decimal('0.00')
    assert wallet_service.get_or_create_wallet(user.user_id).wallet_id == wallet.wallet_id

    with pytest.raises(NotFoundError):
        wallet_service.get_or_create_wallet(999)


def test_deposit_waits_for_approval(alice, admin):
    transaction, wallet = wallet_service.request_deposit(alice.user_id, '250', 'card')

    assert transaction.status == 'pending'
    assert wallet.balance == Decimal('1000.00')

    wallet_service.approve_transaction(transaction.transaction_id, admin.user_id, reference='BANK-1')

    wallet = wallet_of(alice)
    assert wallet.balance == Decimal('1250.00')
    approved = db.session.get(WalletTransaction, transaction.transaction_id)
    assert approved.status == 'completed'
    assert approved.reference == 'BANK-1'
    assert approved.details['reviewed_by'] == admin.user_id
    assert ledger_balance(wallet) == wallet.balance


def test_deposit_auto_completes_when_configured(app, alice):
    app.config['AUTO_COMPLETE_DEPOSITS'] = True
    transaction, wallet = wallet_service.request_deposit(alice.user_id, '100', 'transfer')
    assert transaction.status == 'completed'
    assert wallet.balance == Decimal('1100.00')


@pytest.mark.parametrize('amount, method', [('5', 'card'), ('10001', 'card'), ('100', 'cash')])
def test_deposit_validation(alice, amount, method):
    with pytest.raises(BadRequestError):
        wallet_service.request_deposit(alice.user_id, amount, method)


def test_withdrawal_freezes_then_approval_debits(alice, admin):
    transaction, wallet = wallet_service.request_withdrawal(alice.user_id, '300', '0001234567', bank_name='BBVA')

    assert transaction.status == 'pending'
    assert transaction.details['account_last4'] == '4567'
    assert '0001234567' not in str(transaction.details)
    assert wallet.frozen_amount == Decimal('300.00')
    assert wallet.balance == Decimal('1000.00')
    assert ledger_frozen(wallet) == wallet.frozen_amount

    wallet_service.approve_transaction(transaction.transaction_id, admin.user_id)

    wallet = wallet_of(alice)
    assert wallet.balance == Decimal('700.00')
    assert wallet.frozen_amount == Decimal('0.00')
    assert ledger_balance(wallet) == wallet.balance


def test_rejected_withdrawal_releases_hold(alice, admin):
    transaction, _ = wallet_service.request_withdrawal(alice.user_id, '300', '12345678')

    rejected = wallet_service.reject_transaction(transaction.transaction_id, admin.user_id, reason='Cuenta invalida')

    assert rejected.status == 'failed'
    assert rejected.details['reason'] == 'Cuenta invalida'
    wallet = wallet_of(alice)
    assert wallet.balance == Decimal('1000.00')
    assert wallet.frozen_amount == Decimal('0.00')

    with pytest.raises(BadRequestError):
        wallet_service.approve_transaction(transaction.transaction_id, admin.user_id)


def test_withdrawal_cannot_use_frozen_stake(alice, fight):
    betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '800')
    with pytest.raises(BadRequestError):
        wallet_service.request_withdrawal(alice.user_id, '300', '12345678')


def test_daily_withdrawal_limit(make_user):
    rich = make_user('rich', balance='20000')
    wallet_service.request_withdrawal(rich.user_id, '3000', '12345678')
    with pytest.raises(BadRequestError):
        wallet_service.request_withdrawal(rich.user_id, '2500', '12345678')
    wallet_service.request_withdrawal(rich.user_id, '2000', '12345678')

    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    transaction, _ = wallet_service.request_withdrawal(rich.user_id, '2500', '12345678', now=tomorrow)
    assert transaction.status == 'pending'


def test_bet_transactions_are_not_reviewable(alice, admin, fight):
    bet = betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '100')
    stake = WalletTransaction.query.filter_by(related_bet_id=bet.bet_id).one()
    with pytest.raises(BadRequestError):
        wallet_service.approve_transaction(stake.transaction_id, admin.user_id)
    assert wallet_service.get_pending_transactions() == []


def test_transaction_history_filters(alice, fight):
    betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '100')
    page = wallet_service.get_transactions(alice.user_id)
    assert page.total == 2
    assert page.items[0].type == 'bet-loss'

    deposits = wallet_service.get_transactions(alice.user_id, tx_type='deposit')
    assert [t.type for t in deposits.items] == ['deposit']
