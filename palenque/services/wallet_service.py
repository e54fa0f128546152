# palenque/services/wallet_service.py
"""
Wallet deposits, withdrawals and their admin review.

Deposits credit the balance only once completed. A withdrawal request
freezes the amount straight away so it cannot be bet, and the balance is
debited when an admin approves it.
"""

from datetime import datetime, timezone
import logging

from flask import current_app
from sqlalchemy import func

from palenque import db
from palenque.errors import BadRequestError, NotFoundError, ServiceError
from palenque.models import User, Wallet, WalletTransaction, ZERO
from palenque.sse_events import announce_event
from palenque.utils.db_utils import atomic
from palenque.utils.text_utils import to_money

log = logging.getLogger(__name__)

PAYMENT_METHODS = ('card', 'transfer')


def _limit(key, default):
    return to_money(current_app.config.get(key, default))


def _announce_wallet(wallet, reason, **extra):
    announce_event('wallet_update', dict({
        'user_id': wallet.user_id,
        'balance': float(wallet.balance),
        'frozen_amount': float(wallet.frozen_amount),
        'available_balance': float(wallet.available_balance),
        'reason': reason,
    }, **extra), channel=f"user_{wallet.user_id}")


def get_or_create_wallet(user_id):
    wallet = Wallet.query.filter_by(user_id=user_id).first()
    if wallet:
        return wallet
    if not db.session.get(User, user_id):
        raise NotFoundError("User not found")
    wallet = Wallet(user_id=user_id, balance=ZERO, frozen_amount=ZERO)
    db.session.add(wallet)
    db.session.commit()
    log.info(f"Created wallet {wallet.wallet_id} for user {user_id}")
    return wallet


def get_transactions(user_id, tx_type=None, status=None, page=1, per_page=20):
    wallet = get_or_create_wallet(user_id)
    query = WalletTransaction.query.filter_by(wallet_id=wallet.wallet_id)
    if tx_type:
        query = query.filter(WalletTransaction.type == tx_type)
    if status:
        query = query.filter(WalletTransaction.status == status)
    return query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.transaction_id.desc()) \
        .paginate(page=page, per_page=per_page, error_out=False)


def request_deposit(user_id, amount, payment_method, reference=None):
    amount = to_money(amount)
    low, high = _limit('MIN_DEPOSIT_AMOUNT', '10'), _limit('MAX_DEPOSIT_AMOUNT', '10000')
    if amount < low or amount > high:
        raise BadRequestError(f"Deposit amount must be between {low} and {high}")
    if payment_method not in PAYMENT_METHODS:
        raise BadRequestError("Payment method must be card or transfer")

    auto_complete = bool(current_app.config.get('AUTO_COMPLETE_DEPOSITS'))
    wallet = get_or_create_wallet(user_id)

    with atomic():
        wallet = Wallet.query.filter_by(wallet_id=wallet.wallet_id).with_for_update().first()
        transaction = WalletTransaction(
            wallet_id=wallet.wallet_id,
            type='deposit',
            amount=amount,
            status='completed' if auto_complete else 'pending',
            reference=reference,
            description=f"Deposit via {payment_method}",
            details={'payment_method': payment_method},
        )
        db.session.add(transaction)
        if auto_complete:
            wallet.add_balance(amount)

    log.info(f"Deposit {transaction.transaction_id} of {amount} for user {user_id} ({transaction.status})")
    if auto_complete:
        _announce_wallet(wallet, 'deposit', transaction_id=transaction.transaction_id)
    return transaction, wallet


def _withdrawn_today(wallet, now):
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    total = db.session.query(func.coalesce(func.sum(WalletTransaction.amount), 0)).filter(
        WalletTransaction.wallet_id == wallet.wallet_id,
        WalletTransaction.type == 'withdrawal',
        WalletTransaction.status.in_(('pending', 'completed')),
        WalletTransaction.created_at >= start_of_day,
    ).scalar()
    return to_money(total)


def request_withdrawal(user_id, amount, account_number, account_type=None, bank_name=None, now=None):
    now = now or datetime.now(timezone.utc)
    amount = to_money(amount)
    low, high = _limit('MIN_WITHDRAWAL_AMOUNT', '10'), _limit('MAX_WITHDRAWAL_AMOUNT', '50000')
    if amount < low or amount > high:
        raise BadRequestError(f"Withdrawal amount must be between {low} and {high}")
    account_number = (account_number or '').strip()
    if len(account_number) < 4:
        raise BadRequestError("A valid account number is required")

    wallet = get_or_create_wallet(user_id)

    with atomic():
        wallet = Wallet.query.filter_by(wallet_id=wallet.wallet_id).with_for_update().first()
        daily_limit = _limit('MAX_WITHDRAWAL_DAILY', '5000')
        if _withdrawn_today(wallet, now) + amount > daily_limit:
            raise BadRequestError(f"Daily withdrawal limit of {daily_limit} exceeded")
        if not wallet.can_withdraw(amount):
            raise BadRequestError("Insufficient available balance")
        wallet.freeze_amount(amount)

        transaction = WalletTransaction(
            wallet_id=wallet.wallet_id,
            type='withdrawal',
            amount=amount,
            status='pending',
            description="Withdrawal request",
            details={
                'account_last4': account_number[-4:],
                'account_type': account_type,
                'bank_name': bank_name,
            },
        )
        db.session.add(transaction)

    log.info(f"Withdrawal {transaction.transaction_id} of {amount} requested by user {user_id}")
    _announce_wallet(wallet, 'withdrawal_requested', transaction_id=transaction.transaction_id)
    return transaction, wallet


def get_pending_transactions(tx_type=None):
    query = WalletTransaction.query.filter(
        WalletTransaction.status == 'pending',
        WalletTransaction.type.in_(('deposit', 'withdrawal')),
    )
    if tx_type:
        query = query.filter(WalletTransaction.type == tx_type)
    return query.order_by(WalletTransaction.created_at.asc()).all()


def _get_reviewable(transaction_id):
    transaction = WalletTransaction.query.filter_by(transaction_id=transaction_id).with_for_update().first()
    if not transaction:
        raise NotFoundError("Transaction not found")
    if transaction.type not in ('deposit', 'withdrawal'):
        raise BadRequestError("Only deposits and withdrawals can be reviewed")
    if transaction.status != 'pending':
        raise BadRequestError(f"Transaction is already {transaction.status}")
    return transaction


def approve_transaction(transaction_id, admin_id, reference=None):
    with atomic():
        transaction = _get_reviewable(transaction_id)
        wallet = Wallet.query.filter_by(wallet_id=transaction.wallet_id).with_for_update().first()

        if transaction.type == 'deposit':
            wallet.add_balance(transaction.amount)
        else:
            if not wallet.unfreeze_amount(transaction.amount) or not wallet.deduct_balance(transaction.amount):
                log.error(f"Wallet {wallet.wallet_id} cannot cover withdrawal {transaction.transaction_id}")
                raise ServiceError("Wallet hold is inconsistent", 500)

        transaction.status = 'completed'
        if reference:
            transaction.reference = reference
        transaction.details = dict(transaction.details or {}, reviewed_by=admin_id)

    log.info(f"Transaction {transaction.transaction_id} ({transaction.type}) approved by admin {admin_id}")
    _announce_wallet(wallet, f"{transaction.type}_approved", transaction_id=transaction.transaction_id)
    return transaction


def reject_transaction(transaction_id, admin_id, reason=None):
    with atomic():
        transaction = _get_reviewable(transaction_id)
        wallet = Wallet.query.filter_by(wallet_id=transaction.wallet_id).with_for_update().first()

        if transaction.type == 'withdrawal' and not wallet.unfreeze_amount(transaction.amount):
            log.error(f"Wallet {wallet.wallet_id} holds less than withdrawal {transaction.transaction_id}")
            raise ServiceError("Wallet hold is inconsistent", 500)

        transaction.status = 'failed'
        transaction.details = dict(transaction.details or {}, reviewed_by=admin_id, reason=reason)

    log.info(f"Transaction {transaction.transaction_id} ({transaction.type}) rejected by admin {admin_id}")
    _announce_wallet(wallet, f"{transaction.type}_rejected", transaction_id=transaction.transaction_id)
    return transaction
