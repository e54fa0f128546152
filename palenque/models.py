"""
Database Models for the Palenque Betting Backend

This file defines the SQLAlchemy ORM models that represent the core data structures
of the cockfighting betting platform. It includes models for:

- User: Accounts with role (user, gallera, operator, admin) and password authentication
- Wallet: One per user; balance plus the portion frozen by open bets and withdrawals
- WalletTransaction: Audit trail of every deposit, withdrawal and bet movement
- Event: A night of fights at a venue, with aggregate betting counters
- Fight: A numbered fight between a red and a blue corner inside an event
- Bet: Peer-to-peer bets on one corner, matched against an opposing bet

Money columns are Numeric and handled as Decimal throughout.
"""

from datetime import datetime, timezone
from decimal import Decimal
from palenque import db, bcrypt
from palenque.utils.text_utils import ensure_utc

ZERO = Decimal('0.00')

BETTOR_ROLES = ('user', 'gallera')
USER_ROLES = ('user', 'gallera', 'operator', 'admin')


def _iso(dt):
    return ensure_utc(dt).isoformat() if dt else None


class User(db.Model):
    __tablename__ = 'users'
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='user', index=True) # user, gallera, operator, admin
    registration_date = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)
    active = db.Column(db.Boolean, default=True)

    bets = db.relationship('Bet', backref='user', lazy='dynamic')
    wallet = db.relationship('Wallet', backref='user', uselist=False)

    def set_password(self, password):
        """Hashes the password and stores it"""
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        """Checks if the provided password matches the stored hash"""
        if not self.password_hash:
             return False
        return bcrypt.check_password_hash(self.password_hash, password)

    def can_bet(self):
        return bool(self.active) and self.role in BETTOR_ROLES

    @classmethod
    def find_by_email(cls, email):
        return cls.query.filter_by(email=email).first()

    @classmethod
    def find_by_username(cls, username):
        return cls.query.filter_by(username=username).first()

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'active': self.active,
            'registration_date': _iso(self.registration_date),
            'last_login': _iso(self.last_login),
        }

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"


class Wallet(db.Model):
    __tablename__ = 'wallets'
    wallet_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.user_id'), unique=True, nullable=False, index=True)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    frozen_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    transactions = db.relationship('WalletTransaction', backref='wallet', lazy='dynamic')

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        db.CheckConstraint('frozen_amount >= 0', name='ck_wallet_frozen_non_negative'),
    )

    @property
    def available_balance(self):
        return (self.balance or ZERO) - (self.frozen_amount or ZERO)

    def can_bet(self, amount):
        return self.available_balance >= amount

    def can_withdraw(self, amount):
        return self.available_balance >= amount

    def freeze_amount(self, amount):
        """Moves `amount` from available into frozen. False if not enough is available."""
        if not self.can_bet(amount):
            return False
        self.frozen_amount = (self.frozen_amount or ZERO) + amount
        return True

    def unfreeze_amount(self, amount):
        if (self.frozen_amount or ZERO) < amount:
            return False
        self.frozen_amount = self.frozen_amount - amount
        return True

    def add_balance(self, amount):
        self.balance = (self.balance or ZERO) + amount

    def deduct_balance(self, amount):
        if (self.balance or ZERO) < amount:
            return False
        self.balance = self.balance - amount
        return True

    def to_dict(self):
        return {
            'wallet_id': self.wallet_id,
            'user_id': self.user_id,
            'balance': float(self.balance or ZERO),
            'frozen_amount': float(self.frozen_amount or ZERO),
            'available_balance': float(self.available_balance),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Wallet User:{self.user_id} Bal:{self.balance} Frozen:{self.frozen_amount}>"


class WalletTransaction(db.Model):
    __tablename__ = 'transactions'
    transaction_id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallets.wallet_id'), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False, index=True) # deposit, withdrawal, bet-win, bet-loss, bet-refund
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True) # pending, completed, failed, cancelled
    reference = db.Column(db.String(255), nullable=True)
    description = db.Column(db.String(500), nullable=True)
    details = db.Column('metadata', db.JSON, nullable=True)
    related_bet_id = db.Column(db.Integer, db.ForeignKey('bets.bet_id', ondelete='SET NULL'), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            'transaction_id': self.transaction_id,
            'wallet_id': self.wallet_id,
            'type': self.type,
            'amount': float(self.amount),
            'status': self.status,
            'reference': self.reference,
            'description': self.description,
            'metadata': self.details or {},
            'related_bet_id': self.related_bet_id,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f"<WalletTransaction {self.transaction_id} {self.type} {self.amount} ({self.status})>"


class Event(db.Model):
    __tablename__ = 'events'
    event_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    venue = db.Column(db.String(255), nullable=True)
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='scheduled', index=True) # scheduled, in-progress, intermission, paused, completed, cancelled
    operator_id = db.Column(db.Integer, db.ForeignKey('users.user_id'), nullable=True, index=True)
    total_fights = db.Column(db.Integer, nullable=False, default=0)
    completed_fights = db.Column(db.Integer, nullable=False, default=0)
    total_bets = db.Column(db.Integer, nullable=False, default=0)
    total_prize_pool = db.Column(db.Numeric(14, 2), nullable=False, default=ZERO)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    fights = db.relationship('Fight', backref='event', lazy='dynamic')
    operator = db.relationship('User', foreign_keys=[operator_id])

    def is_closed(self):
        return self.status in ('completed', 'cancelled')

    def to_dict(self):
        return {
            'event_id': self.event_id,
            'name': self.name,
            'venue': self.venue,
            'scheduled_date': _iso(self.scheduled_date),
            'status': self.status,
            'operator_id': self.operator_id,
            'total_fights': self.total_fights,
            'completed_fights': self.completed_fights,
            'total_bets': self.total_bets,
            'total_prize_pool': float(self.total_prize_pool or ZERO),
        }

    def __repr__(self):
        return f"<Event {self.event_id} {self.name} ({self.status})>"


class Fight(db.Model):
    __tablename__ = 'fights'
    fight_id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.event_id'), nullable=False, index=True)
    number = db.Column(db.Integer, nullable=False)
    red_corner = db.Column(db.String(255), nullable=False)
    blue_corner = db.Column(db.String(255), nullable=False)
    weight = db.Column(db.Numeric(5, 2), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='upcoming', index=True) # upcoming, betting, live, completed, cancelled
    result = db.Column(db.String(20), nullable=True) # red, blue, draw, cancelled
    betting_start_time = db.Column(db.DateTime(timezone=True), nullable=True)
    betting_end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    start_time = db.Column(db.DateTime(timezone=True), nullable=True)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    total_bets = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=ZERO)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    bets = db.relationship('Bet', backref='fight', lazy='dynamic')

    __table_args__ = (db.UniqueConstraint('event_id', 'number', name='uq_fight_event_number'),)

    VALID_TRANSITIONS = {
        'upcoming': ('betting', 'cancelled'),
        'betting': ('live', 'cancelled'),
        'live': ('completed', 'cancelled'),
        'completed': (),
        'cancelled': (),
    }

    def can_transition_to(self, new_status):
        return new_status in self.VALID_TRANSITIONS.get(self.status, ())

    def can_accept_bets(self, now=None):
        if self.status != 'betting':
            return False
        now = now or datetime.now(timezone.utc)
        start = ensure_utc(self.betting_start_time)
        end = ensure_utc(self.betting_end_time)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    def to_dict(self):
        return {
            'fight_id': self.fight_id,
            'event_id': self.event_id,
            'number': self.number,
            'red_corner': self.red_corner,
            'blue_corner': self.blue_corner,
            'weight': float(self.weight) if self.weight is not None else None,
            'notes': self.notes,
            'status': self.status,
            'result': self.result,
            'betting_start_time': _iso(self.betting_start_time),
            'betting_end_time': _iso(self.betting_end_time),
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'total_bets': self.total_bets,
            'total_amount': float(self.total_amount or ZERO),
        }

    def __repr__(self):
        return f"<Fight {self.fight_id} #{self.number} {self.red_corner} vs {self.blue_corner} ({self.status})>"


class Bet(db.Model):
    __tablename__ = 'bets'
    bet_id = db.Column(db.Integer, primary_key=True)
    fight_id = db.Column(db.Integer, db.ForeignKey('fights.fight_id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.user_id'), nullable=False, index=True)
    side = db.Column(db.String(10), nullable=False) # red, blue
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    potential_win = db.Column(db.Numeric(12, 2), nullable=False) # amount + counter stake, the pot
    status = db.Column(db.String(20), nullable=False, default='pending', index=True) # pending, active, completed, cancelled
    result = db.Column(db.String(20), nullable=True) # win, loss, draw, cancelled
    matched_with = db.Column(db.Integer, db.ForeignKey('bets.bet_id'), nullable=True, index=True)
    parent_bet_id = db.Column(db.Integer, db.ForeignKey('bets.bet_id'), nullable=True, index=True)
    bet_type = db.Column(db.String(10), nullable=False, default='flat', index=True) # flat, doy, pago
    proposal_status = db.Column(db.String(20), nullable=False, default='none', index=True) # none, pending, accepted, rejected
    is_offer = db.Column(db.Boolean, nullable=False, default=True)
    terms = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))
    settlement_time = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint('fight_id', 'user_id', name='uq_bet_fight_user'),
        db.Index('ix_bets_fight_status', 'fight_id', 'status'),
    )

    def is_pending(self):
        return self.status == 'pending'

    def has_pending_proposal(self):
        return self.bet_type != 'pago' and self.proposal_status == 'pending'

    def can_be_matched(self):
        return (self.status == 'pending' and bool(self.is_offer)
                and self.matched_with is None
                and self.bet_type != 'pago'
                and not self.has_pending_proposal())

    def counter_stake(self):
        """Stake an opponent has to put up against this bet."""
        if self.bet_type == 'doy':
            return Decimal(str((self.terms or {}).get('doy_amount')))
        if self.bet_type == 'pago':
            parent = db.session.get(Bet, self.parent_bet_id) if self.parent_bet_id else None
            return parent.amount if parent else self.amount
        return self.amount

    def to_dict(self):
        terms = self.terms or {}
        return {
            'bet_id': self.bet_id,
            'fight_id': self.fight_id,
            'fight_number': self.fight.number if self.fight else None,
            'event_id': self.fight.event_id if self.fight else None,
            'user_id': self.user_id,
            'username': self.user.username if self.user else None,
            'side': self.side,
            'amount': float(self.amount),
            'potential_win': float(self.potential_win),
            'status': self.status,
            'result': self.result,
            'matched_with': self.matched_with,
            'parent_bet_id': self.parent_bet_id,
            'bet_type': self.bet_type,
            'proposal_status': self.proposal_status,
            'is_offer': self.is_offer,
            'terms': terms,
            'created_at': _iso(self.created_at),
            'settlement_time': _iso(self.settlement_time),
        }

    def __repr__(self):
        return f"<Bet {self.bet_id} User:{self.user_id} Fight:{self.fight_id} {self.side} Amt:{self.amount} Status:{self.status}>"
