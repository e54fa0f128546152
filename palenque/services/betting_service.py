# palenque/services/betting_service.py
"""
Peer-to-peer bet lifecycle for fights.

A bet freezes its stake in the bettor's wallet when it is placed. It stays
`pending` until another user takes the opposite corner (accept, auto-match
or an accepted PAGO proposal); both bets then become `active` and point at
each other through `matched_with`. Frozen stakes only turn into balance
movements when the fight is settled (see palenque/api/settlement.py).

Every public function runs inside one database transaction and announces
its SSE events only after the commit succeeded.
"""

from datetime import datetime, timezone, timedelta
from decimal import Decimal
import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from palenque import db
from palenque.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ServiceError
from palenque.models import Bet, Fight, User, Wallet, WalletTransaction, ZERO
from palenque.sse_events import announce_event
from palenque.utils.db_utils import atomic
from palenque.utils.text_utils import normalize_side, opposite_side, to_money

log = logging.getLogger(__name__)

BET_TYPES = ('flat', 'doy')
RATIO_PLACES = Decimal('0.0001')


class _MatchLost(Exception):
    """Another transaction claimed one of the bets first."""


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _announce_all(events):
    for event_type, data, channel in events:
        announce_event(event_type, data, channel=channel)


def _event_channel(fight):
    return f"event_{fight.event_id}"


def _ratio(amount, potential_win):
    return float((potential_win / amount).quantize(RATIO_PLACES))


def validate_bet_amount(value, field='Amount'):
    amount = to_money(value, field)
    low = to_money(current_app.config.get('MIN_BET_AMOUNT', '10'))
    high = to_money(current_app.config.get('MAX_BET_AMOUNT', '10000'))
    if amount < low or amount > high:
        raise BadRequestError(f"{field} must be between {low} and {high}")
    return amount


def lock_wallet(user_id):
    return Wallet.query.filter_by(user_id=user_id).with_for_update().first()


def _get_fight(fight_id):
    fight = db.session.get(Fight, fight_id)
    if not fight:
        raise NotFoundError("Fight not found")
    return fight


def _get_bettor(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    if not user.can_bet():
        raise ForbiddenError("Your role cannot place bets")
    return user


def _ensure_no_bet_on_fight(fight_id, user_id):
    if Bet.query.filter_by(fight_id=fight_id, user_id=user_id).first():
        raise ConflictError("You already have a bet on this fight")


def _insert_bet(bet):
    """Adds and flushes a new bet. A concurrent bet by the same user trips uq_bet_fight_user."""
    db.session.add(bet)
    try:
        db.session.flush()
    except IntegrityError:
        log.info(f"User {bet.user_id} raced a second bet onto fight {bet.fight_id}")
        raise ConflictError("You already have a bet on this fight")


def adjust_counters(fight, bets_delta, amount_delta):
    fight.total_bets = (fight.total_bets or 0) + bets_delta
    fight.total_amount = (fight.total_amount or ZERO) + amount_delta
    event = fight.event
    if event:
        event.total_bets = (event.total_bets or 0) + bets_delta
        event.total_prize_pool = (event.total_prize_pool or ZERO) + amount_delta


def _record_stake(wallet, bet, fight, description, **details):
    stake = WalletTransaction(
        wallet_id=wallet.wallet_id,
        type='bet-loss', # Pending until the fight is settled
        amount=bet.amount,
        status='pending',
        description=description,
        details=dict({'bet_id': bet.bet_id, 'fight_id': fight.fight_id}, **details),
        related_bet_id=bet.bet_id,
    )
    db.session.add(stake)
    return stake


def stake_transaction(bet):
    return WalletTransaction.query.filter_by(
        related_bet_id=bet.bet_id, type='bet-loss', status='pending'
    ).first()


def release_hold(wallet, amount):
    if not wallet.unfreeze_amount(amount):
        log.error(f"Wallet {wallet.wallet_id} holds {wallet.frozen_amount} frozen, cannot release {amount}")
        raise ServiceError("Wallet hold is inconsistent", 500)


def release_stake(bet, wallet, description):
    """
    Gives a bet's frozen stake back to the bettor's available balance.
    The pending stake transaction is cancelled and a bet-refund is recorded;
    the wallet balance itself does not change.
    """
    release_hold(wallet, bet.amount)
    stake = stake_transaction(bet)
    if stake:
        stake.status = 'cancelled'
    db.session.add(WalletTransaction(
        wallet_id=wallet.wallet_id,
        type='bet-refund',
        amount=bet.amount,
        status='completed',
        description=description,
        details={'bet_id': bet.bet_id, 'fight_id': bet.fight_id},
        related_bet_id=bet.bet_id,
    ))


def _cancel_pending_bet(bet, fight, description, now=None):
    wallet = lock_wallet(bet.user_id)
    if wallet:
        release_stake(bet, wallet, description)
    else:
        log.warning(f"No wallet for user {bet.user_id} while cancelling bet {bet.bet_id}")
    bet.status = 'cancelled'
    bet.result = 'cancelled'
    bet.settlement_time = now or datetime.now(timezone.utc)
    adjust_counters(fight, -1, -bet.amount)


def _claim_pending_bet(bet, partner_id):
    """Conditional update so a bet can be matched at most once."""
    claimed = Bet.query.filter(
        Bet.bet_id == bet.bet_id,
        Bet.status == 'pending',
        Bet.matched_with.is_(None),
    ).update({'status': 'active', 'matched_with': partner_id}, synchronize_session='fetch')
    return claimed == 1


def _pending_proposal_for(original):
    return Bet.query.filter_by(
        parent_bet_id=original.bet_id, bet_type='pago',
        proposal_status='pending', status='pending',
    ).first()


def _discard_proposal(original, proposal, description, event_type):
    """Releases a PAGO proposal's stake and removes the proposal bet."""
    fight = proposal.fight
    wallet = lock_wallet(proposal.user_id)
    if wallet:
        release_stake(proposal, wallet, description)
    adjust_counters(fight, -1, -proposal.amount)
    if original is not None:
        original.proposal_status = 'rejected'

    payload = {
        'original_bet': original.to_dict() if original is not None else None,
        'pago_bet_id': proposal.bet_id,
        'fight_id': fight.fight_id,
    }
    proposer_id = proposal.user_id

    # Ledger rows outlive the proposal; they keep the bet id in their metadata
    WalletTransaction.query.filter_by(related_bet_id=proposal.bet_id).update(
        {'related_bet_id': None}, synchronize_session='fetch')
    db.session.delete(proposal)
    return [(event_type, payload, f"user_{proposer_id}")]


# =============================================================================
# BET CREATION AND LOOKUP
# =============================================================================

def create_bet(fight_id, user_id, side, amount, bet_type='flat', doy_amount=None, is_offer=True):
    """
    Places a new pending bet and freezes its stake.

    Flat bets are even money. A DOY bettor gives odds: risks `amount` against
    an opponent stake of `doy_amount`, which must be smaller.
    """
    side = normalize_side(side)
    amount = validate_bet_amount(amount)
    bet_type = (bet_type or 'flat').strip().lower()
    if bet_type == 'pago':
        raise BadRequestError("PAGO bets are created through a proposal")
    if bet_type not in BET_TYPES:
        raise BadRequestError("Bet type must be flat or doy")

    terms = {'is_offer': bool(is_offer)}
    counter_stake = amount
    if bet_type == 'doy':
        if doy_amount is None:
            raise BadRequestError("DOY bets require a doy amount")
        counter_stake = to_money(doy_amount, 'DOY amount')
        if counter_stake <= 0 or counter_stake >= amount:
            raise BadRequestError("DOY amount must be positive and less than the bet amount")
        terms['doy_amount'] = float(counter_stake)
    elif doy_amount is not None:
        raise BadRequestError("Only DOY bets take a doy amount")

    potential_win = amount + counter_stake
    terms['ratio'] = _ratio(amount, potential_win)

    with atomic():
        fight = _get_fight(fight_id)
        if not fight.can_accept_bets():
            raise BadRequestError("Betting is not open for this fight")
        _get_bettor(user_id)
        _ensure_no_bet_on_fight(fight.fight_id, user_id)

        wallet = lock_wallet(user_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        if not wallet.freeze_amount(amount):
            raise BadRequestError("Insufficient available balance")

        bet = Bet(
            fight_id=fight.fight_id,
            user_id=user_id,
            side=side,
            amount=amount,
            potential_win=potential_win,
            bet_type=bet_type,
            status='pending',
            is_offer=bool(is_offer),
            terms=terms,
        )
        _insert_bet(bet) # Get the bet_id

        adjust_counters(fight, 1, amount)
        _record_stake(wallet, bet, fight, f"Bet placed on fight {fight.number}")

    log.info(f"Bet {bet.bet_id} placed: user {user_id}, fight {fight.fight_id}, {side} {amount} ({bet_type})")
    announce_event('new_bet', {'bet': bet.to_dict(), 'fight_id': fight.fight_id}, channel=_event_channel(fight))
    return bet


def get_compatible_bets(fight_id, side, amount, user_id):
    """Open flat offers on the other corner within the configured tolerance of `amount`."""
    side = normalize_side(side)
    amount = to_money(amount)
    tolerance = Decimal(str(current_app.config.get('COMPATIBLE_BET_TOLERANCE', '0.20')))
    lower_bound = amount * (1 - tolerance)
    upper_bound = amount * (1 + tolerance)

    return Bet.query.filter(
        Bet.fight_id == fight_id,
        Bet.side == opposite_side(side),
        Bet.status == 'pending',
        Bet.user_id != user_id,
        Bet.matched_with.is_(None),
        Bet.bet_type == 'flat',
        Bet.is_offer.is_(True),
        Bet.proposal_status != 'pending',
        Bet.amount >= lower_bound,
        Bet.amount <= upper_bound,
    ).order_by(Bet.created_at.asc(), Bet.bet_id.asc()).all()


def get_available_bets(fight_id, user_id):
    fight = _get_fight(fight_id)
    if not fight.can_accept_bets():
        raise BadRequestError("Betting is not open for this fight")

    return Bet.query.filter(
        Bet.fight_id == fight.fight_id,
        Bet.status == 'pending',
        Bet.user_id != user_id,
        Bet.matched_with.is_(None),
        Bet.is_offer.is_(True),
        Bet.bet_type != 'pago',
        Bet.proposal_status != 'pending',
    ).order_by(Bet.created_at.desc(), Bet.bet_id.desc()).all()


# =============================================================================
# MATCHING
# =============================================================================

def accept_bet(bet_id, accepting_user_id):
    """
    Takes the opposite corner of an open offer.
    Returns (your_bet, matched_bet).
    """
    with atomic():
        offer_bet = Bet.query.filter_by(bet_id=bet_id).with_for_update().first()
        if not offer_bet:
            raise NotFoundError("Bet not found")
        if not offer_bet.can_be_matched():
            raise BadRequestError("This bet cannot be accepted")
        if offer_bet.user_id == accepting_user_id:
            raise BadRequestError("You cannot accept your own bet")

        fight = offer_bet.fight
        if not fight.can_accept_bets():
            raise BadRequestError("Betting is closed for this fight")
        _get_bettor(accepting_user_id)
        _ensure_no_bet_on_fight(fight.fight_id, accepting_user_id)

        wallet = lock_wallet(accepting_user_id)
        if not wallet:
            raise NotFoundError("Wallet not found")

        required_amount = offer_bet.counter_stake()
        if not wallet.freeze_amount(required_amount):
            raise BadRequestError("Insufficient available balance")

        pot = offer_bet.amount + required_amount
        accept = Bet(
            fight_id=fight.fight_id,
            user_id=accepting_user_id,
            side=opposite_side(offer_bet.side),
            amount=required_amount,
            potential_win=pot,
            status='active',
            matched_with=offer_bet.bet_id,
            bet_type='flat',
            is_offer=False,
            terms={'ratio': _ratio(required_amount, pot), 'is_offer': False,
                   'accepted_bet_id': offer_bet.bet_id},
        )
        _insert_bet(accept)

        if not _claim_pending_bet(offer_bet, accept.bet_id):
            raise ConflictError("This bet was already matched")
        offer_bet.potential_win = pot

        adjust_counters(fight, 1, required_amount)
        _record_stake(wallet, accept, fight, f"Bet accepted on fight {fight.number}",
                      matched_bet_id=offer_bet.bet_id)

    log.info(f"Bet {offer_bet.bet_id} accepted by user {accepting_user_id} (bet {accept.bet_id})")
    announce_event('bet_matched', {
        'offer_bet': offer_bet.to_dict(),
        'accept_bet': accept.to_dict(),
        'fight_id': fight.fight_id,
    }, channel=_event_channel(fight))
    return accept, offer_bet


def auto_match_flat_bet(bet):
    """
    Pairs a pending flat bet with the oldest open flat offer of another user
    on the opposite corner for exactly the same amount.
    Stakes are already frozen, so only the bet rows change.
    Returns (bet, opposite_bet) or None.
    """
    if bet is None or bet.bet_type != 'flat' or bet.status != 'pending':
        return None
    if bet.matched_with is not None or bet.has_pending_proposal():
        return None

    try:
        with atomic():
            fight = bet.fight
            if not fight.can_accept_bets():
                return None

            opposite_bet = Bet.query.filter(
                Bet.fight_id == bet.fight_id,
                Bet.bet_id != bet.bet_id,
                Bet.side == opposite_side(bet.side),
                Bet.amount == bet.amount,
                Bet.status == 'pending',
                Bet.bet_type == 'flat',
                Bet.is_offer.is_(True),
                Bet.matched_with.is_(None),
                Bet.proposal_status != 'pending',
                Bet.user_id != bet.user_id,
            ).order_by(Bet.created_at.asc(), Bet.bet_id.asc()).with_for_update().first()

            if not opposite_bet:
                return None

            if not _claim_pending_bet(bet, opposite_bet.bet_id):
                raise _MatchLost()
            if not _claim_pending_bet(opposite_bet, bet.bet_id):
                raise _MatchLost()

            pot = bet.amount + opposite_bet.amount
            bet.potential_win = pot
            opposite_bet.potential_win = pot
    except _MatchLost:
        log.info(f"Auto-match for bet {bet.bet_id} lost a race, leaving it pending")
        return None

    log.info(f"Auto-matched bet {bet.bet_id} with bet {opposite_bet.bet_id} on fight {bet.fight_id}")
    announce_event('bet_matched', {
        'offer_bet': bet.to_dict(),
        'accept_bet': opposite_bet.to_dict(),
        'fight_id': bet.fight_id,
    }, channel=_event_channel(fight))
    return bet, opposite_bet


# =============================================================================
# EDIT AND CANCEL
# =============================================================================

def update_bet(bet_id, user_id, amount=None, side=None, doy_amount=None):
    with atomic():
        bet = Bet.query.filter_by(bet_id=bet_id).with_for_update().first()
        if not bet:
            raise NotFoundError("Bet not found")
        if bet.user_id != user_id:
            raise ForbiddenError("You can only edit your own bets")
        if bet.status != 'pending' or bet.matched_with is not None:
            raise BadRequestError("Only pending bets can be edited")
        if bet.bet_type == 'pago':
            raise BadRequestError("PAGO proposals cannot be edited")
        if bet.has_pending_proposal():
            raise BadRequestError("Bets with a pending PAGO proposal cannot be edited")

        fight = bet.fight
        if not fight.can_accept_bets():
            raise BadRequestError("Betting is closed for this fight")

        new_amount = validate_bet_amount(amount) if amount is not None else bet.amount
        terms = dict(bet.terms or {})
        counter_stake = new_amount
        if bet.bet_type == 'doy':
            if doy_amount is not None:
                counter_stake = to_money(doy_amount, 'DOY amount')
            else:
                counter_stake = to_money(terms.get('doy_amount'), 'DOY amount')
            if counter_stake <= 0 or counter_stake >= new_amount:
                raise BadRequestError("DOY amount must be positive and less than the bet amount")
            terms['doy_amount'] = float(counter_stake)
        elif doy_amount is not None:
            raise BadRequestError("Only DOY bets take a doy amount")

        difference = new_amount - bet.amount
        if difference != 0:
            wallet = lock_wallet(user_id)
            if not wallet:
                raise NotFoundError("Wallet not found")
            if difference > 0:
                if not wallet.freeze_amount(difference):
                    raise BadRequestError("Insufficient available balance for increased amount")
            else:
                release_hold(wallet, -difference)
            adjust_counters(fight, 0, difference)
            stake = stake_transaction(bet)
            if stake:
                stake.amount = new_amount
            bet.amount = new_amount

        if side is not None:
            bet.side = normalize_side(side)
        bet.potential_win = new_amount + counter_stake
        terms['ratio'] = _ratio(new_amount, bet.potential_win)
        bet.terms = terms

    log.info(f"Bet {bet.bet_id} updated by user {user_id}")
    announce_event('bet_updated', {'bet': bet.to_dict(), 'fight_id': fight.fight_id},
                   channel=_event_channel(fight))
    return bet


def cancel_bet(bet_id, user_id):
    events = []
    with atomic():
        bet = Bet.query.filter_by(bet_id=bet_id, user_id=user_id).with_for_update().first()
        if not bet:
            raise NotFoundError("Bet not found or not yours")
        if bet.status != 'pending' or bet.matched_with is not None:
            raise BadRequestError("Only pending bets can be cancelled")

        fight = bet.fight
        if bet.bet_type == 'pago':
            # Proposer withdraws the proposal
            parent = db.session.get(Bet, bet.parent_bet_id) if bet.parent_bet_id else None
            if parent is not None and parent.proposal_status == 'pending':
                parent.proposal_status = 'none'
                events.append(('pago_withdrawn', {'original_bet_id': parent.bet_id, 'pago_bet_id': bet.bet_id},
                               f"user_{parent.user_id}"))
        elif bet.has_pending_proposal():
            proposal = _pending_proposal_for(bet)
            if proposal:
                events += _discard_proposal(bet, proposal,
                                            f"Refund for PAGO proposal on fight {fight.number}, bet cancelled",
                                            'pago_rejected')

        _cancel_pending_bet(bet, fight, f"Refund for cancelled bet on fight {fight.number}")

    log.info(f"Bet {bet.bet_id} cancelled by user {user_id}")
    events.append(('bet_cancelled', {'bet': bet.to_dict(), 'fight_id': fight.fight_id}, _event_channel(fight)))
    _announce_all(events)
    return bet


def cancel_unmatched_bets(fight, description, now=None):
    """
    Cancels and refunds every pending bet of a fight, proposals included.
    Runs inside the caller's transaction and returns the events to announce.
    """
    events = []
    pending = fight.bets.filter(Bet.status == 'pending').order_by(Bet.bet_id).all()
    # Proposals first so their targets are cleaned up before being cancelled
    pending.sort(key=lambda b: b.bet_type != 'pago')
    for bet in pending:
        if bet.bet_type == 'pago':
            bet.proposal_status = 'rejected'
            parent = db.session.get(Bet, bet.parent_bet_id) if bet.parent_bet_id else None
            if parent is not None and parent.proposal_status == 'pending':
                parent.proposal_status = 'rejected'
        _cancel_pending_bet(bet, fight, description, now=now)
        events.append(('bet_cancelled', {'bet_id': bet.bet_id, 'fight_id': fight.fight_id,
                                         'reason': description}, f"user_{bet.user_id}"))
    if pending:
        log.info(f"Cancelled {len(pending)} unmatched bets on fight {fight.fight_id}")
    return events


# =============================================================================
# PAGO PROPOSALS
# =============================================================================

def propose_pago(bet_id, user_id, pago_amount):
    """
    Offers to take the other corner of a pending flat bet while risking less
    than its amount. The target's owner accepts or rejects the proposal.
    """
    pago_amount = to_money(pago_amount, 'PAGO amount')

    with atomic():
        original_bet = Bet.query.filter_by(bet_id=bet_id).with_for_update().first()
        if (
            not original_bet or
            original_bet.bet_type != 'flat' or
            not original_bet.is_pending() or
            original_bet.matched_with is not None or
            not original_bet.is_offer
        ):
            raise BadRequestError("Invalid bet for PAGO proposal")
        if original_bet.user_id == user_id:
            raise BadRequestError("You cannot propose a PAGO on your own bet")
        if original_bet.proposal_status == 'pending':
            raise ConflictError("This bet already has a pending PAGO proposal")
        if pago_amount <= 0:
            raise BadRequestError("PAGO amount must be positive")
        if pago_amount >= original_bet.amount:
            raise BadRequestError("PAGO amount must be less than original bet amount")
        validate_bet_amount(pago_amount, 'PAGO amount')

        fight = original_bet.fight
        if not fight.can_accept_bets():
            raise BadRequestError("Betting is closed for this fight")
        _get_bettor(user_id)
        _ensure_no_bet_on_fight(fight.fight_id, user_id)

        wallet = lock_wallet(user_id)
        if not wallet or not wallet.freeze_amount(pago_amount):
            raise BadRequestError("Insufficient available balance")

        pot = original_bet.amount + pago_amount
        pago_bet = Bet(
            fight_id=fight.fight_id,
            user_id=user_id,
            side=opposite_side(original_bet.side),
            amount=pago_amount,
            potential_win=pot,
            status='pending',
            bet_type='pago',
            proposal_status='pending',
            parent_bet_id=original_bet.bet_id,
            is_offer=False,
            terms={
                'ratio': _ratio(pago_amount, pot),
                'is_offer': False,
                'pago_amount': float(pago_amount),
                'proposed_by': user_id,
            },
        )
        _insert_bet(pago_bet)

        original_bet.proposal_status = 'pending'
        adjust_counters(fight, 1, pago_amount)
        _record_stake(wallet, pago_bet, fight, f"PAGO proposal on fight {fight.number}",
                      original_bet_id=original_bet.bet_id)

    log.info(f"PAGO {pago_amount} proposed by user {user_id} on bet {original_bet.bet_id}")
    announce_event('pago_proposed', {
        'original_bet': original_bet.to_dict(),
        'pago_bet': pago_bet.to_dict(),
    }, channel=f"user_{original_bet.user_id}")
    return pago_bet


def accept_pago(original_bet_id, user_id):
    """Owner of the target bet accepts the pending proposal. Returns (original_bet, pago_bet)."""
    with atomic():
        original_bet = Bet.query.filter_by(bet_id=original_bet_id).with_for_update().first()
        if (
            not original_bet or
            original_bet.user_id != user_id or
            original_bet.proposal_status != 'pending'
        ):
            raise BadRequestError("Invalid bet for accepting PAGO proposal")

        pago_bet = _pending_proposal_for(original_bet)
        if not pago_bet:
            raise NotFoundError("PAGO proposal not found")

        fight = original_bet.fight
        if not fight.can_accept_bets():
            raise BadRequestError("Betting is closed for this fight")

        if not _claim_pending_bet(original_bet, pago_bet.bet_id):
            raise ConflictError("This bet was already matched")
        if not _claim_pending_bet(pago_bet, original_bet.bet_id):
            raise ConflictError("PAGO proposal is no longer available")

        pot = original_bet.amount + pago_bet.amount
        original_bet.potential_win = pot
        pago_bet.potential_win = pot
        original_bet.proposal_status = 'accepted'
        pago_bet.proposal_status = 'accepted'

    log.info(f"PAGO proposal {pago_bet.bet_id} accepted on bet {original_bet.bet_id}")
    _announce_all([
        ('pago_accepted', {'original_bet': original_bet.to_dict(), 'pago_bet': pago_bet.to_dict()},
         f"user_{pago_bet.user_id}"),
        ('bet_matched', {'offer_bet': original_bet.to_dict(), 'accept_bet': pago_bet.to_dict(),
                         'fight_id': fight.fight_id}, _event_channel(fight)),
    ])
    return original_bet, pago_bet


def reject_pago(original_bet_id, user_id):
    with atomic():
        original_bet = Bet.query.filter_by(bet_id=original_bet_id).with_for_update().first()
        if (
            not original_bet or
            original_bet.user_id != user_id or
            original_bet.proposal_status != 'pending'
        ):
            raise BadRequestError("Invalid bet for rejecting PAGO proposal")

        pago_bet = _pending_proposal_for(original_bet)
        if not pago_bet:
            raise NotFoundError("PAGO proposal not found")

        fight = original_bet.fight
        events = _discard_proposal(original_bet, pago_bet,
                                   f"Refund for rejected PAGO proposal on fight {fight.number}",
                                   'pago_rejected')

    log.info(f"PAGO proposal on bet {original_bet.bet_id} rejected by user {user_id}")
    _announce_all(events)
    return original_bet


def expire_pago_proposals(now=None):
    """
    Rejects PAGO proposals left unanswered for longer than
    PAGO_PROPOSAL_TIMEOUT_SECONDS. Returns how many expired.
    """
    now = now or datetime.now(timezone.utc)
    timeout = int(current_app.config.get('PAGO_PROPOSAL_TIMEOUT_SECONDS', 180))
    cutoff = now - timedelta(seconds=timeout)

    stale_ids = [b.bet_id for b in Bet.query.filter(
        Bet.bet_type == 'pago',
        Bet.proposal_status == 'pending',
        Bet.status == 'pending',
        Bet.created_at <= cutoff,
    ).all()]

    expired = 0
    for proposal_id in stale_ids:
        try:
            with atomic():
                proposal = Bet.query.filter_by(bet_id=proposal_id, proposal_status='pending',
                                               status='pending').with_for_update().first()
                if not proposal:
                    continue
                original_bet = db.session.get(Bet, proposal.parent_bet_id) if proposal.parent_bet_id else None
                events = _discard_proposal(original_bet, proposal,
                                           f"Refund for expired PAGO proposal on fight {proposal.fight.number}",
                                           'pago_expired')
            _announce_all(events)
            expired += 1
        except Exception as e:
            log.error(f"Failed to expire PAGO proposal {proposal_id}: {e}", exc_info=True)

    if expired:
        log.info(f"Expired {expired} PAGO proposal(s) older than {timeout}s")
    return expired


def get_pending_proposals(user_id):
    """PAGO proposals waiting for an answer on the user's bets."""
    target = aliased(Bet)
    return Bet.query.join(target, Bet.parent_bet_id == target.bet_id).filter(
        target.user_id == user_id,
        Bet.bet_type == 'pago',
        Bet.proposal_status == 'pending',
        Bet.status == 'pending',
    ).order_by(Bet.created_at.desc()).all()


# =============================================================================
# STATS
# =============================================================================

def get_bet_stats(user_id):
    completed = Bet.query.filter_by(user_id=user_id, status='completed')
    total_bets = completed.count()
    won = completed.filter(Bet.result == 'win').all()
    lost = completed.filter(Bet.result == 'loss').all()

    total_won = sum((b.potential_win - b.amount for b in won), ZERO)
    total_lost = sum((b.amount for b in lost), ZERO)
    win_rate = round(len(won) / total_bets * 100, 2) if total_bets else 0.0

    return {
        'total_bets': total_bets,
        'won_bets': len(won),
        'lost_bets': len(lost),
        'win_rate': win_rate,
        'total_won': float(total_won),
        'total_lost': float(total_lost),
        'net_profit': float(total_won - total_lost),
    }
