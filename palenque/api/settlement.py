# palenque/api/settlement.py
from palenque.models import Fight, Bet, WalletTransaction
from palenque import db
from palenque.errors import BadRequestError, ServiceError
from palenque.services.betting_service import (
    cancel_unmatched_bets, lock_wallet, release_hold, release_stake, stake_transaction,
)
from palenque.utils.text_utils import normalize_result
from datetime import datetime, timezone
from palenque.sse_events import announce_event
import logging

log = logging.getLogger(__name__)


def _refund(bet, wallet, result, fight):
    release_stake(bet, wallet, f"Refund for bet on fight {fight.number} ({result})")
    bet.result = 'draw' if result == 'draw' else 'cancelled'


def _pay_out(winner, w_wallet, loser, l_wallet, fight):
    """Loser's stake moves to the winner; both holds are released."""
    release_hold(w_wallet, winner.amount)
    release_hold(l_wallet, loser.amount)
    if not l_wallet.deduct_balance(loser.amount):
        raise ServiceError(f"Wallet {l_wallet.wallet_id} cannot cover lost bet {loser.bet_id}", 500)
    w_wallet.add_balance(loser.amount)

    loser_stake = stake_transaction(loser)
    if loser_stake:
        loser_stake.status = 'completed'
        loser_stake.description = f"Lost bet on fight {fight.number}"
    else:
        db.session.add(WalletTransaction(
            wallet_id=l_wallet.wallet_id, type='bet-loss', amount=loser.amount, status='completed',
            description=f"Lost bet on fight {fight.number}",
            details={'bet_id': loser.bet_id, 'fight_id': fight.fight_id}, related_bet_id=loser.bet_id,
        ))

    winner_stake = stake_transaction(winner)
    if winner_stake:
        winner_stake.status = 'cancelled'
    db.session.add(WalletTransaction(
        wallet_id=w_wallet.wallet_id,
        type='bet-win',
        amount=loser.amount, # Net winnings, the stake itself was only frozen
        status='completed',
        description=f"Won bet on fight {fight.number}",
        details={'bet_id': winner.bet_id, 'fight_id': fight.fight_id, 'payout': float(winner.potential_win)},
        related_bet_id=winner.bet_id,
    ))
    winner.result = 'win'
    loser.result = 'loss'


def settle_bets_for_fight(fight_id, result, now=None):
    """
    Records the result of a live fight and settles every matched bet pair.
    Updates fight status, bet statuses, wallet balances and the transaction ledger.
    Returns a tuple: (success_boolean, message_string)
    """
    log.info(f"Attempting to settle fight ID: {fight_id} with result '{result}'")

    try:
        result = normalize_result(result)
    except BadRequestError as e:
        return False, e.message

    fight = db.session.get(Fight, fight_id)
    if not fight:
        return False, f"Fight ID {fight_id} not found."

    if fight.status == 'completed':
        return False, f"Fight ID {fight_id} has already been settled."

    if fight.status != 'live':
        return False, f"Fight ID {fight_id} is {fight.status}; only live fights can be settled."

    now = now or datetime.now(timezone.utc)
    active_bets = fight.bets.filter(Bet.status == 'active').order_by(Bet.bet_id).all()
    log.info(f"Found {len(active_bets)} active bets for fight ID: {fight_id}")

    affected_wallets = {}
    settled_ids = set()

    try:
        # --- Update Fight Record ---
        fight.status = 'completed'
        fight.result = result
        fight.end_time = now
        if fight.event:
            fight.event.completed_fights = (fight.event.completed_fights or 0) + 1

        # Anything still unmatched never had an opponent
        straggler_ids = [b.user_id for b in fight.bets.filter(Bet.status == 'pending')]
        straggler_events = cancel_unmatched_bets(fight, f"Refund for unmatched bet on fight {fight.number}", now=now)
        for user_id in straggler_ids:
            affected_wallets[user_id] = lock_wallet(user_id)

        # --- Process Each Matched Pair Once ---
        for bet in active_bets:
            if bet.bet_id in settled_ids:
                continue

            partner = db.session.get(Bet, bet.matched_with) if bet.matched_with else None
            wallet = lock_wallet(bet.user_id)
            affected_wallets[bet.user_id] = wallet

            if partner is None or partner.status != 'active' or partner.matched_with != bet.bet_id:
                log.warning(f"Bet ID {bet.bet_id} has no valid partner, refunding stake.")
                _refund(bet, wallet, 'cancelled', fight)
                pair = (bet,)
            else:
                partner_wallet = lock_wallet(partner.user_id)
                affected_wallets[partner.user_id] = partner_wallet
                if result in ('draw', 'cancelled'):
                    _refund(bet, wallet, result, fight)
                    _refund(partner, partner_wallet, result, fight)
                elif bet.side == result:
                    _pay_out(bet, wallet, partner, partner_wallet, fight)
                else:
                    _pay_out(partner, partner_wallet, bet, wallet, fight)
                pair = (bet, partner)

            for settled in pair:
                settled.status = 'completed'
                settled.settlement_time = now
                settled_ids.add(settled.bet_id)
                log.info(f"   Bet ID {settled.bet_id} (user {settled.user_id}, {settled.side}): {settled.result}")

        db.session.commit()
        log.info(f"Successfully settled fight {fight_id} and {len(settled_ids)} bets.")

    except Exception as e:
        db.session.rollback()
        log.error(f"ERROR during settlement for fight ID {fight_id}: {e}", exc_info=True)
        return False, f"An error occurred during settlement for fight {fight_id}."

    # --- Announce updates AFTER successful commit ---
    announce_event('fight_completed', {
        'fight_id': fight.fight_id,
        'event_id': fight.event_id,
        'result': result,
        'bets_settled': len(settled_ids),
    }, channel=f"event_{fight.event_id}")

    for event_type, data, channel in straggler_events:
        announce_event(event_type, data, channel=channel)

    for user_id, wallet in affected_wallets.items():
        announce_event('wallet_update', {
            'user_id': user_id,
            'balance': float(wallet.balance),
            'available_balance': float(wallet.available_balance),
            'reason': 'bet_settlement',
            'fight_id': fight.fight_id,
        }, channel=f"user_{user_id}")

    return True, f"Fight {fight_id} settled. Result: {result}. {len(settled_ids)} bets processed."
