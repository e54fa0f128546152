from decimal import Decimal

import pytest

from palenque import db
from palenque.api.settlement import settle_bets_for_fight
from palenque.models import Bet, Fight, Wallet, WalletTransaction
from palenque.services import betting_service, fight_service
from palenque.sse_events import subscribe, unsubscribe
from conftest import wallet_of, ledger_balance, ledger_frozen


def _matched_pair(fight, red_user, blue_user, amount='100'):
    red = betting_service.create_bet(fight.fight_id, red_user.user_id, 'red', amount)
    blue, _ = betting_service.accept_bet(red.bet_id, blue_user.user_id)
    return red.bet_id, blue.bet_id


def _go_live(fight, operator):
    fight_service.close_betting(fight.fight_id, operator.user_id, 'operator')


def _total_balance():
    return sum((w.balance for w in Wallet.query.all()), Decimal('0'))


def _assert_ledgers(*users):
    for user in users:
        wallet = wallet_of(user)
        assert ledger_balance(wallet) == wallet.balance
        assert ledger_frozen(wallet) == wallet.frozen_amount


def test_red_wins_moves_loser_stake_to_winner(alice, bob, fight, operator):
    red_id, blue_id = _matched_pair(fight, alice, bob)
    _go_live(fight, operator)
    before = _total_balance()

    success, message = settle_bets_for_fight(fight.fight_id, 'red')

    assert success, message
    assert wallet_of(alice).balance == Decimal('1100.00')
    assert wallet_of(bob).balance == Decimal('900.00')
    assert wallet_of(alice).frozen_amount == Decimal('0.00')
    assert wallet_of(bob).frozen_amount == Decimal('0.00')
    assert _total_balance() == before

    red_bet, blue_bet = db.session.get(Bet, red_id), db.session.get(Bet, blue_id)
    assert (red_bet.status, red_bet.result) == ('completed', 'win')
    assert (blue_bet.status, blue_bet.result) == ('completed', 'loss')
    assert red_bet.settlement_time is not None

    win = WalletTransaction.query.filter_by(related_bet_id=red_id, type='bet-win').one()
    assert win.amount == Decimal('100.00')
    assert win.status == 'completed'
    assert WalletTransaction.query.filter_by(related_bet_id=red_id, type='bet-loss').one().status == 'cancelled'
    assert WalletTransaction.query.filter_by(related_bet_id=blue_id, type='bet-loss').one().status == 'completed'
    _assert_ledgers(alice, bob)

    fight = db.session.get(Fight, fight.fight_id)
    assert fight.status == 'completed'
    assert fight.result == 'red'
    assert fight.event.completed_fights == 1


def test_blue_wins_accepts_spanish_result(alice, bob, fight, operator):
    _matched_pair(fight, alice, bob)
    _go_live(fight, operator)

    success, _ = settle_bets_for_fight(fight.fight_id, 'azul')

    assert success
    assert wallet_of(alice).balance == Decimal('900.00')
    assert wallet_of(bob).balance == Decimal('1100.00')
    _assert_ledgers(alice, bob)


@pytest.mark.parametrize('result, alice_balance, bob_balance', [
    ('red', Decimal('1100.00'), Decimal('900.00')),
    ('blue', Decimal('800.00'), Decimal('1200.00')),
])
def test_doy_pair_settles_each_stake(alice, bob, fight, operator, result, alice_balance, bob_balance):
    offer = betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '200',
                                       bet_type='doy', doy_amount='100')
    betting_service.accept_bet(offer.bet_id, bob.user_id)
    _go_live(fight, operator)

    success, _ = settle_bets_for_fight(fight.fight_id, result)

    assert success
    assert wallet_of(alice).balance == alice_balance
    assert wallet_of(bob).balance == bob_balance
    _assert_ledgers(alice, bob)


def test_pago_pair_settlement(alice, bob, fight, operator):
    bet = betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '100')
    betting_service.propose_pago(bet.bet_id, bob.user_id, '60')
    betting_service.accept_pago(bet.bet_id, alice.user_id)
    _go_live(fight, operator)

    success, _ = settle_bets_for_fight(fight.fight_id, 'blue')

    assert success
    assert wallet_of(bob).balance == Decimal('1100.00')
    assert wallet_of(alice).balance == Decimal('900.00')
    _assert_ledgers(alice, bob)


@pytest.mark.parametrize('result', ['draw', 'cancelled'])
def test_draw_and_cancelled_refund_both(alice, bob, fight, operator, result):
    red_id, blue_id = _matched_pair(fight, alice, bob)
    _go_live(fight, operator)

    success, _ = settle_bets_for_fight(fight.fight_id, result)

    assert success
    for user in (alice, bob):
        wallet = wallet_of(user)
        assert wallet.balance == Decimal('1000.00')
        assert wallet.frozen_amount == Decimal('0.00')
    for bet_id in (red_id, blue_id):
        bet = db.session.get(Bet, bet_id)
        assert bet.status == 'completed'
        assert bet.result == result
        assert WalletTransaction.query.filter_by(related_bet_id=bet_id, type='bet-refund').count() == 1
    _assert_ledgers(alice, bob)


def test_close_betting_refunds_unmatched_bets(alice, bob, carol, fight, operator):
    _matched_pair(fight, alice, bob)
    lonely = betting_service.create_bet(fight.fight_id, carol.user_id, 'red', '300')
    _go_live(fight, operator)

    lonely = db.session.get(Bet, lonely.bet_id)
    assert lonely.status == 'cancelled'
    assert wallet_of(carol).frozen_amount == Decimal('0.00')
    assert wallet_of(carol).balance == Decimal('1000.00')

    success, message = settle_bets_for_fight(fight.fight_id, 'red')
    assert success
    assert '2 bets processed' in message
    _assert_ledgers(alice, bob, carol)


def test_settlement_requires_live_fight(alice, bob, fight, operator):
    _matched_pair(fight, alice, bob)

    success, message = settle_bets_for_fight(fight.fight_id, 'red')
    assert not success
    assert 'only live fights' in message
    assert wallet_of(alice).balance == Decimal('1000.00')


def test_settlement_guards(alice, bob, fight, operator):
    _matched_pair(fight, alice, bob)
    _go_live(fight, operator)

    assert settle_bets_for_fight(999, 'red') == (False, "Fight ID 999 not found.")
    assert not settle_bets_for_fight(fight.fight_id, 'purple')[0]

    assert settle_bets_for_fight(fight.fight_id, 'red')[0]
    success, message = settle_bets_for_fight(fight.fight_id, 'blue')
    assert not success
    assert 'already been settled' in message
    assert wallet_of(alice).balance == Decimal('1100.00')


def test_stats_after_settlement(alice, bob, fight, operator):
    _matched_pair(fight, alice, bob, amount='250')
    _go_live(fight, operator)
    settle_bets_for_fight(fight.fight_id, 'red')

    winner = betting_service.get_bet_stats(alice.user_id)
    assert winner['total_bets'] == 1
    assert winner['won_bets'] == 1
    assert winner['win_rate'] == 100.0
    assert winner['total_won'] == 250.0
    assert winner['net_profit'] == 250.0

    loser = betting_service.get_bet_stats(bob.user_id)
    assert loser['lost_bets'] == 1
    assert loser['total_lost'] == 250.0
    assert loser['net_profit'] == -250.0


@pytest.mark.parametrize('partner', ['missing', 'cancelled'])
def test_active_bet_without_partner_is_refunded(alice, carol, fight, operator, partner):
    bet = betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '100')
    matched_with = None
    if partner == 'cancelled':
        matched_with = betting_service.create_bet(fight.fight_id, carol.user_id, 'blue', '100').bet_id
        betting_service.cancel_bet(matched_with, carol.user_id)
    Bet.query.filter_by(bet_id=bet.bet_id).update({'status': 'active', 'matched_with': matched_with})
    db.session.commit()
    _go_live(fight, operator)

    success, message = settle_bets_for_fight(fight.fight_id, 'red')

    assert success
    assert '1 bets processed' in message
    bet = db.session.get(Bet, bet.bet_id)
    assert bet.status == 'completed'
    assert bet.result == 'cancelled'
    wallet = wallet_of(alice)
    assert wallet.balance == Decimal('1000.00')
    assert wallet.frozen_amount == Decimal('0.00')
    assert WalletTransaction.query.filter_by(related_bet_id=bet.bet_id, type='bet-refund').count() == 1
    _assert_ledgers(alice, carol)


def test_settlement_announces_refunded_stragglers(alice, fight):
    bet = betting_service.create_bet(fight.fight_id, alice.user_id, 'red', '100')
    Fight.query.filter_by(fight_id=fight.fight_id).update({'status': 'live'})
    db.session.commit()

    listener = subscribe([f"user_{alice.user_id}"])
    try:
        assert settle_bets_for_fight(fight.fight_id, 'blue')[0]
        events = [listener['queue'].get_nowait() for _ in range(listener['queue'].qsize())]
    finally:
        unsubscribe(listener)

    assert [e['type'] for e in events] == ['bet_cancelled', 'wallet_update']
    assert events[0]['data']['bet_id'] == bet.bet_id
    assert events[1]['data']['available_balance'] == 1000.0
    assert db.session.get(Bet, bet.bet_id).status == 'cancelled'
    _assert_ledgers(alice)
