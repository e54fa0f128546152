from decimal import Decimal

from palenque.models import Bet, User, Wallet
from conftest import wallet_of


def test_register_login_and_profile(client):
    response = client.post('/api/auth/register', json={
        'username': 'gallero', 'email': 'Gallero@Example.com', 'password': 'secret123', 'role': 'gallera'})
    assert response.status_code == 201
    user = User.find_by_username('gallero')
    assert user.email == 'gallero@example.com'
    assert user.role == 'gallera'
    assert Wallet.query.filter_by(user_id=user.user_id).count() == 1

    duplicate = client.post('/api/auth/register', json={
        'username': 'gallero', 'email': 'other@example.com', 'password': 'secret123'})
    assert duplicate.status_code == 400

    bad_login = client.post('/api/auth/login', json={'username': 'gallero', 'password': 'nope'})
    assert bad_login.status_code == 401

    login = client.post('/api/auth/login', json={'username': 'gallero', 'password': 'secret123'})
    assert login.status_code == 200
    tokens = login.get_json()

    profile = client.get('/api/user/profile', headers={'Authorization': f"Bearer {tokens['access_token']}"})
    assert profile.status_code == 200
    assert profile.get_json()['wallet']['balance'] == 0.0

    refresh = client.post('/api/auth/refresh', headers={'Authorization': f"Bearer {tokens['refresh_token']}"})
    assert refresh.status_code == 200
    assert 'access_token' in refresh.get_json()


def test_register_cannot_pick_staff_role(client):
    response = client.post('/api/auth/register', json={
        'username': 'sneaky', 'email': 'sneaky@example.com', 'password': 'secret123', 'role': 'admin'})
    assert response.status_code == 400
    assert User.find_by_username('sneaky') is None


def test_protected_routes_need_token(client):
    assert client.get('/api/wallet').status_code == 401
    assert client.post('/api/bets', json={'fight_id': 1, 'side': 'red', 'amount': '100'}).status_code == 401


def test_place_bet_and_auto_match(client, alice, bob, fight, auth_header):
    first = client.post('/api/bets', headers=auth_header(alice),
                        json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '100'})
    assert first.status_code == 201
    assert first.get_json()['matched'] is False

    second = client.post('/api/bets', headers=auth_header(bob),
                         json={'fight_id': fight.fight_id, 'side': 'azul', 'amount': '100'})
    body = second.get_json()
    assert second.status_code == 201
    assert body['matched'] is True
    assert body['matched_bet']['bet_id'] == first.get_json()['bet']['bet_id']
    assert Bet.query.filter_by(status='active').count() == 2


def test_service_errors_render_as_json(client, alice, fight, auth_header):
    response = client.post('/api/bets', headers=auth_header(alice),
                           json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '5000'})
    assert response.status_code == 400
    assert response.get_json() == {'message': 'Insufficient available balance', 'status_code': 400}

    missing = client.post('/api/bets/999/accept', headers=auth_header(alice))
    assert missing.status_code == 404
    assert missing.get_json()['message'] == 'Bet not found'


def test_operator_cannot_place_bets(client, operator, fight, auth_header):
    response = client.post('/api/bets', headers=auth_header(operator),
                           json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '100'})
    assert response.status_code == 403


def test_accept_cancel_and_list_bets(client, alice, bob, carol, fight, auth_header):
    offer = client.post('/api/bets', headers=auth_header(alice),
                        json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '200',
                              'bet_type': 'doy', 'doy_amount': '150'}).get_json()['bet']

    available = client.get(f"/api/bets/available/{fight.fight_id}", headers=auth_header(bob))
    assert [b['bet_id'] for b in available.get_json()['bets']] == [offer['bet_id']]

    accepted = client.post(f"/api/bets/{offer['bet_id']}/accept", headers=auth_header(bob))
    assert accepted.status_code == 201
    assert accepted.get_json()['bet']['amount'] == 150.0

    cancelled = client.put(f"/api/bets/{offer['bet_id']}/cancel", headers=auth_header(alice))
    assert cancelled.status_code == 400

    own = client.get('/api/bets', headers=auth_header(alice))
    assert own.get_json()['total'] == 1
    assert own.get_json()['bets'][0]['status'] == 'active'


def test_compatible_bets_query(client, alice, bob, fight, auth_header):
    client.post('/api/bets', headers=auth_header(alice),
                json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '110'})
    response = client.get(f"/api/bets/available/{fight.fight_id}?side=blue&amount=100", headers=auth_header(bob))
    assert response.status_code == 200
    assert len(response.get_json()['bets']) == 1


def test_pago_flow_over_http(client, alice, bob, fight, auth_header):
    offer = client.post('/api/bets', headers=auth_header(alice),
                        json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '100'}).get_json()['bet']

    proposal = client.post(f"/api/bets/{offer['bet_id']}/propose-pago", headers=auth_header(bob),
                           json={'pago_amount': '70'})
    assert proposal.status_code == 201
    assert proposal.get_json()['bet']['side'] == 'blue'

    pending = client.get('/api/bets/pending-proposals', headers=auth_header(alice))
    assert len(pending.get_json()['proposals']) == 1

    accepted = client.put(f"/api/bets/{offer['bet_id']}/accept-proposal", headers=auth_header(alice))
    assert accepted.status_code == 200
    assert accepted.get_json()['bet']['potential_win'] == 170.0


def test_edit_bet_over_http(client, alice, fight, auth_header):
    bet = client.post('/api/bets', headers=auth_header(alice),
                      json={'fight_id': fight.fight_id, 'side': 'red', 'amount': '100'}).get_json()['bet']
    response = client.put(f"/api/bets/{bet['bet_id']}", headers=auth_header(alice), json={'amount': '120'})
    assert response.status_code == 200
    assert response.get_json()['bet']['amount'] == 120.0
    assert wallet_of(alice).frozen_amount == Decimal('120.00')


def test_event_and_fight_management(client, admin, operator, alice, bob, auth_header):
    created = client.post('/api/events', headers=auth_header(admin), json={
        'name': 'Feria de San Marcos', 'scheduled_date': '2026-11-20T21:00:00+00:00',
        'operator_id': operator.user_id})
    assert created.status_code == 201
    event_id = created.get_json()['event']['event_id']

    assert client.post('/api/events', headers=auth_header(operator), json={
        'name': 'x', 'scheduled_date': '2026-11-20T21:00:00+00:00'}).status_code == 403

    fight = client.post('/api/fights', headers=auth_header(operator), json={
        'event_id': event_id, 'red_corner': 'Giro', 'blue_corner': 'Colorado'})
    assert fight.status_code == 201
    fight_id = fight.get_json()['fight']['fight_id']

    assert client.post(f"/api/fights/{fight_id}/open-betting", headers=auth_header(operator),
                       json={'duration_minutes': 10}).status_code == 200

    client.post('/api/bets', headers=auth_header(alice), json={'fight_id': fight_id, 'side': 'red', 'amount': '100'})
    client.post('/api/bets', headers=auth_header(bob), json={'fight_id': fight_id, 'side': 'blue', 'amount': '100'})

    assert client.post(f"/api/fights/{fight_id}/close-betting", headers=auth_header(operator),
                       json={}).status_code == 200
    result = client.post(f"/api/fights/{fight_id}/result", headers=auth_header(operator), json={'result': 'red'})
    assert result.status_code == 200
    assert result.get_json()['fight']['status'] == 'completed'
    assert wallet_of(alice).balance == Decimal('1100.00')

    again = client.post(f"/api/fights/{fight_id}/result", headers=auth_header(operator), json={'result': 'blue'})
    assert again.status_code == 400

    listing = client.get(f"/api/events/{event_id}/fights")
    assert listing.get_json()['fights'][0]['result'] == 'red'
    assert client.get('/api/events/999').status_code == 404


def test_wallet_endpoints_and_admin_review(client, alice, admin, auth_header):
    deposit = client.post('/api/wallet/deposit', headers=auth_header(alice),
                          json={'amount': '500', 'payment_method': 'transfer'})
    assert deposit.status_code == 201
    transaction_id = deposit.get_json()['transaction']['transaction_id']

    assert client.get('/api/admin/transactions/pending', headers=auth_header(alice)).status_code == 403
    pending = client.get('/api/admin/transactions/pending', headers=auth_header(admin))
    assert [t['transaction_id'] for t in pending.get_json()['transactions']] == [transaction_id]

    approved = client.post(f"/api/admin/transactions/{transaction_id}/approve", headers=auth_header(admin), json={})
    assert approved.status_code == 200

    wallet = client.get('/api/wallet', headers=auth_header(alice)).get_json()['wallet']
    assert wallet['balance'] == 1500.0

    withdraw = client.post('/api/wallet/withdraw', headers=auth_header(alice),
                           json={'amount': '200', 'account_number': '9876543210'})
    assert withdraw.status_code == 201
    assert withdraw.get_json()['wallet']['available_balance'] == 1300.0

    history = client.get('/api/wallet/transactions?type=withdrawal', headers=auth_header(alice))
    assert history.get_json()['total'] == 1


def test_register_strips_username_before_duplicate_check(client, alice):
    response = client.post('/api/auth/register', json={
        'username': ' alice ', 'email': 'alice2@example.com', 'password': 'secret123'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'A user with that username already exists'

    login = client.post('/api/auth/login', json={'username': ' alice', 'password': 'secret123'})
    assert login.status_code == 200


def test_admin_creates_and_manages_operator(client, admin, alice, auth_header):
    created = client.post('/api/admin/users', headers=auth_header(admin), json={
        'username': 'juez', 'email': 'juez@example.com', 'password': 'secret123', 'role': 'operator'})
    assert created.status_code == 201
    operator_id = created.get_json()['user']['user_id']

    operators = client.get('/api/admin/users/operators', headers=auth_header(admin))
    assert [u['user_id'] for u in operators.get_json()['operators']] == [operator_id]

    event = client.post('/api/events', headers=auth_header(admin), json={
        'name': 'Noche de Gallos', 'scheduled_date': '2026-11-20T21:00:00+00:00', 'operator_id': operator_id})
    assert event.status_code == 201

    deactivated = client.put(f"/api/admin/users/{operator_id}/status", headers=auth_header(admin),
                             json={'active': False, 'reason': 'Suspended'})
    assert deactivated.status_code == 200
    assert deactivated.get_json()['user']['active'] is False
    assert client.post('/api/auth/login', json={'username': 'juez', 'password': 'secret123'}).status_code == 401
    assert client.get('/api/admin/users/operators', headers=auth_header(admin)).get_json()['operators'] == []

    promoted = client.put(f"/api/admin/users/{alice.user_id}/role", headers=auth_header(admin),
                          json={'role': 'gallera'})
    assert promoted.status_code == 200
    assert User.find_by_username('alice').role == 'gallera'

    listing = client.get('/api/admin/users?role=gallera', headers=auth_header(admin))
    assert [u['username'] for u in listing.get_json()['users']] == ['alice']

    detail = client.get(f"/api/admin/users/{alice.user_id}", headers=auth_header(admin))
    assert detail.get_json()['wallet']['balance'] == 1000.0
    assert client.get('/api/admin/users/999', headers=auth_header(admin)).status_code == 404


def test_user_management_is_admin_only(client, operator, alice, auth_header):
    assert client.post('/api/admin/users', headers=auth_header(operator), json={
        'username': 'x_op', 'email': 'x@example.com', 'password': 'secret123', 'role': 'operator'}).status_code == 403
    assert client.put(f"/api/admin/users/{alice.user_id}/status", headers=auth_header(operator),
                      json={'active': False}).status_code == 403
    assert client.get('/api/admin/users', headers=auth_header(alice)).status_code == 403


def test_admin_user_input_validation(client, admin, alice, auth_header):
    bad_role = client.post('/api/admin/users', headers=auth_header(admin), json={
        'username': 'juez', 'email': 'juez@example.com', 'password': 'secret123', 'role': 'referee'})
    assert bad_role.status_code == 400
    assert client.put(f"/api/admin/users/{alice.user_id}/status", headers=auth_header(admin),
                      json={}).status_code == 400
    assert client.get('/api/admin/users?active=maybe', headers=auth_header(admin)).status_code == 400
