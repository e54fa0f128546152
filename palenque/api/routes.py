# palenque/api/routes.py
"""
API Routes for the Palenque Betting Backend

Contains all REST API endpoints for authentication, events and fights,
peer-to-peer betting (including PAGO proposals), wallets and their admin
review, plus the Server-Sent Events stream for real-time updates.
Resources only parse and authorize; the services do the work and raise
ServiceError subclasses that the app renders as JSON.
"""

# =============================================================================
# IMPORTS
# =============================================================================
from flask import request, Response, stream_with_context
from flask_restful import Resource, reqparse, inputs
from flask_jwt_extended import jwt_required
from palenque.models import Event, Fight, User, Bet, USER_ROLES
from palenque import db
from datetime import datetime, timezone
import logging
from .auth import issue_tokens, current_user_id, current_role, role_required
from .settlement import settle_bets_for_fight
from palenque.sse_events import sse_event_stream_generator
from palenque.services import betting_service, fight_service, user_service, wallet_service

log = logging.getLogger(__name__)

BETTORS = ('user', 'gallera')
MANAGERS = ('admin', 'operator')

# =============================================================================
# REQUEST PARSERS
# =============================================================================
_user_parser = reqparse.RequestParser()
_user_parser.add_argument('username', type=str, required=True, help='Username cannot be blank', location='json')
_user_parser.add_argument('email', type=str, required=True, help='Email cannot be blank', location='json')
_user_parser.add_argument('password', type=str, required=True, help='Password cannot be blank', location='json')
_user_parser.add_argument('role', type=str, default='user', choices=BETTORS, help='Role must be user or gallera', location='json')

_login_parser = reqparse.RequestParser()
_login_parser.add_argument('username', type=str, required=True, help='Username cannot be blank', location='json')
_login_parser.add_argument('password', type=str, required=True, help='Password cannot be blank', location='json')

_event_parser = reqparse.RequestParser()
_event_parser.add_argument('name', type=str, required=True, help='Event name cannot be blank', location='json')
_event_parser.add_argument('scheduled_date', type=inputs.datetime_from_iso8601, required=True, help='Scheduled date must be an ISO 8601 datetime', location='json')
_event_parser.add_argument('venue', type=str, location='json')
_event_parser.add_argument('operator_id', type=int, location='json')

_event_status_parser = reqparse.RequestParser()
_event_status_parser.add_argument('status', type=str, required=True, help='Status cannot be blank', location='json')

_fight_parser = reqparse.RequestParser()
_fight_parser.add_argument('event_id', type=int, required=True, help='Event ID cannot be blank', location='json')
_fight_parser.add_argument('red_corner', type=str, required=True, help='Red corner cannot be blank', location='json')
_fight_parser.add_argument('blue_corner', type=str, required=True, help='Blue corner cannot be blank', location='json')
_fight_parser.add_argument('number', type=int, location='json')
_fight_parser.add_argument('weight', type=float, location='json')
_fight_parser.add_argument('notes', type=str, location='json')

_result_parser = reqparse.RequestParser()
_result_parser.add_argument('result', type=str, required=True, help='Result is required (red, blue, draw or cancelled)', location='json')

_bet_parser = reqparse.RequestParser()
_bet_parser.add_argument('fight_id', type=int, required=True, help='Fight ID cannot be blank', location='json')
_bet_parser.add_argument('side', type=str, required=True, help='Side cannot be blank', location='json')
_bet_parser.add_argument('amount', type=str, required=True, help='Bet amount cannot be blank', location='json')
_bet_parser.add_argument('bet_type', type=str, default='flat', location='json')
_bet_parser.add_argument('doy_amount', type=str, location='json')
_bet_parser.add_argument('is_offer', type=inputs.boolean, default=True, location='json')

_bet_update_parser = reqparse.RequestParser()
_bet_update_parser.add_argument('amount', type=str, location='json')
_bet_update_parser.add_argument('side', type=str, location='json')
_bet_update_parser.add_argument('doy_amount', type=str, location='json')

_pago_parser = reqparse.RequestParser()
_pago_parser.add_argument('pago_amount', type=str, required=True, help='PAGO amount cannot be blank', location='json')

_deposit_parser = reqparse.RequestParser()
_deposit_parser.add_argument('amount', type=str, required=True, help='Deposit amount cannot be blank', location='json')
_deposit_parser.add_argument('payment_method', type=str, required=True, help='Payment method cannot be blank', location='json')
_deposit_parser.add_argument('reference', type=str, location='json')

_withdraw_parser = reqparse.RequestParser()
_withdraw_parser.add_argument('amount', type=str, required=True, help='Withdrawal amount cannot be blank', location='json')
_withdraw_parser.add_argument('account_number', type=str, required=True, help='Account number cannot be blank', location='json')
_withdraw_parser.add_argument('account_type', type=str, location='json')
_withdraw_parser.add_argument('bank_name', type=str, location='json')

_admin_user_parser = reqparse.RequestParser()
_admin_user_parser.add_argument('username', type=str, required=True, help='Username cannot be blank', location='json')
_admin_user_parser.add_argument('email', type=str, required=True, help='Email cannot be blank', location='json')
_admin_user_parser.add_argument('password', type=str, required=True, help='Password cannot be blank', location='json')
_admin_user_parser.add_argument('role', type=str, required=True, choices=USER_ROLES, help='Invalid role', location='json')

_user_status_parser = reqparse.RequestParser()
_user_status_parser.add_argument('active', type=inputs.boolean, required=True, help='active must be a boolean', location='json')
_user_status_parser.add_argument('reason', type=str, location='json')

_user_role_parser = reqparse.RequestParser()
_user_role_parser.add_argument('role', type=str, required=True, choices=USER_ROLES, help='Invalid role', location='json')
_user_role_parser.add_argument('reason', type=str, location='json')


def _optional_body():
    return request.get_json(silent=True) or {}

# =============================================================================
# AUTHENTICATION RESOURCES
# =============================================================================

class UserRegister(Resource):
    def post(self):
        data = _user_parser.parse_args()
        user = user_service.create_user(data['username'], data['email'], data['password'], role=data['role'])
        return {'message': 'User created successfully.', 'user': user.to_dict()}, 201


class UserLogin(Resource):
    def post(self):
        data = _login_parser.parse_args()
        user = User.find_by_username(data['username'].strip())

        if user and user.active and user.check_password(data['password']):
            user.last_login = datetime.now(timezone.utc)
            db.session.commit()
            return dict(issue_tokens(user), user=user.to_dict()), 200

        return {'message': 'Invalid credentials'}, 401


class TokenRefresh(Resource):
    @jwt_required(refresh=True)
    def post(self):
        user = db.session.get(User, current_user_id())
        if not user or not user.active:
            return {'message': 'User not found'}, 404
        return {'access_token': issue_tokens(user)['access_token']}, 200

# =============================================================================
# USER PROFILE
# =============================================================================

class UserProfile(Resource):
    @jwt_required()
    def get(self):
        user = db.session.get(User, current_user_id())
        if not user:
            return {"message": "User not found"}, 404

        wallet = wallet_service.get_or_create_wallet(user.user_id)
        return dict(user.to_dict(), wallet=wallet.to_dict()), 200

# =============================================================================
# EVENT AND FIGHT RESOURCES
# =============================================================================

class EventListResource(Resource):
    def get(self):
        """List events, optionally filtered by status"""
        query = Event.query
        status = request.args.get('status')
        if status:
            query = query.filter(Event.status == status)
        events = query.order_by(Event.scheduled_date.asc()).all()
        return {'events': [e.to_dict() for e in events]}, 200

    @role_required('admin')
    def post(self):
        data = _event_parser.parse_args()
        event = fight_service.create_event(
            name=data['name'],
            scheduled_date=data['scheduled_date'],
            venue=data['venue'],
            operator_id=data['operator_id'],
        )
        return {'message': 'Event created', 'event': event.to_dict()}, 201


class EventResource(Resource):
    def get(self, event_id):
        event = db.get_or_404(Event, event_id)
        return {'event': event.to_dict()}, 200


class EventStatusResource(Resource):
    @role_required(*MANAGERS)
    def put(self, event_id):
        data = _event_status_parser.parse_args()
        event = fight_service.update_event_status(event_id, data['status'], current_user_id(), current_role())
        return {'message': f"Event status set to {event.status}", 'event': event.to_dict()}, 200


class EventFightListResource(Resource):
    def get(self, event_id):
        event = db.get_or_404(Event, event_id)
        fights = event.fights.order_by(Fight.number.asc()).all()
        return {'event': event.to_dict(), 'fights': [f.to_dict() for f in fights]}, 200


class FightCreateResource(Resource):
    @role_required(*MANAGERS)
    def post(self):
        data = _fight_parser.parse_args()
        fight = fight_service.create_fight(
            event_id=data['event_id'],
            red_corner=data['red_corner'],
            blue_corner=data['blue_corner'],
            user_id=current_user_id(),
            role=current_role(),
            number=data['number'],
            weight=data['weight'],
            notes=data['notes'],
        )
        return {'message': 'Fight created', 'fight': fight.to_dict()}, 201


class FightResource(Resource):
    def get(self, fight_id):
        fight = db.get_or_404(Fight, fight_id)
        return {'fight': fight.to_dict()}, 200


class FightOpenBettingResource(Resource):
    @role_required(*MANAGERS)
    def post(self, fight_id):
        duration = _optional_body().get('duration_minutes')
        if duration is not None:
            try:
                duration = int(duration)
            except (TypeError, ValueError):
                return {'message': 'duration_minutes must be an integer'}, 400
        fight = fight_service.open_betting(fight_id, current_user_id(), current_role(), duration_minutes=duration)
        return {'message': 'Betting opened', 'fight': fight.to_dict()}, 200


class FightCloseBettingResource(Resource):
    @role_required(*MANAGERS)
    def post(self, fight_id):
        fight = fight_service.close_betting(fight_id, current_user_id(), current_role())
        return {'message': 'Betting closed', 'fight': fight.to_dict()}, 200


class FightResultResource(Resource):
    @role_required(*MANAGERS)
    def post(self, fight_id):
        data = _result_parser.parse_args()
        fight = fight_service.get_fight(fight_id)
        fight_service.check_event_access(fight.event, current_user_id(), current_role())

        success, message = settle_bets_for_fight(fight_id, data['result'])
        if not success:
            return {'message': message}, 400
        return {'message': message, 'fight': db.session.get(Fight, fight_id).to_dict()}, 200


class FightCancelResource(Resource):
    @role_required(*MANAGERS)
    def post(self, fight_id):
        fight = fight_service.cancel_fight(fight_id, current_user_id(), current_role())
        return {'message': 'Fight cancelled, bets refunded', 'fight': fight.to_dict()}, 200

# =============================================================================
# BETTING RESOURCES
# =============================================================================

class BetListResource(Resource):
    @jwt_required()
    def get(self):
        """The caller's bets, optionally filtered by status, fight or event"""
        query = Bet.query.filter(Bet.user_id == current_user_id())

        status = request.args.get('status')
        if status:
            query = query.filter(Bet.status == status)
        fight_id = request.args.get('fight_id', type=int)
        if fight_id:
            query = query.filter(Bet.fight_id == fight_id)
        event_id = request.args.get('event_id', type=int)
        if event_id:
            query = query.join(Fight).filter(Fight.event_id == event_id)

        page = request.args.get('page', 1, type=int)
        per_page = min(request.args.get('per_page', 20, type=int), 100)
        bets_page = query.order_by(Bet.created_at.desc(), Bet.bet_id.desc()) \
                         .paginate(page=page, per_page=per_page, error_out=False)

        return {
            'bets': [bet.to_dict() for bet in bets_page.items],
            'total': bets_page.total,
            'current_page': bets_page.page,
            'total_pages': bets_page.pages,
            'per_page': bets_page.per_page
        }, 200

    @role_required(*BETTORS)
    def post(self):
        data = _bet_parser.parse_args()
        bet = betting_service.create_bet(
            fight_id=data['fight_id'],
            user_id=current_user_id(),
            side=data['side'],
            amount=data['amount'],
            bet_type=data['bet_type'],
            doy_amount=data['doy_amount'],
            is_offer=data['is_offer'],
        )

        match = betting_service.auto_match_flat_bet(bet) if bet.bet_type == 'flat' else None
        response = {'message': 'Bet placed successfully!', 'bet': bet.to_dict(), 'matched': match is not None}
        if match:
            response['message'] = 'Bet placed and matched!'
            response['matched_bet'] = match[1].to_dict()
        return response, 201


class AvailableBetsResource(Resource):
    @jwt_required()
    def get(self, fight_id):
        """Open offers on a fight; with side and amount, only compatible ones"""
        side = request.args.get('side')
        amount = request.args.get('amount')
        if side and amount:
            bets = betting_service.get_compatible_bets(fight_id, side, amount, current_user_id())
        else:
            bets = betting_service.get_available_bets(fight_id, current_user_id())
        return {'bets': [b.to_dict() for b in bets]}, 200


class BetStatsResource(Resource):
    @jwt_required()
    def get(self):
        return {'stats': betting_service.get_bet_stats(current_user_id())}, 200


class PendingProposalsResource(Resource):
    @jwt_required()
    def get(self):
        proposals = betting_service.get_pending_proposals(current_user_id())
        return {'proposals': [p.to_dict() for p in proposals]}, 200


class BetResource(Resource):
    @jwt_required()
    def put(self, bet_id):
        data = _bet_update_parser.parse_args()
        bet = betting_service.update_bet(
            bet_id, current_user_id(),
            amount=data['amount'], side=data['side'], doy_amount=data['doy_amount'],
        )
        return {'message': 'Bet updated', 'bet': bet.to_dict()}, 200


class BetAcceptResource(Resource):
    @role_required(*BETTORS)
    def post(self, bet_id):
        accept, offer = betting_service.accept_bet(bet_id, current_user_id())
        return {'message': 'Bet accepted!', 'bet': accept.to_dict(), 'matched_bet': offer.to_dict()}, 201


class BetCancelResource(Resource):
    @jwt_required()
    def put(self, bet_id):
        bet = betting_service.cancel_bet(bet_id, current_user_id())
        return {'message': 'Bet cancelled, stake released', 'bet': bet.to_dict()}, 200


class ProposePagoResource(Resource):
    @role_required(*BETTORS)
    def post(self, bet_id):
        data = _pago_parser.parse_args()
        pago_bet = betting_service.propose_pago(bet_id, current_user_id(), data['pago_amount'])
        return {'message': 'PAGO proposal sent', 'bet': pago_bet.to_dict()}, 201


class AcceptProposalResource(Resource):
    @jwt_required()
    def put(self, bet_id):
        original, pago_bet = betting_service.accept_pago(bet_id, current_user_id())
        return {'message': 'PAGO proposal accepted', 'bet': original.to_dict(), 'matched_bet': pago_bet.to_dict()}, 200


class RejectProposalResource(Resource):
    @jwt_required()
    def put(self, bet_id):
        original = betting_service.reject_pago(bet_id, current_user_id())
        return {'message': 'PAGO proposal rejected', 'bet': original.to_dict()}, 200

# =============================================================================
# WALLET RESOURCES
# =============================================================================

class WalletResource(Resource):
    @jwt_required()
    def get(self):
        wallet = wallet_service.get_or_create_wallet(current_user_id())
        return {'wallet': wallet.to_dict()}, 200


class WalletTransactionListResource(Resource):
    @jwt_required()
    def get(self):
        page = request.args.get('page', 1, type=int)
        per_page = min(request.args.get('per_page', 20, type=int), 100)
        tx_page = wallet_service.get_transactions(
            current_user_id(),
            tx_type=request.args.get('type'),
            status=request.args.get('status'),
            page=page,
            per_page=per_page,
        )
        return {
            'transactions': [t.to_dict() for t in tx_page.items],
            'total': tx_page.total,
            'current_page': tx_page.page,
            'total_pages': tx_page.pages,
            'per_page': tx_page.per_page
        }, 200


class DepositResource(Resource):
    @jwt_required()
    def post(self):
        data = _deposit_parser.parse_args()
        transaction, wallet = wallet_service.request_deposit(
            current_user_id(), data['amount'], data['payment_method'], reference=data['reference'])
        return {'message': f"Deposit {transaction.status}", 'transaction': transaction.to_dict(),
                'wallet': wallet.to_dict()}, 201


class WithdrawResource(Resource):
    @jwt_required()
    def post(self):
        data = _withdraw_parser.parse_args()
        transaction, wallet = wallet_service.request_withdrawal(
            current_user_id(), data['amount'], data['account_number'],
            account_type=data['account_type'], bank_name=data['bank_name'])
        return {'message': 'Withdrawal requested', 'transaction': transaction.to_dict(),
                'wallet': wallet.to_dict()}, 201

# =============================================================================
# ADMIN RESOURCES
# =============================================================================

class AdminPendingTransactions(Resource):
    @role_required('admin')
    def get(self):
        transactions = wallet_service.get_pending_transactions(tx_type=request.args.get('type'))
        return {'transactions': [t.to_dict() for t in transactions]}, 200


class AdminApproveTransaction(Resource):
    @role_required('admin')
    def post(self, transaction_id):
        reference = _optional_body().get('reference')
        transaction = wallet_service.approve_transaction(transaction_id, current_user_id(), reference=reference)
        return {'message': 'Transaction approved', 'transaction': transaction.to_dict()}, 200


class AdminRejectTransaction(Resource):
    @role_required('admin')
    def post(self, transaction_id):
        reason = _optional_body().get('reason')
        transaction = wallet_service.reject_transaction(transaction_id, current_user_id(), reason=reason)
        return {'message': 'Transaction rejected', 'transaction': transaction.to_dict()}, 200


class AdminUserListResource(Resource):
    @role_required('admin')
    def get(self):
        """All users, optionally filtered by role and active flag"""
        active = request.args.get('active')
        if active is not None:
            try:
                active = inputs.boolean(active)
            except ValueError:
                return {'message': 'active must be true or false'}, 400
        page = request.args.get('page', 1, type=int)
        per_page = min(request.args.get('per_page', 50, type=int), 100)
        users_page = user_service.list_users(role=request.args.get('role'), active=active,
                                             page=page, per_page=per_page)
        return {
            'users': [u.to_dict() for u in users_page.items],
            'total': users_page.total,
            'current_page': users_page.page,
            'total_pages': users_page.pages,
            'per_page': users_page.per_page
        }, 200

    @role_required('admin')
    def post(self):
        data = _admin_user_parser.parse_args()
        user = user_service.create_user(data['username'], data['email'], data['password'], role=data['role'])
        return {'message': 'User created successfully.', 'user': user.to_dict()}, 201


class AdminUserResource(Resource):
    @role_required('admin')
    def get(self, user_id):
        user = db.get_or_404(User, user_id)
        wallet = wallet_service.get_or_create_wallet(user.user_id)
        return {'user': user.to_dict(), 'wallet': wallet.to_dict()}, 200


class AdminUserStatusResource(Resource):
    @role_required('admin')
    def put(self, user_id):
        data = _user_status_parser.parse_args()
        user = user_service.set_user_status(user_id, data['active'], current_user_id(), reason=data['reason'])
        state = 'activated' if user.active else 'deactivated'
        return {'message': f"User {state} successfully", 'user': user.to_dict()}, 200


class AdminUserRoleResource(Resource):
    @role_required('admin')
    def put(self, user_id):
        data = _user_role_parser.parse_args()
        user = user_service.set_user_role(user_id, data['role'], current_user_id(), reason=data['reason'])
        return {'message': 'User role updated successfully', 'user': user.to_dict()}, 200


class AvailableOperatorsResource(Resource):
    @role_required('admin')
    def get(self):
        operators = user_service.get_available_operators()
        return {'operators': [u.to_dict() for u in operators]}, 200

# =============================================================================
# ROUTE INITIALIZATION
# =============================================================================

def initialize_routes(app, api):
    """Initialize all API routes and endpoints"""

    # Authentication endpoints
    api.add_resource(UserRegister, '/api/auth/register')
    api.add_resource(UserLogin, '/api/auth/login')
    api.add_resource(TokenRefresh, '/api/auth/refresh')

    # User profile endpoints
    api.add_resource(UserProfile, '/api/user/profile')

    # Event and fight endpoints
    api.add_resource(EventListResource, '/api/events')
    api.add_resource(EventResource, '/api/events/<int:event_id>')
    api.add_resource(EventStatusResource, '/api/events/<int:event_id>/status')
    api.add_resource(EventFightListResource, '/api/events/<int:event_id>/fights')
    api.add_resource(FightCreateResource, '/api/fights')
    api.add_resource(FightResource, '/api/fights/<int:fight_id>')
    api.add_resource(FightOpenBettingResource, '/api/fights/<int:fight_id>/open-betting')
    api.add_resource(FightCloseBettingResource, '/api/fights/<int:fight_id>/close-betting')
    api.add_resource(FightResultResource, '/api/fights/<int:fight_id>/result')
    api.add_resource(FightCancelResource, '/api/fights/<int:fight_id>/cancel')

    # Betting endpoints
    api.add_resource(BetListResource, '/api/bets')
    api.add_resource(AvailableBetsResource, '/api/bets/available/<int:fight_id>')
    api.add_resource(BetStatsResource, '/api/bets/stats')
    api.add_resource(PendingProposalsResource, '/api/bets/pending-proposals')
    api.add_resource(BetResource, '/api/bets/<int:bet_id>')
    api.add_resource(BetAcceptResource, '/api/bets/<int:bet_id>/accept')
    api.add_resource(BetCancelResource, '/api/bets/<int:bet_id>/cancel')
    api.add_resource(ProposePagoResource, '/api/bets/<int:bet_id>/propose-pago')
    api.add_resource(AcceptProposalResource, '/api/bets/<int:bet_id>/accept-proposal')
    api.add_resource(RejectProposalResource, '/api/bets/<int:bet_id>/reject-proposal')

    # Wallet endpoints
    api.add_resource(WalletResource, '/api/wallet')
    api.add_resource(WalletTransactionListResource, '/api/wallet/transactions')
    api.add_resource(DepositResource, '/api/wallet/deposit')
    api.add_resource(WithdrawResource, '/api/wallet/withdraw')

    # Admin endpoints
    api.add_resource(AdminPendingTransactions, '/api/admin/transactions/pending')
    api.add_resource(AdminApproveTransaction, '/api/admin/transactions/<int:transaction_id>/approve')
    api.add_resource(AdminRejectTransaction, '/api/admin/transactions/<int:transaction_id>/reject')
    api.add_resource(AdminUserListResource, '/api/admin/users')
    api.add_resource(AvailableOperatorsResource, '/api/admin/users/operators')
    api.add_resource(AdminUserResource, '/api/admin/users/<int:user_id>')
    api.add_resource(AdminUserStatusResource, '/api/admin/users/<int:user_id>/status')
    api.add_resource(AdminUserRoleResource, '/api/admin/users/<int:user_id>/role')

    # Server-Sent Events endpoint, ?channels=event_3,user_7
    @app.route('/api/stream/updates')
    def sse_stream():
        raw = request.args.get('channels', '')
        channels = [c.strip() for c in raw.split(',') if c.strip()] or None
        return Response(stream_with_context(sse_event_stream_generator(channels)), mimetype='text/event-stream')

    log.info("---API AND SSE ROUTES INITIALISED---")
