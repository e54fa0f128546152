# palenque/services/user_service.py
"""
Account creation and admin user management.

Bettors may self-register; staff accounts (operator, admin) are created by
an admin over the API or with `flask create_user`. Deactivated users cannot
log in, refresh tokens or place bets. Existing bets are left untouched.
"""

import logging

from palenque import db
from palenque.errors import BadRequestError, NotFoundError
from palenque.models import User, Wallet, USER_ROLES, ZERO
from palenque.utils.db_utils import atomic

log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def _get_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def _check_role(role):
    role = (role or '').strip().lower()
    if role not in USER_ROLES:
        raise BadRequestError(f"Role must be one of: {', '.join(USER_ROLES)}")
    return role


def create_user(username, email, password, role='user'):
    """Creates an active user together with an empty wallet."""
    username = (username or '').strip()
    email = (email or '').strip().lower()
    role = _check_role(role)

    if len(username) < 3:
        raise BadRequestError("Username must be at least 3 characters")
    if '@' not in email:
        raise BadRequestError("A valid email is required")
    if len(password or '') < MIN_PASSWORD_LENGTH:
        raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if User.find_by_username(username):
        raise BadRequestError("A user with that username already exists")
    if User.find_by_email(email):
        raise BadRequestError("A user with that email already exists")

    with atomic():
        user = User(username=username, email=email, role=role, active=True)
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        db.session.add(Wallet(user_id=user.user_id, balance=ZERO, frozen_amount=ZERO))

    log.info(f"User {user.username} created with ID {user.user_id} ({user.role})")
    return user


def list_users(role=None, active=None, page=1, per_page=50):
    query = User.query
    if role:
        query = query.filter(User.role == role)
    if active is not None:
        query = query.filter(User.active.is_(active))
    return query.order_by(User.registration_date.desc(), User.user_id.desc()) \
        .paginate(page=page, per_page=per_page, error_out=False)


def set_user_status(user_id, active, admin_id, reason=None):
    if user_id == admin_id and not active:
        raise BadRequestError("You cannot deactivate your own account")
    with atomic():
        user = _get_user(user_id)
        user.active = bool(active)

    log.info(f"User {user.username} ({user.user_id}) {'activated' if user.active else 'deactivated'} "
             f"by admin {admin_id}. Reason: {reason or 'Not specified'}")
    return user


def set_user_role(user_id, role, admin_id, reason=None):
    role = _check_role(role)
    if user_id == admin_id and role != 'admin':
        raise BadRequestError("You cannot remove your own admin role")
    with atomic():
        user = _get_user(user_id)
        old_role = user.role
        user.role = role

    log.info(f"User {user.username} ({user.user_id}) role changed from {old_role} to {role} "
             f"by admin {admin_id}. Reason: {reason or 'Not specified'}")
    return user


def get_available_operators():
    """Active operators an event can be assigned to."""
    return User.query.filter(User.role == 'operator', User.active.is_(True)) \
        .order_by(User.username.asc()).all()
