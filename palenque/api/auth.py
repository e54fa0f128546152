# palenque/api/auth.py
from functools import wraps

from flask_jwt_extended import create_access_token, create_refresh_token, get_jwt, get_jwt_identity, verify_jwt_in_request


def issue_tokens(user):
    """Access and refresh tokens; the role travels as a claim so routes can check it without a query."""
    claims = {'role': user.role}
    return {
        'access_token': create_access_token(identity=str(user.user_id), additional_claims=claims, fresh=True),
        'refresh_token': create_refresh_token(identity=str(user.user_id), additional_claims=claims),
    }


def current_user_id():
    return int(get_jwt_identity())


def current_role():
    return get_jwt().get('role')


def role_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if current_role() not in roles:
                return {'message': 'You do not have permission to perform this action'}, 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
