import uuid
import logging
import jwt
from flask import request, current_app
from app import db
from models import User
from errors import Unauthorized


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        raise Unauthorized('Missing authorization header')
    return token.strip()


def get_current_user():
    """Resolve the bearer credential to a user profile, creating it on first sight"""
    token = _bearer_token()
    secret = current_app.config.get('AUTH_JWT_SECRET')
    if not secret:
        logging.error("SUPABASE_JWT_SECRET not configured; rejecting request")
        raise Unauthorized()

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            audience=current_app.config.get('AUTH_JWT_AUDIENCE'),
        )
    except jwt.InvalidTokenError as e:
        logging.info(f"Rejected bearer token: {e}")
        raise Unauthorized() from e

    user_id = claims.get('sub')
    if not user_id:
        raise Unauthorized()

    user = db.session.get(User, user_id)
    if user is None:
        user = User(id=user_id, username=f"runner_{uuid.uuid4().hex[:8]}", email=claims.get('email'))
        db.session.add(user)
        db.session.commit()
        logging.info(f"Created new user: {user.username}")
    return user
