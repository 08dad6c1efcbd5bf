# Authentication routes (JSON)

import logging
import re

from flask import Blueprint, jsonify, request
from flask_login import login_user, logout_user
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from wya.extensions import db
from wya.identity import client_ip, resolve_identity
from wya.models import User
from wya.realtime import realtime
from wya.realtime.errors import Conflict, Forbidden, InvalidMessage, Unauthenticated

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def validate_username(username):
    # Validate username format and length
    if not username or len(username) < 3:
        return False, "user name should be at least 3 characters long"

    if len(username) > 30:
        return False, "user name should be less than 30 characters long"

    # Only alphanumeric, hyphens, underscores
    if not re.match(r'^[a-zA-Z0-9_-]+$', username):
        return False, "user name can only contain letters, numbers, hyphens, and underscores"

    return True, ""


def validate_password(password):
    # Validate password strength
    if not password or len(password) < 8:
        return False, "password should be at least 8 characters long"

    if len(password) > 100:
        return False, "password should be less than 100 characters long"

    # At least one uppercase, one lowercase, one digit
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)

    if not (has_upper and has_lower and has_digit):
        return False, "password should contain at least one uppercase letter, one lowercase letter, and one digit"

    return True, ""


def _user_payload(user, with_token=False):
    data = {'id': user.id, 'username': user.username, 'hide_status': bool(user.hide_status)}
    if with_token:
        data['api_token'] = user.api_token
    return data


@auth_bp.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    is_valid, msg = validate_username(username)
    if not is_valid:
        raise InvalidMessage(msg)
    is_valid, msg = validate_password(password)
    if not is_valid:
        raise InvalidMessage(msg)
    if User.query.filter_by(username=username).first():
        raise Conflict('username already taken')

    new_user = User(
        username=username,
        password=generate_password_hash(password, method='scrypt'),
        hide_status=bool(data.get('hide_status', False)),
    )
    db.session.add(new_user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('username already taken')

    login_user(new_user)
    logger.info('[AUTH] Registered user %s (%s) from %s', new_user.id, username, client_ip())
    return jsonify({'success': True, 'user': _user_payload(new_user, with_token=True)}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username).first()
    if user is None or not check_password_hash(user.password, password):
        logger.info('[AUTH] Failed login for %r from %s', username, client_ip())
        raise Unauthenticated('login failed. check your username and password')
    if user.is_banned:
        raise Forbidden('account banned')

    login_user(user, remember=bool(data.get('remember', False)))
    return jsonify({'success': True, 'user': _user_payload(user, with_token=True)})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    identity = resolve_identity()
    logout_user()
    # Sockets stay open until they disconnect; presence follows them
    logger.info('[AUTH] User %s logged out (%d live session(s))',
                identity.user_id, len(realtime.registry.sessions_for_user(identity.user_id)))
    return jsonify({'success': True})


@auth_bp.route('/me', methods=['GET'])
def me():
    identity = resolve_identity()
    user = db.session.get(User, identity.user_id)
    return jsonify({'user': _user_payload(user), 'presence': realtime.presence.get_presence(user.id)})
