# Caller identity: Flask-Login session cookie, bearer token or `token` query parameter

from collections import namedtuple

from flask import request
from flask_login import current_user

from wya.extensions import db, login_manager
from wya.models import User
from wya.realtime.errors import Forbidden, Unauthenticated

Identity = namedtuple('Identity', ['user_id', 'username'])


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    # API and socket clients authenticate with their api token
    token = None
    header = req.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        token = header[len('Bearer '):].strip()
    if not token:
        token = req.args.get('token')
    if not token:
        return None
    return User.query.filter_by(api_token=token).first()


@login_manager.unauthorized_handler
def _unauthorized():
    raise Unauthenticated('Authentication required')


def identity_for(user):
    return Identity(user.id, user.username)


def resolve_identity():
    """Identity of the current HTTP request or socket connection."""
    if not current_user or not current_user.is_authenticated:
        raise Unauthenticated('Authentication required')
    if current_user.is_banned:
        raise Forbidden('Your account is blocked')
    return identity_for(current_user)


def client_ip():
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    return request.remote_addr
