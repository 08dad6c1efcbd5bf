# User-related models

import secrets
from flask_login import UserMixin
from wya.extensions import db
from wya.functions import utcnow


def generate_api_token():
    return secrets.token_urlsafe(32)


class User(UserMixin, db.Model):
    # Account used to resolve the identity of HTTP and socket callers
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    api_token = db.Column(db.String(64), unique=True, nullable=False, default=generate_api_token)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Presence preference: report 'hidden' instead of 'online'
    hide_status = db.Column(db.Boolean, default=False)

    # Global ban
    is_banned = db.Column(db.Boolean, default=False)

    # Relationships
    memberships = db.relationship('Member', backref='user', lazy=True, cascade='all, delete-orphan')


class Block(db.Model):
    # Block between two users; either direction forbids a conversation
    __table_args__ = (db.UniqueConstraint('blocker_id', 'blocked_id', name='uq_block_pair'),)

    id = db.Column(db.Integer, primary_key=True)
    blocker_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    blocked_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @staticmethod
    def exists_between(user_a, user_b):
        return db.session.query(Block.id).filter(
            db.or_(
                db.and_(Block.blocker_id == user_a, Block.blocked_id == user_b),
                db.and_(Block.blocker_id == user_b, Block.blocked_id == user_a),
            )
        ).first() is not None
