# Content-related models: room messages, reactions, direct messages

from wya.extensions import db
from wya.functions import utcnow, to_iso


class Message(db.Model):
    # Room message; append-only apart from the soft-delete flag
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    client_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_deleted = db.Column(db.Boolean, default=False)

    # Relationships
    user = db.relationship('User')
    reactions = db.relationship('MessageReaction', backref='message', lazy=True, cascade='all, delete-orphan')

    def reaction_map(self):
        return MessageReaction.map_for(self.id)

    def to_dict(self, reactions=None):
        return {
            'type': 'message',
            'id': self.id,
            'room_id': self.room_id,
            'user_id': self.user_id,
            'username': self.user.username if self.user else None,
            'content': self.content,
            'client_id': self.client_id,
            'timestamp_iso': to_iso(self.created_at),
            'reactions': reactions if reactions is not None else self.reaction_map(),
        }


class MessageReaction(db.Model):
    # One row per (message, user, emoji); the unique constraint makes the toggle a set operation
    __table_args__ = (db.UniqueConstraint('message_id', 'user_id', 'emoji', name='uq_reaction'),)

    id = db.Column(db.Integer, primary_key=True)
    message_id = db.Column(db.Integer, db.ForeignKey('message.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    emoji = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @staticmethod
    def map_for(message_id):
        # {emoji: [user ids]}; an emoji only appears while someone holds it
        rows = MessageReaction.query.filter_by(message_id=message_id).order_by(MessageReaction.id).all()
        reaction_data = {}
        for r in rows:
            reaction_data.setdefault(r.emoji, []).append(r.user_id)
        return reaction_data


class DirectMessage(db.Model):
    # 1:1 message; read_status only ever goes from False to True
    id = db.Column(db.Integer, primary_key=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    content = db.Column(db.Text, nullable=False)
    client_id = db.Column(db.String(64), nullable=True)
    read_status = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    sender = db.relationship('User', foreign_keys=[sender_id])

    def to_dict(self):
        return {
            'type': 'message',
            'id': self.id,
            'user_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'username': self.sender.username if self.sender else None,
            'content': self.content,
            'client_id': self.client_id,
            'read': self.read_status,
            'timestamp_iso': to_iso(self.created_at),
        }
