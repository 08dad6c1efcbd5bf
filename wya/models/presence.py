# Presence model: one row per user, written by upsert

from wya.extensions import db
from wya.functions import utcnow, to_iso

STATUSES = ('online', 'offline', 'away', 'hidden')


class Presence(db.Model):
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True)
    status = db.Column(db.String(20), nullable=False, default='offline')
    activity = db.Column(db.String(50), nullable=True)
    current_room_id = db.Column(db.Integer, db.ForeignKey('room.id', ondelete='SET NULL'), nullable=True)
    last_seen_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'status': self.status,
            'activity': self.activity,
            'current_room_id': self.current_room_id,
            'last_seen_at': to_iso(self.last_seen_at),
        }
