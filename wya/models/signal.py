# WebRTC signal envelopes: write-once, purged by retention

import json
from wya.extensions import db
from wya.functions import utcnow, to_millis

SIGNAL_TYPES = ('offer', 'answer', 'ice-candidate')


class SignalEnvelope(db.Model):
    __tablename__ = 'webrtc_signal'

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    target_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    signal_type = db.Column(db.String(20), nullable=False)
    signal_data = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    sender = db.relationship('User', foreign_keys=[sender_id])

    def visible_to(self, user_id):
        # Never echoed to the sender; targeted envelopes only reach their target
        if self.sender_id == user_id:
            return False
        return self.target_user_id is None or self.target_user_id == user_id

    def to_dict(self):
        return {
            'id': self.id,
            'room_id': self.room_id,
            'sender_id': self.sender_id,
            'sender_name': self.sender.username if self.sender else None,
            'target_user_id': self.target_user_id,
            'signal_type': self.signal_type,
            'signal_data': json.loads(self.signal_data),
            'created_at': to_millis(self.created_at),
        }
