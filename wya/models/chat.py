# Chat-related models: rooms and memberships
from wya.extensions import db
from wya.functions import utcnow

MANAGER_ROLES = ('owner', 'moderator')


class Room(db.Model):
    # Group chat context
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    is_public = db.Column(db.Boolean, default=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    max_participants = db.Column(db.Integer, default=50)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    members = db.relationship('Member', backref='room', lazy=True, cascade='all, delete-orphan')

    def active_member_count(self):
        return Member.query.filter(Member.room_id == self.id, Member.role != 'banned').count()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'is_public': self.is_public,
            'owner_id': self.owner_id,
            'max_participants': self.max_participants,
        }


class Member(db.Model):
    # Room membership
    __table_args__ = (db.UniqueConstraint('room_id', 'user_id', name='uq_member_room_user'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id', ondelete='CASCADE'), nullable=False)
    role = db.Column(db.String(20), default='member')  # 'owner', 'moderator', 'member', 'banned'
    joined_at = db.Column(db.DateTime, default=utcnow)


def get_role(user_id, room_id):
    # Get user role in room
    member = Member.query.filter_by(user_id=user_id, room_id=room_id).first()
    return member.role if member else None
