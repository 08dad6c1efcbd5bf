"""Presence tracking: one row per user, written with atomic upserts.

Every write is a single statement (``INSERT ... ON CONFLICT DO UPDATE`` or a
conditional ``UPDATE``), so retries are idempotent and no read-then-write
window exists.
"""

import logging

from sqlalchemy import case, update

from wya.extensions import db
from wya.functions import utcnow
from wya.models import Presence, Room, User
from wya.models.presence import STATUSES
from wya.realtime.errors import InvalidPresence, NotFound

logger = logging.getLogger(__name__)


def _insert_for_dialect():
    name = db.engine.dialect.name
    if name == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    elif name == 'sqlite':
        from sqlalchemy.dialects.sqlite import insert
    elif name in ('mysql', 'mariadb'):
        from sqlalchemy.dialects.mysql import insert
    else:
        raise RuntimeError(f'presence upsert is not supported on {name}')
    return name, insert


def _upsert(values, update_columns):
    # update_columns maps column name -> expression using `excluded` (new row) values
    name, insert = _insert_for_dialect()
    stmt = insert(Presence).values(**values)
    if name in ('mysql', 'mariadb'):
        stmt = stmt.on_duplicate_key_update(**update_columns(stmt.inserted))
    else:
        stmt = stmt.on_conflict_do_update(
            index_elements=[Presence.user_id],
            set_=update_columns(stmt.excluded),
        )
    db.session.execute(stmt)
    db.session.commit()


def default_presence(user_id):
    return {
        'user_id': user_id,
        'status': 'offline',
        'activity': None,
        'current_room_id': None,
        'last_seen_at': None,
    }


class PresenceTracker:

    def _effective_status(self, user_id, status):
        # Users hiding their status are reported as hidden instead of online
        if status != 'online':
            return status
        user = db.session.get(User, user_id)
        if user is not None and user.hide_status:
            return 'hidden'
        return status

    def set_presence(self, user_id, status, activity=None, room_id=None):
        if status not in STATUSES:
            raise InvalidPresence(f'Unknown status: {status}')
        if room_id is not None and db.session.get(Room, room_id) is None:
            raise NotFound('Room not found')
        now = utcnow()
        values = {
            'user_id': user_id,
            'status': self._effective_status(user_id, status),
            'activity': activity,
            'current_room_id': room_id,
            'last_seen_at': now,
            'updated_at': now,
        }
        _upsert(values, lambda new: {
            'status': new.status,
            'activity': new.activity,
            'current_room_id': new.current_room_id,
            'last_seen_at': new.last_seen_at,
            'updated_at': new.updated_at,
        })
        logger.debug('[PRESENCE] User %s -> %s (%s, room %s)', user_id, values['status'], activity, room_id)
        return self.get_presence(user_id)

    def clear_room(self, user_id, room_id):
        """Null the current room only if it still points at room_id."""
        result = db.session.execute(
            update(Presence)
            .where(Presence.user_id == user_id, Presence.current_room_id == room_id)
            .values(current_room_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        cleared = result.rowcount > 0
        if cleared:
            logger.debug('[PRESENCE] User %s left room %s', user_id, room_id)
        return cleared

    def heartbeat(self, user_id):
        # Refresh last seen; an offline user comes back online, other statuses are kept
        now = utcnow()
        values = {
            'user_id': user_id,
            'status': self._effective_status(user_id, 'online'),
            'activity': None,
            'current_room_id': None,
            'last_seen_at': now,
            'updated_at': now,
        }
        _upsert(values, lambda new: {
            'status': case((Presence.status == 'offline', new.status), else_=Presence.status),
            'last_seen_at': new.last_seen_at,
            'updated_at': new.updated_at,
        })
        return self.get_presence(user_id)

    def mark_offline(self, user_id):
        # Current room is left to clear_room
        user = db.session.get(User, user_id)
        status = 'hidden' if user is not None and user.hide_status else 'offline'
        now = utcnow()
        values = {
            'user_id': user_id,
            'status': status,
            'activity': None,
            'current_room_id': None,
            'last_seen_at': now,
            'updated_at': now,
        }
        _upsert(values, lambda new: {
            'status': new.status,
            'activity': new.activity,
            'last_seen_at': new.last_seen_at,
            'updated_at': new.updated_at,
        })
        return self.get_presence(user_id)

    def get_presence(self, user_id):
        row = db.session.get(Presence, user_id, populate_existing=True)
        if row is None:
            return default_presence(user_id)
        return row.to_dict()
