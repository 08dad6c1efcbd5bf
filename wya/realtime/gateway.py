"""Chat gateway: room and direct-message delivery to connected sessions.

Messages are persisted before they are fanned out, so a client that misses
a live event can always recover it from history (at-least-once). Sends of
one sender on one channel run under a striped lock: the append and the
fan-out of message N finish before message N+1 starts, and every session
outbox is FIFO, so each recipient sees a sender's messages in order.
"""

import logging
import threading
import time

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from wya.extensions import db
from wya.functions import normalize_content, snippet
from wya.models import Block, DirectMessage, Member, Message, MessageReaction, Room, User
from wya.models.chat import MANAGER_ROLES, get_role
from wya.realtime.errors import (
    Conflict, DeliveryFailed, Forbidden, InvalidMessage, NotFound, RateLimited,
    Unauthenticated,
)
from wya.realtime.ratelimit import MessageRateLimiter
from wya.realtime.retry import call_with_retries
from wya.realtime.sessions import DROP_OLDEST, Session, dm_channel, room_channel

logger = logging.getLogger(__name__)

_SEQUENCER_STRIPES = 64


class ChatGateway:

    def __init__(self, registry, presence, rate_limiter=None, queue_size=256,
                 overflow_policy=DROP_OLDEST, max_retries=3, backoff=0.05,
                 reaction_retries=5, max_length=4000, page_size=100, sleep=time.sleep):
        self.registry = registry
        self.presence = presence
        self.rate_limiter = rate_limiter or MessageRateLimiter()
        self.queue_size = queue_size
        self.overflow_policy = overflow_policy
        self.max_retries = max_retries
        self.backoff = backoff
        self.reaction_retries = reaction_retries
        self.max_length = max_length
        self.page_size = page_size
        self._sleep = sleep
        self._stripes = [threading.Lock() for _ in range(_SEQUENCER_STRIPES)]

    # --- SESSIONS ---

    def connect(self, identity, room_id=None, peer_id=None, sid=None, since=None):
        """Open a session scoped to a room or to a direct conversation with peer_id."""
        user = self._resolve_user(identity)
        if (room_id is None) == (peer_id is None):
            raise InvalidMessage('Specify exactly one of room or user')

        if room_id is not None:
            room = self.authorize_room(user, room_id, join=True)
        else:
            room = None
            self._authorize_peer(user.id, peer_id)

        session = Session(
            user.id, room_id=room.id if room else None, peer_id=peer_id, sid=sid,
            max_queue=self.queue_size, overflow_policy=self.overflow_policy,
        )
        session.deliver('connected', {
            'type': 'connected',
            'channel': session.channel,
            'user_id': user.id,
            'room_id': session.room_id,
            'peer_id': session.peer_id,
        })
        # Replay and registration happen under the channel lock so no live
        # message can overtake the replayed ones.
        with self.registry.channel_lock(session.channel):
            if since is not None:
                for payload in self._missed_messages(session, since):
                    session.deliver('receive_message', payload)
            self.registry.add(session)

        try:
            if room is not None:
                self.presence.set_presence(user.id, 'online', 'chatting', room.id)
                self.broadcast_presence(room.id, user.id)
            else:
                self.presence.heartbeat(user.id)
        except SQLAlchemyError:
            db.session.rollback()
            self.registry.remove(session, 'error')
            raise
        logger.info('[SOCKET CONNECT] User %s connected on %s (%s)', user.id, session.channel, session.sid)
        return session

    def disconnect(self, session, reason='disconnect'):
        """Stop fan-out to a session at once, then settle presence. Idempotent."""
        if not self.registry.remove(session, reason):
            return False
        user_id = session.user_id
        logger.info('[SOCKET DISCONNECT] User %s left %s (%s, %s)', user_id, session.channel, session.sid, reason)
        try:
            if session.is_room and not self.registry.user_sessions_in(user_id, session.channel):
                self.presence.clear_room(user_id, session.room_id)
            if not self.registry.sessions_for_user(user_id):
                self.presence.mark_offline(user_id)
            if session.is_room:
                self.broadcast_presence(session.room_id, user_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('[SOCKET DISCONNECT] Presence update failed for user %s', user_id)
        return True

    def evict(self, sessions, reason='overflow'):
        for session in sessions:
            self.disconnect(session, reason=session.close_reason or reason)

    # --- AUTHORIZATION ---

    def _resolve_user(self, identity):
        if identity is None:
            raise Unauthenticated('Authentication required')
        user = db.session.get(User, identity.user_id)
        if user is None:
            raise Unauthenticated('Authentication required')
        if user.is_banned:
            raise Forbidden('Your account is blocked')
        return user

    def authorize_room(self, user, room_id, join=False):
        # Returns the room if the user may take part in it; joins public rooms when asked
        room = db.session.get(Room, room_id)
        if room is None:
            raise NotFound('Room not found')
        member = Member.query.filter_by(user_id=user.id, room_id=room.id).first()
        if member is not None:
            if member.role == 'banned':
                raise Forbidden('You are banned from this room')
            return room
        if not room.is_public:
            raise Forbidden('This room is invite-only')
        if not join:
            raise Forbidden('You are not a member of this room')
        if room.active_member_count() >= room.max_participants:
            raise Forbidden('Room is full')
        db.session.add(Member(user_id=user.id, room_id=room.id, role='member'))
        try:
            db.session.commit()
        except IntegrityError:
            # Joined concurrently by another session of the same user
            db.session.rollback()
        logger.info('[ROOM JOIN] User %s joined room %s', user.id, room.id)
        return room

    def _ensure_can_post(self, user_id, room_id):
        member = Member.query.filter_by(user_id=user_id, room_id=room_id).first()
        if member is None:
            raise Forbidden('You are not a member of this room')
        if member.role == 'banned':
            raise Forbidden('You are banned from this room')
        return member

    def _authorize_peer(self, user_id, peer_id):
        if peer_id == user_id:
            raise InvalidMessage('Cannot open a conversation with yourself')
        peer = db.session.get(User, peer_id)
        if peer is None:
            raise NotFound('User not found')
        if Block.exists_between(user_id, peer_id):
            raise Forbidden('Cannot message this user (blocked)')
        return peer

    # --- MESSAGES ---

    def send(self, session, body, client_id=None):
        """Append a message from a session and fan it out to its channel."""
        if session.closed:
            raise DeliveryFailed('Session is closed', client_id=client_id)
        if session.is_room:
            return self._send(session.user_id, session.channel, body, client_id, room_id=session.room_id)
        return self._send(session.user_id, session.channel, body, client_id, peer_id=session.peer_id)

    def post_room_message(self, identity, room_id, body, client_id=None):
        user = self._resolve_user(identity)
        room = db.session.get(Room, room_id)
        if room is None:
            raise NotFound('Room not found')
        return self._send(user.id, room_channel(room.id), body, client_id, room_id=room.id)

    def post_direct_message(self, identity, recipient_id, body, client_id=None):
        user = self._resolve_user(identity)
        if recipient_id is None:
            raise InvalidMessage('Recipient and message required')
        return self._send(user.id, dm_channel(user.id, recipient_id), body, client_id, peer_id=recipient_id)

    def _send(self, user_id, channel, body, client_id, room_id=None, peer_id=None):
        content = self._validate_body(body)
        allowed, _, retry_after = self.rate_limiter.hit(user_id)
        if not allowed:
            raise RateLimited(
                'Rate limit exceeded. Please wait before sending more messages.',
                retry_after=round(retry_after, 1),
            )

        with self._sequencer(user_id, channel):
            if room_id is not None:
                self._ensure_can_post(user_id, room_id)
                record = self._append(lambda: Message(
                    room_id=room_id, user_id=user_id, content=content, client_id=client_id,
                ), client_id)
                payload = record.to_dict(reactions={})
            else:
                self._authorize_peer(user_id, peer_id)
                record = self._append(lambda: DirectMessage(
                    sender_id=user_id, recipient_id=peer_id, content=content, client_id=client_id,
                ), client_id)
                payload = record.to_dict()
            self.fan_out(channel, 'receive_message', payload)

        if peer_id is not None:
            self._notify_recipient(peer_id, channel, payload)
        return payload

    def _validate_body(self, body):
        if body is not None and not isinstance(body, str):
            raise InvalidMessage('Message must be text')
        content = normalize_content(body)
        if not content:
            raise InvalidMessage('Message required')
        if len(content) > self.max_length:
            raise InvalidMessage(f'Message is longer than {self.max_length} characters')
        return content

    def _append(self, build, client_id):
        def attempt():
            record = build()
            db.session.add(record)
            db.session.commit()
            return record

        try:
            return call_with_retries(
                attempt, attempts=self.max_retries, backoff=self.backoff,
                retry_on=(OperationalError,), on_retry=lambda exc: db.session.rollback(),
                sleep=self._sleep, label='message append',
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('[SEND] Message could not be stored: %s', exc.__class__.__name__)
            raise DeliveryFailed('Message was not delivered, please retry', client_id=client_id)

    def _sequencer(self, user_id, channel):
        return self._stripes[hash((user_id, channel)) % _SEQUENCER_STRIPES]

    def fan_out(self, channel, event, payload, exclude=None, predicate=None):
        delivered, refused = self.registry.broadcast(
            channel, event, payload, exclude=exclude, predicate=predicate,
        )
        if refused:
            self.evict(refused)
        return delivered

    def _notify_recipient(self, recipient_id, channel, payload):
        # Recipient sessions elsewhere get a notification instead of the message itself
        note = {
            'type': 'notification',
            'channel': channel,
            'message_id': payload['id'],
            'from_user_id': payload['user_id'],
            'from_user': payload.get('username'),
            'snippet': snippet(payload['content']),
        }
        refused = []
        for session in self.registry.sessions_for_user(recipient_id):
            if session.channel == channel:
                continue
            if not session.deliver('message_notification', note):
                refused.append(session)
        if refused:
            self.evict(refused)

    def _missed_messages(self, session, since):
        if session.is_room:
            rows = Message.query.filter(
                Message.room_id == session.room_id,
                Message.id > since,
                Message.is_deleted.is_(False),
            ).order_by(Message.id).limit(self.page_size).all()
            return self._with_reactions(rows)
        low, high = sorted((session.user_id, session.peer_id))
        rows = DirectMessage.query.filter(
            DirectMessage.id > since,
            db.or_(
                db.and_(DirectMessage.sender_id == low, DirectMessage.recipient_id == high),
                db.and_(DirectMessage.sender_id == high, DirectMessage.recipient_id == low),
            ),
        ).order_by(DirectMessage.id).limit(self.page_size).all()
        return [m.to_dict() for m in rows]

    def _with_reactions(self, messages):
        ids = [m.id for m in messages]
        reactions = {}
        if ids:
            rows = MessageReaction.query.filter(
                MessageReaction.message_id.in_(ids)
            ).order_by(MessageReaction.id).all()
            for r in rows:
                reactions.setdefault(r.message_id, {}).setdefault(r.emoji, []).append(r.user_id)
        return [m.to_dict(reactions=reactions.get(m.id, {})) for m in messages]

    def _page_limit(self, limit):
        if limit is None:
            return self.page_size
        if limit < 1:
            raise InvalidMessage('limit must be a positive integer')
        return min(limit, self.page_size)

    def room_history(self, identity, room_id, limit=None, before=None, after=None):
        user = self._resolve_user(identity)
        room = db.session.get(Room, room_id)
        if room is None:
            raise NotFound('Room not found')
        member = Member.query.filter_by(user_id=user.id, room_id=room.id).first()
        if member is not None and member.role == 'banned':
            raise Forbidden('You are banned from this room')
        if member is None and not room.is_public:
            raise Forbidden('Access denied')

        limit = self._page_limit(limit)
        query = Message.query.filter(Message.room_id == room.id, Message.is_deleted.is_(False))
        if after is not None:
            rows = query.filter(Message.id > after).order_by(Message.id).limit(limit).all()
        else:
            if before is not None:
                query = query.filter(Message.id < before)
            rows = query.order_by(Message.id.desc()).limit(limit).all()
            rows.reverse()
        return self._with_reactions(rows)

    # --- DIRECT CONVERSATIONS ---

    def mark_read(self, session):
        if session.is_room:
            raise InvalidMessage('Read receipts apply to direct conversations')
        return self._mark_read(session.user_id, session.peer_id, exclude=session.sid)

    def _mark_read(self, user_id, peer_id, exclude=None):
        result = db.session.execute(
            db.update(DirectMessage)
            .where(
                DirectMessage.recipient_id == user_id,
                DirectMessage.sender_id == peer_id,
                DirectMessage.read_status.is_(False),
            )
            .values(read_status=True)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        updated = result.rowcount
        if updated:
            self.fan_out(dm_channel(user_id, peer_id), 'read', {
                'type': 'read',
                'user_id': user_id,
                'peer_id': peer_id,
                'updated': updated,
            }, exclude=exclude)
        return updated

    def direct_thread(self, identity, peer_id, limit=None):
        """Conversation with peer_id, oldest first; marks the peer's messages as read."""
        user = self._resolve_user(identity)
        if db.session.get(User, peer_id) is None:
            raise NotFound('User not found')
        limit = self._page_limit(limit)
        rows = DirectMessage.query.filter(
            db.or_(
                db.and_(DirectMessage.sender_id == user.id, DirectMessage.recipient_id == peer_id),
                db.and_(DirectMessage.sender_id == peer_id, DirectMessage.recipient_id == user.id),
            )
        ).order_by(DirectMessage.id.desc()).limit(limit).all()
        rows.reverse()
        messages = [m.to_dict() for m in rows]
        self._mark_read(user.id, peer_id)
        return messages

    # --- TYPING ---

    def typing(self, session, is_typing=True):
        payload = {
            'type': 'typing',
            'user_id': session.user_id,
            'channel': session.channel,
            'room_id': session.room_id,
            'is_typing': bool(is_typing),
        }
        return self.fan_out(session.channel, 'typing', payload, exclude=session.sid)

    # --- REACTIONS ---

    def react(self, session, message_id, emoji):
        if not session.is_room:
            raise InvalidMessage('Reactions apply to room messages')
        return self.toggle_reaction(session.user_id, message_id, emoji, room_id=session.room_id)

    def toggle_reaction(self, user_id, message_id, emoji, room_id=None):
        """Add the user to the emoji's set if absent, remove if present."""
        if not emoji or not isinstance(emoji, str) or len(emoji) > 50:
            raise InvalidMessage('Emoji required')
        message = db.session.get(Message, message_id)
        if message is None or message.is_deleted or (room_id is not None and message.room_id != room_id):
            raise NotFound('Message not found')
        self._ensure_can_post(user_id, message.room_id)

        action = None
        for attempt in range(1, self.reaction_retries + 1):
            try:
                removed = MessageReaction.query.filter_by(
                    message_id=message.id, user_id=user_id, emoji=emoji,
                ).delete(synchronize_session=False)
                if removed:
                    action = 'removed'
                else:
                    db.session.add(MessageReaction(message_id=message.id, user_id=user_id, emoji=emoji))
                    action = 'added'
                db.session.commit()
                break
            except (IntegrityError, OperationalError) as exc:
                # Lost a race with a concurrent toggle of the same row: re-read and reapply
                db.session.rollback()
                action = None
                logger.info(
                    '[REACTION] Toggle on message %s conflicted (%s), attempt %d/%d',
                    message_id, exc.__class__.__name__, attempt, self.reaction_retries,
                )
                if isinstance(exc, OperationalError) and attempt < self.reaction_retries:
                    self._sleep(self.backoff * (2 ** (attempt - 1)))
        if action is None:
            raise Conflict('Reaction could not be applied, please retry')

        reactions = MessageReaction.map_for(message.id)
        payload = {
            'type': 'reactions',
            'message_id': message.id,
            'room_id': message.room_id,
            'reactions': reactions,
            'action': action,
            'emoji': emoji,
            'user_id': user_id,
        }
        self.fan_out(room_channel(message.room_id), 'reactions_updated', payload)
        return payload

    # --- MODERATION ---

    def delete_message(self, user_id, message_id, room_id=None):
        message = db.session.get(Message, message_id)
        if message is None or message.is_deleted or (room_id is not None and message.room_id != room_id):
            raise NotFound('Message not found')
        if message.user_id != user_id:
            if get_role(user_id, message.room_id) not in MANAGER_ROLES:
                raise Forbidden('No access')
        message.is_deleted = True
        db.session.commit()
        self.fan_out(room_channel(message.room_id), 'message_deleted', {
            'type': 'deleted',
            'message_id': message.id,
            'room_id': message.room_id,
        })
        return message.id

    def ban(self, identity, room_id, target_id):
        user = self._resolve_user(identity)
        if db.session.get(Room, room_id) is None:
            raise NotFound('Room not found')
        manager_role = get_role(user.id, room_id)
        if manager_role not in MANAGER_ROLES:
            raise Forbidden('Not authorized')
        target = Member.query.filter_by(user_id=target_id, room_id=room_id).first()
        if target is None:
            raise NotFound('Member not found')
        if target.role == 'owner' or (target.role == 'moderator' and manager_role != 'owner'):
            raise Forbidden('Cannot modify this member')
        target.role = 'banned'
        db.session.commit()
        logger.info('[ROOM BAN] User %s banned user %s from room %s', user.id, target_id, room_id)
        self.close_user_sessions(target_id, room_channel(room_id), reason='banned')

    def create_room(self, identity, name, is_public=True, max_participants=50):
        user = self._resolve_user(identity)
        name = (name or '').strip()
        if not name:
            raise InvalidMessage('Room name required')
        if len(name) > 150:
            raise InvalidMessage('Room name is too long')
        try:
            max_participants = int(max_participants)
        except (TypeError, ValueError):
            raise InvalidMessage('max_participants must be a number')
        if max_participants < 2:
            raise InvalidMessage('max_participants must be at least 2')
        room = Room(name=name, is_public=bool(is_public), owner_id=user.id, max_participants=max_participants)
        db.session.add(room)
        db.session.flush()
        db.session.add(Member(user_id=user.id, room_id=room.id, role='owner'))
        db.session.commit()
        logger.info('[ROOM CREATE] User %s created room %s (%s)', user.id, room.id, room.name)
        return room

    def join_room(self, identity, room_id):
        user = self._resolve_user(identity)
        return self.authorize_room(user, room_id, join=True)

    def leave_room(self, identity, room_id):
        user = self._resolve_user(identity)
        if db.session.get(Room, room_id) is None:
            raise NotFound('Room not found')
        member = Member.query.filter_by(user_id=user.id, room_id=room_id).first()
        if member is None:
            raise NotFound('You are not a member of this room')
        if member.role == 'owner':
            raise Forbidden('Room owner cannot leave. Transfer ownership or delete the room instead.')
        if member.role == 'banned':
            raise Forbidden('You are banned from this room')
        db.session.delete(member)
        db.session.commit()
        self.close_user_sessions(user.id, room_channel(room_id), reason='left')
        self.presence.clear_room(user.id, room_id)

    def close_user_sessions(self, user_id, channel, reason):
        for session in self.registry.user_sessions_in(user_id, channel):
            self.disconnect(session, reason=reason)

    def block(self, identity, blocked_id):
        user = self._resolve_user(identity)
        if blocked_id == user.id:
            raise InvalidMessage('Cannot block yourself')
        if db.session.get(User, blocked_id) is None:
            raise NotFound('User not found')
        existing = Block.query.filter_by(blocker_id=user.id, blocked_id=blocked_id).first()
        if existing is not None:
            return False
        db.session.add(Block(blocker_id=user.id, blocked_id=blocked_id))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        # Open conversations between the two end here
        channel = dm_channel(user.id, blocked_id)
        for session in self.registry.sessions_in(channel):
            self.disconnect(session, reason='blocked')
        return True

    def unblock(self, identity, blocked_id):
        user = self._resolve_user(identity)
        removed = Block.query.filter_by(blocker_id=user.id, blocked_id=blocked_id).delete()
        db.session.commit()
        if not removed:
            raise NotFound('User not blocked')

    # --- PRESENCE ---

    def broadcast_presence(self, room_id, user_id):
        user = db.session.get(User, user_id)
        payload = dict(self.presence.get_presence(user_id))
        payload['type'] = 'presence'
        payload['username'] = user.username if user else None
        payload['room_id'] = room_id
        return self.fan_out(room_channel(room_id), 'presence_updated', payload)

    def update_presence(self, identity, status, activity=None, room_id=None):
        """Set a user's presence; a room can only be claimed by someone allowed in it."""
        user = self._resolve_user(identity)
        if room_id is not None:
            self.authorize_room(user, room_id)
        presence = self.presence.set_presence(user.id, status, activity, room_id)
        if room_id is not None:
            self.broadcast_presence(room_id, user.id)
        return presence
