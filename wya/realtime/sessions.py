"""Connected sessions and the in-process fan-out registry.

A session is one connected client scoped to a room or to a direct
conversation. Every session owns a bounded FIFO outbox that a writer task
drains; fan-out only ever appends to outboxes, so a slow client fills its
own queue and nobody else's.
"""

import contextlib
import logging
import threading
import uuid
from collections import deque

from wya.functions import utcnow

logger = logging.getLogger(__name__)

DROP_OLDEST = 'drop_oldest'
DISCONNECT = 'disconnect'
OVERFLOW_POLICIES = (DROP_OLDEST, DISCONNECT)


def room_channel(room_id):
    return f'room:{int(room_id)}'


def dm_channel(user_a, user_b):
    # Symmetric so both peers land on the same channel
    low, high = sorted((int(user_a), int(user_b)))
    return f'dm:{low}:{high}'


def signal_channel(room_id):
    return f'signal:{int(room_id)}'


class Session:
    def __init__(self, user_id, room_id=None, peer_id=None, sid=None,
                 max_queue=256, overflow_policy=DROP_OLDEST):
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f'unknown overflow policy: {overflow_policy}')
        self.sid = sid or uuid.uuid4().hex
        self.user_id = user_id
        self.room_id = room_id
        self.peer_id = peer_id
        self.connected_at = utcnow()
        if room_id is not None:
            self.channel = room_channel(room_id)
        else:
            self.channel = dm_channel(user_id, peer_id)
        self.subscriptions = set()
        self.max_queue = max_queue
        self.overflow_policy = overflow_policy
        self.dropped = 0
        self._missed = 0
        self.closed = False
        self.close_reason = None
        self._outbox = deque()
        self._cond = threading.Condition()

    def __repr__(self):
        return f'<Session {self.sid} user={self.user_id} channel={self.channel}>'

    @property
    def is_room(self):
        return self.room_id is not None

    @property
    def pending(self):
        with self._cond:
            return len(self._outbox)

    def deliver(self, event, payload):
        """Queue an event. Returns False once the session can no longer accept events."""
        with self._cond:
            if self.closed:
                return False
            if len(self._outbox) >= self.max_queue:
                if self.overflow_policy == DISCONNECT:
                    self._close_locked('overflow')
                    return False
                self._outbox.popleft()
                self.dropped += 1
                self._missed += 1
            self._outbox.append((event, payload))
            self._cond.notify()
            return True

    def next_batch(self, timeout=None):
        """Wait until something is queued (or the session closes) and take all of it."""
        with self._cond:
            if not self._outbox and not self.closed:
                self._cond.wait(timeout)
            return self._take_locked()

    def drain(self):
        with self._cond:
            return self._take_locked()

    def close(self, reason='disconnect'):
        with self._cond:
            self._close_locked(reason)

    def _take_locked(self):
        batch = list(self._outbox)
        self._outbox.clear()
        if self._missed and not self.closed:
            # Tell the client how much it lost so it can re-sync from history
            batch.insert(0, ('gap', {
                'type': 'gap',
                'channel': self.channel,
                'dropped': self._missed,
            }))
            self._missed = 0
        return batch

    def _close_locked(self, reason):
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._outbox.clear()
        self._cond.notify_all()


class SessionRegistry:
    """Sessions indexed by sid, by user and by subscribed channel."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_sid = {}
        self._by_user = {}
        self._channels = {}
        self._channel_locks = {}

    def __len__(self):
        with self._lock:
            return len(self._by_sid)

    @contextlib.contextmanager
    def channel_lock(self, channel):
        # One lock per channel; rooms never wait on each other. The lock lives
        # only while some thread holds or waits on it.
        with self._lock:
            entry = self._channel_locks.get(channel)
            if entry is None:
                entry = self._channel_locks[channel] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._channel_locks[channel]

    @property
    def channel_lock_count(self):
        with self._lock:
            return len(self._channel_locks)

    def add(self, session):
        with self._lock:
            self._by_sid[session.sid] = session
            self._by_user.setdefault(session.user_id, {})[session.sid] = session
            self._subscribe_locked(session, session.channel)

    def get(self, sid):
        with self._lock:
            return self._by_sid.get(sid)

    def remove(self, session, reason='disconnect'):
        """Unregister and close a session. Returns False if it was already gone."""
        with self._lock:
            registered = self._by_sid.pop(session.sid, None) is not None
            if registered:
                user_sessions = self._by_user.get(session.user_id, {})
                user_sessions.pop(session.sid, None)
                if not user_sessions:
                    self._by_user.pop(session.user_id, None)
                for channel in list(session.subscriptions):
                    self._unsubscribe_locked(session, channel)
        session.close(reason)
        return registered

    def close_all(self, reason='shutdown'):
        with self._lock:
            sessions = list(self._by_sid.values())
        for session in sessions:
            self.remove(session, reason)

    def subscribe(self, session, channel):
        with self._lock:
            if session.sid not in self._by_sid:
                return False
            self._subscribe_locked(session, channel)
            return True

    def unsubscribe(self, session, channel):
        with self._lock:
            self._unsubscribe_locked(session, channel)

    def sessions_in(self, channel):
        with self._lock:
            return list(self._channels.get(channel, {}).values())

    def sessions_for_user(self, user_id):
        with self._lock:
            return list(self._by_user.get(user_id, {}).values())

    def user_sessions_in(self, user_id, channel):
        return [s for s in self.sessions_in(channel) if s.user_id == user_id]

    def broadcast(self, channel, event, payload, exclude=None, predicate=None):
        """Queue an event on every session of a channel.

        Returns (delivered count, sessions that refused the event). The
        caller owns the cleanup of refused sessions, outside of any lock.
        """
        delivered = 0
        refused = []
        with self.channel_lock(channel):
            for session in self.sessions_in(channel):
                if exclude is not None and session.sid == exclude:
                    continue
                if predicate is not None and not predicate(session):
                    continue
                if session.deliver(event, payload):
                    delivered += 1
                else:
                    refused.append(session)
        if refused:
            logger.warning('[FANOUT] %d session(s) on %s refused %s', len(refused), channel, event)
        return delivered, refused

    def _subscribe_locked(self, session, channel):
        self._channels.setdefault(channel, {})[session.sid] = session
        session.subscriptions.add(channel)

    def _unsubscribe_locked(self, session, channel):
        members = self._channels.get(channel)
        if members is not None:
            members.pop(session.sid, None)
            if not members:
                del self._channels[channel]
        session.subscriptions.discard(channel)
