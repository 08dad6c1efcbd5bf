# WebRTC signal relay: store envelopes, serve them by polling and push them to subscribers

import json
import logging
import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from wya.extensions import db
from wya.functions import from_millis, seconds_ago, to_millis, utcnow
from wya.models import SignalEnvelope, User
from wya.models.signal import SIGNAL_TYPES
from wya.realtime.errors import DeliveryFailed, InvalidSignal, NotFound
from wya.realtime.retry import call_with_retries
from wya.realtime.sessions import signal_channel

logger = logging.getLogger(__name__)


def _as_int(value, field):
    if isinstance(value, bool):
        raise InvalidSignal(f'{field} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidSignal(f'{field} must be an integer')


def _is_blank(payload):
    # Empty objects and arrays are valid payloads; null, "", 0 and false are not
    if isinstance(payload, (dict, list)):
        return False
    return not payload


class SignalRelay:

    def __init__(self, registry, window_seconds=30, retention_seconds=300,
                 max_payload_bytes=65536, max_retries=3, backoff=0.05,
                 on_evict=None, sleep=time.sleep):
        self.registry = registry
        self.window_seconds = window_seconds
        self.retention_seconds = retention_seconds
        self.max_payload_bytes = max_payload_bytes
        self.max_retries = max_retries
        self.backoff = backoff
        self.on_evict = on_evict
        self._sleep = sleep

    def publish(self, sender_id, room_id, target_user_id, signal_type, payload):
        """Store an offer/answer/ice-candidate envelope and push it to the room's subscribers."""
        if room_id is None or room_id == '':
            raise InvalidSignal('Missing required fields')
        room_id = _as_int(room_id, 'room_id')
        if not signal_type or _is_blank(payload):
            raise InvalidSignal('Missing required fields')
        if signal_type not in SIGNAL_TYPES:
            raise InvalidSignal('Invalid signal type')
        if target_user_id is not None:
            target_user_id = _as_int(target_user_id, 'target_user_id')
            if db.session.get(User, target_user_id) is None:
                raise NotFound('Target user not found')

        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError):
            raise InvalidSignal('signal_data must be JSON serializable')
        if len(encoded.encode('utf-8')) > self.max_payload_bytes:
            raise InvalidSignal(f'signal_data is larger than {self.max_payload_bytes} bytes')

        def attempt():
            envelope = SignalEnvelope(
                room_id=room_id,
                sender_id=sender_id,
                target_user_id=target_user_id,
                signal_type=signal_type,
                signal_data=encoded,
            )
            db.session.add(envelope)
            db.session.commit()
            return envelope

        try:
            envelope = call_with_retries(
                attempt, attempts=self.max_retries, backoff=self.backoff,
                retry_on=(OperationalError,), on_retry=lambda exc: db.session.rollback(),
                sleep=self._sleep, label='signal append',
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('[SIGNAL] Envelope could not be stored: %s', exc.__class__.__name__)
            raise DeliveryFailed('Signal was not delivered, please retry')

        data = envelope.to_dict()
        logger.debug('[SIGNAL] %s from user %s in room %s -> %s',
                     signal_type, sender_id, room_id, target_user_id or 'room')
        _, refused = self.registry.broadcast(
            signal_channel(room_id), 'signal', data,
            predicate=lambda session: envelope.visible_to(session.user_id),
        )
        if refused and self.on_evict is not None:
            self.on_evict(refused)
        return data

    def poll(self, requester_id, room_id, since=None, cursor=None):
        """Envelopes for requester_id newer than the watermark, oldest first.

        ``cursor`` (the last envelope id seen) wins over ``since`` (ms epoch).
        Without either, the last ``window_seconds`` are returned.
        """
        if room_id is None or room_id == '':
            raise InvalidSignal('room_id required')
        room_id = _as_int(room_id, 'room_id')
        timestamp = to_millis(utcnow())

        query = SignalEnvelope.query.filter(
            SignalEnvelope.room_id == room_id,
            SignalEnvelope.sender_id != requester_id,
            db.or_(
                SignalEnvelope.target_user_id.is_(None),
                SignalEnvelope.target_user_id == requester_id,
            ),
        )
        if cursor is not None and cursor != '':
            cursor = _as_int(cursor, 'cursor')
            query = query.filter(SignalEnvelope.id > cursor)
        else:
            cursor = None
            if since is not None and since != '':
                watermark = from_millis(_as_int(since, 'since'))
            else:
                watermark = seconds_ago(self.window_seconds)
            query = query.filter(SignalEnvelope.created_at > watermark)

        rows = query.order_by(SignalEnvelope.created_at, SignalEnvelope.id).all()
        signals = [row.to_dict() for row in rows]
        if signals:
            cursor = max(s['id'] for s in signals)
        return {'signals': signals, 'timestamp': timestamp, 'cursor': cursor}

    def subscribe(self, session, room_id):
        room_id = _as_int(room_id, 'room_id')
        channel = signal_channel(room_id)
        if not self.registry.subscribe(session, channel):
            return False
        logger.debug('[SIGNAL] Session %s subscribed to %s', session.sid, channel)
        return True

    def unsubscribe(self, session, room_id):
        self.registry.unsubscribe(session, signal_channel(_as_int(room_id, 'room_id')))

    def purge_expired(self, older_than=None):
        """Delete envelopes past retention. Returns the number removed."""
        cutoff = seconds_ago(self.retention_seconds if older_than is None else older_than)
        removed = SignalEnvelope.query.filter(
            SignalEnvelope.created_at < cutoff
        ).delete(synchronize_session=False)
        db.session.commit()
        if removed:
            logger.info('[SIGNAL] Purged %d expired envelope(s)', removed)
        return removed
