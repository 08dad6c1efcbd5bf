# Socket.IO event handlers

import functools
import logging

from flask import request
from flask_socketio import ConnectionRefusedError, emit
from sqlalchemy.exc import SQLAlchemyError

from wya.extensions import db, socketio
from wya.identity import resolve_identity
from wya.realtime import realtime
from wya.realtime.errors import DeliveryFailed, InvalidMessage, RelayError, Unauthenticated

logger = logging.getLogger(__name__)

# Seconds the writer waits for new events before re-checking the session
PUMP_WAIT = 5


def _pump(session):
    # Writer task: drains one session's outbox in FIFO order until it closes
    while True:
        batch = session.next_batch(timeout=PUMP_WAIT)
        for event, payload in batch:
            socketio.emit(event, payload, to=session.sid)
        if session.closed:
            break
    if session.close_reason != 'disconnect':
        logger.info('[SOCKET DISCONNECT] Closing %s (%s)', session.sid, session.close_reason)
        socketio.emit('force_disconnect', {'reason': session.close_reason}, to=session.sid)
        socketio.server.disconnect(session.sid, namespace='/')


def _query_int(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidMessage(f'{name} must be an integer')


def _payload(data):
    return data if isinstance(data, dict) else {}


def _current_session():
    session = realtime.registry.get(request.sid)
    if session is None:
        raise Unauthenticated('Not connected')
    return session


def relay_event(f):
    # Core errors become an {"ok": false} ack plus an 'error' event for the caller
    @functools.wraps(f)
    def wrapper(*args):
        try:
            result = f(*args)
        except RelayError as exc:
            db.session.rollback()
            event = request.event['message']
            logger.info('[SOCKET EVENT] %s refused for %s: %s', event, request.sid, exc.code)
            body = exc.to_dict()
            emit('error', {'event': event, 'error': body})
            return {'ok': False, 'error': body}
        response = {'ok': True}
        if result:
            response.update(result)
        return response
    return wrapper


@socketio.on('connect')
def on_connect(auth=None):
    # Scope the connection to a room (?room=) or a direct conversation (?user=)
    try:
        identity = resolve_identity()
        session = realtime.gateway.connect(
            identity,
            room_id=_query_int('room'),
            peer_id=_query_int('user'),
            sid=request.sid,
            since=_query_int('since'),
        )
    except RelayError as exc:
        db.session.rollback()
        logger.info('[SOCKET CONNECT] Refused %s: %s', request.sid, exc.code)
        emit('error', {'event': 'connect', 'error': exc.to_dict()})
        raise ConnectionRefusedError(exc.to_dict())
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('[SOCKET CONNECT] Store error while connecting %s', request.sid)
        raise ConnectionRefusedError(DeliveryFailed('Service unavailable, please retry').to_dict())
    socketio.start_background_task(_pump, session)


@socketio.on('disconnect')
def on_disconnect(reason=None):
    session = realtime.registry.get(request.sid)
    if session is not None:
        realtime.gateway.disconnect(session)


@socketio.on('send_message')
@relay_event
def handle_send_message(data=None):
    data = _payload(data)
    session = _current_session()
    message = realtime.gateway.send(session, data.get('content'), client_id=data.get('client_id'))
    return {'message': message}


@socketio.on('typing')
@relay_event
def handle_typing(data=None):
    data = _payload(data)
    realtime.gateway.typing(_current_session(), data.get('is_typing', True))


@socketio.on('read')
@relay_event
def handle_read(data=None):
    updated = realtime.gateway.mark_read(_current_session())
    return {'updated': updated}


@socketio.on('react')
@relay_event
def handle_react(data=None):
    data = _payload(data)
    result = realtime.gateway.react(_current_session(), data.get('message_id'), data.get('emoji'))
    return {'reactions': result['reactions'], 'action': result['action']}


@socketio.on('delete_message')
@relay_event
def handle_delete_message(data=None):
    data = _payload(data)
    session = _current_session()
    realtime.gateway.delete_message(session.user_id, data.get('message_id'), room_id=session.room_id)


@socketio.on('heartbeat')
@relay_event
def handle_heartbeat(data=None):
    session = _current_session()
    return {'presence': realtime.presence.heartbeat(session.user_id)}


@socketio.on('signal')
@relay_event
def handle_signal(data=None):
    data = _payload(data)
    session = _current_session()
    signal = realtime.signals.publish(
        session.user_id,
        data.get('room_id'),
        data.get('target_user_id'),
        data.get('signal_type'),
        data.get('signal_data'),
    )
    return {'signal': signal}


@socketio.on('signal_join')
@relay_event
def handle_signal_join(data=None):
    data = _payload(data)
    realtime.signals.subscribe(_current_session(), data.get('room_id'))


@socketio.on('signal_leave')
@relay_event
def handle_signal_leave(data=None):
    data = _payload(data)
    realtime.signals.unsubscribe(_current_session(), data.get('room_id'))


@socketio.on_error_default
def on_error(exc):
    db.session.rollback()
    logger.exception('[SOCKET ERROR] Unhandled error in %s', getattr(request, 'event', {}).get('message'))
    return {'ok': False, 'error': {'code': 'internal_error', 'message': 'Internal server error'}}
