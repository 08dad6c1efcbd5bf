# API routes (rooms, room messages, reactions, direct messages, blocks, presence)

from flask import Blueprint, jsonify, request
from flask_login import login_required

from wya.identity import resolve_identity
from wya.realtime import realtime
from wya.realtime.errors import InvalidMessage, InvalidPresence

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _json_body():
    return request.get_json(silent=True) or {}


def _int_arg(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidMessage(f'{name} must be an integer')


# --- ROOMS ---

@api_bp.route('/rooms', methods=['POST'])
@login_required
def create_room():
    data = _json_body()
    room = realtime.gateway.create_room(
        resolve_identity(),
        data.get('name'),
        is_public=data.get('is_public', True),
        max_participants=data.get('max_participants', 50),
    )
    return jsonify({'success': True, 'room': room.to_dict()}), 201


@api_bp.route('/rooms/<int:room_id>/join', methods=['POST'])
@login_required
def join_room(room_id):
    room = realtime.gateway.join_room(resolve_identity(), room_id)
    return jsonify({'success': True, 'room': room.to_dict()})


@api_bp.route('/rooms/<int:room_id>/leave', methods=['POST'])
@login_required
def leave_room(room_id):
    realtime.gateway.leave_room(resolve_identity(), room_id)
    return jsonify({'success': True})


@api_bp.route('/rooms/<int:room_id>/ban/<int:user_id>', methods=['POST'])
@login_required
def ban_member(room_id, user_id):
    realtime.gateway.ban(resolve_identity(), room_id, user_id)
    return jsonify({'success': True})


# --- ROOM MESSAGES ---

@api_bp.route('/rooms/<int:room_id>/messages', methods=['GET'])
@login_required
def room_messages(room_id):
    messages = realtime.gateway.room_history(
        resolve_identity(), room_id,
        limit=_int_arg('limit'), before=_int_arg('before'), after=_int_arg('after'),
    )
    return jsonify({'messages': messages})


@api_bp.route('/rooms/<int:room_id>/messages', methods=['POST'])
@login_required
def post_room_message(room_id):
    data = _json_body()
    message = realtime.gateway.post_room_message(
        resolve_identity(), room_id, data.get('content'), client_id=data.get('client_id'),
    )
    return jsonify({'success': True, 'message': message}), 201


@api_bp.route('/rooms/<int:room_id>/messages/<int:message_id>', methods=['DELETE'])
@login_required
def delete_message(room_id, message_id):
    identity = resolve_identity()
    realtime.gateway.delete_message(identity.user_id, message_id, room_id=room_id)
    return jsonify({'success': True})


@api_bp.route('/rooms/<int:room_id>/messages/<int:message_id>/reactions', methods=['POST'])
@login_required
def toggle_reaction(room_id, message_id):
    identity = resolve_identity()
    data = _json_body()
    result = realtime.gateway.toggle_reaction(identity.user_id, message_id, data.get('emoji'), room_id=room_id)
    return jsonify({'success': True, 'action': result['action'], 'reactions': result['reactions']})


# --- DIRECT MESSAGES ---

@api_bp.route('/messages/<int:user_id>', methods=['GET'])
@login_required
def direct_thread(user_id):
    messages = realtime.gateway.direct_thread(resolve_identity(), user_id, limit=_int_arg('limit'))
    return jsonify({'messages': messages})


@api_bp.route('/messages', methods=['POST'])
@login_required
def post_direct_message():
    data = _json_body()
    recipient_id = data.get('recipient_id')
    if recipient_id is not None and not isinstance(recipient_id, int):
        raise InvalidMessage('recipient_id must be an integer')
    message = realtime.gateway.post_direct_message(
        resolve_identity(), recipient_id, data.get('content'), client_id=data.get('client_id'),
    )
    return jsonify({'success': True, 'message': message}), 201


# --- BLOCKS ---

@api_bp.route('/users/<int:user_id>/block', methods=['POST'])
@login_required
def block_user(user_id):
    created = realtime.gateway.block(resolve_identity(), user_id)
    return jsonify({'success': True, 'created': created})


@api_bp.route('/users/<int:user_id>/block', methods=['DELETE'])
@login_required
def unblock_user(user_id):
    realtime.gateway.unblock(resolve_identity(), user_id)
    return jsonify({'success': True})


# --- PRESENCE ---

@api_bp.route('/presence/<int:user_id>', methods=['GET'])
@login_required
def get_presence(user_id):
    resolve_identity()
    return jsonify({'presence': realtime.presence.get_presence(user_id)})


@api_bp.route('/presence', methods=['POST'])
@login_required
def set_presence():
    identity = resolve_identity()
    data = _json_body()
    status = data.get('status')
    if not status:
        raise InvalidPresence('status required')
    room_id = data.get('room_id')
    if room_id is not None and not isinstance(room_id, int):
        raise InvalidPresence('room_id must be an integer')
    presence = realtime.gateway.update_presence(identity, status, data.get('activity'), room_id)
    return jsonify({'success': True, 'presence': presence})


@api_bp.route('/presence/heartbeat', methods=['POST'])
@login_required
def heartbeat():
    identity = resolve_identity()
    return jsonify({'success': True, 'presence': realtime.presence.heartbeat(identity.user_id)})
