# Realtime HTTP endpoints: WebRTC signal polling and the chat socket upgrade stub

from flask import Blueprint, jsonify, request
from flask_login import login_required

from wya.identity import resolve_identity
from wya.realtime import realtime

signal_bp = Blueprint('signal', __name__, url_prefix='/api')


@signal_bp.route('/ws/chat', methods=['GET'])
def chat_socket():
    # Plain HTTP on the socket path: tell the client to upgrade
    response = jsonify({'error': {
        'code': 'upgrade_required',
        'message': 'WebSocket upgrade required. Connect with Socket.IO.',
    }})
    response.status_code = 426
    response.headers['Upgrade'] = 'websocket'
    response.headers['Connection'] = 'Upgrade'
    return response


@signal_bp.route('/webrtc/signal', methods=['POST'])
@login_required
def post_signal():
    identity = resolve_identity()
    data = request.get_json(silent=True) or {}
    signal = realtime.signals.publish(
        identity.user_id,
        data.get('room_id'),
        data.get('target_user_id'),
        data.get('signal_type'),
        data.get('signal_data'),
    )
    return jsonify({'success': True, 'signal': signal})


@signal_bp.route('/webrtc/signal', methods=['GET'])
@login_required
def poll_signals():
    identity = resolve_identity()
    result = realtime.signals.poll(
        identity.user_id,
        request.args.get('room_id'),
        since=request.args.get('since'),
        cursor=request.args.get('cursor'),
    )
    return jsonify(result)
