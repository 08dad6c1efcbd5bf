"""Tests for the Socket.IO transport, through the Flask-SocketIO test client."""

import time

import pytest

from wya.extensions import socketio
from wya.realtime import realtime


@pytest.fixture
def users(make_user):
    return make_user('alice'), make_user('bob'), make_user('carol')


@pytest.fixture
def room_id(make_room, users):
    alice, bob, carol = users
    return make_room(alice, members=(bob, carol), room_id=42)


def _wait_disconnected(sio, timeout=3.0):
    deadline = time.monotonic() + timeout
    while sio.is_connected() and time.monotonic() < deadline:
        time.sleep(0.01)
    return not sio.is_connected()


class TestConnect:
    def test_connected_event(self, connect, users, room_id):
        sio, inbox = connect(users[0], room=room_id)

        assert sio.is_connected()
        connected = inbox.wait('connected')[0]
        assert connected['channel'] == 'room:42'
        assert connected['user_id'] == users[0].user_id

    def test_unauthenticated_is_refused(self, connect, room_id):
        sio, _ = connect(None, room=room_id)
        assert not sio.is_connected()

    def test_bad_token_is_refused(self, connect, room_id):
        sio, _ = connect(None, room=room_id, token='not-a-token')
        assert not sio.is_connected()

    def test_private_room_is_refused(self, connect, make_room, make_user, users):
        private = make_room(users[0], is_public=False, name='secret')
        sio, _ = connect(make_user('dave'), room=private)
        assert not sio.is_connected()

    def test_session_cookie_identity(self, app, client, users, room_id):
        client.post('/auth/login', json={'username': 'bob', 'password': 'Secret123'})
        sio = socketio.test_client(app, flask_test_client=client, query_string=f'room={room_id}')
        try:
            assert sio.is_connected()
        finally:
            sio.disconnect()


class TestMessaging:
    def test_hello_reaches_room_members(self, connect, users, room_id):
        alice, bob, carol = users
        a, a_inbox = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)
        c, c_inbox = connect(carol, room=room_id)

        ack = a.emit('send_message', {'content': 'hello', 'client_id': 'n1'}, callback=True)
        assert ack['ok'] is True
        assert ack['message']['content'] == 'hello'

        for inbox in (b_inbox, c_inbox):
            received = inbox.wait('receive_message')
            inbox.settle()
            assert len(inbox.named('receive_message')) == 1
            assert received[0]['user_id'] == alice.user_id
            assert received[0]['content'] == 'hello'

    def test_sender_order_is_preserved(self, connect, users, room_id):
        alice, bob, _ = users
        a, _ = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)

        for i in range(10):
            a.emit('send_message', {'content': f'msg {i}'}, callback=True)

        received = b_inbox.wait('receive_message', count=10)
        assert [m['content'] for m in received] == [f'msg {i}' for i in range(10)]

    def test_invalid_message_ack_and_error_event(self, connect, users, room_id):
        a, inbox = connect(users[0], room=room_id)

        ack = a.emit('send_message', {'content': '   '}, callback=True)

        assert ack['ok'] is False
        assert ack['error']['code'] == 'invalid_message'
        errors = inbox.named('error')
        assert errors[0]['event'] == 'send_message'

    def test_typing_skips_sender(self, connect, users, room_id):
        alice, bob, _ = users
        a, a_inbox = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)

        assert a.emit('typing', {'is_typing': True}, callback=True) == {'ok': True}

        assert b_inbox.wait('typing')[0]['user_id'] == alice.user_id
        a_inbox.settle()
        assert a_inbox.named('typing') == []

    def test_reaction_toggle(self, connect, users, room_id):
        alice, bob, _ = users
        a, _ = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)
        message = a.emit('send_message', {'content': 'vote'}, callback=True)['message']

        ack = b.emit('react', {'message_id': message['id'], 'emoji': '👍'}, callback=True)
        assert ack == {'ok': True, 'reactions': {'👍': [bob.user_id]}, 'action': 'added'}

        ack = b.emit('react', {'message_id': message['id'], 'emoji': '👍'}, callback=True)
        assert ack['reactions'] == {}
        assert len(b_inbox.wait('reactions_updated', count=2)) == 2

    def test_delete_message(self, connect, users, room_id):
        alice, bob, _ = users
        a, _ = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)
        message = a.emit('send_message', {'content': 'oops'}, callback=True)['message']

        assert a.emit('delete_message', {'message_id': message['id']}, callback=True) == {'ok': True}
        assert b_inbox.wait('message_deleted')[0]['message_id'] == message['id']

    def test_heartbeat(self, connect, users, room_id):
        a, _ = connect(users[0], room=room_id)
        ack = a.emit('heartbeat', callback=True)
        assert ack['ok'] is True
        assert ack['presence']['status'] == 'online'


class TestDirectConversation:
    def test_dm_and_read_receipt(self, connect, users):
        alice, bob, _ = users
        a, a_inbox = connect(alice, user=bob.user_id)
        b, b_inbox = connect(bob, user=alice.user_id)

        a.emit('send_message', {'content': 'psst'}, callback=True)
        assert b_inbox.wait('receive_message')[0]['content'] == 'psst'

        ack = b.emit('read', callback=True)
        assert ack == {'ok': True, 'updated': 1}
        assert a_inbox.wait('read')[0]['user_id'] == bob.user_id

    def test_reactions_need_a_room(self, connect, users):
        alice, bob, _ = users
        a, _ = connect(alice, user=bob.user_id)
        ack = a.emit('react', {'message_id': 1, 'emoji': '👍'}, callback=True)
        assert ack['error']['code'] == 'invalid_message'


class TestSignals:
    def test_push_respects_target(self, connect, users, room_id):
        alice, bob, carol = users
        a, _ = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)
        c, c_inbox = connect(carol, room=room_id)
        for sio in (b, c):
            assert sio.emit('signal_join', {'room_id': 9}, callback=True) == {'ok': True}

        ack = a.emit('signal', {
            'room_id': 9,
            'target_user_id': bob.user_id,
            'signal_type': 'offer',
            'signal_data': {'sdp': 'v=0'},
        }, callback=True)
        assert ack['ok'] is True

        assert b_inbox.wait('signal')[0]['signal_data'] == {'sdp': 'v=0'}
        c_inbox.settle()
        assert c_inbox.named('signal') == []

    def test_invalid_signal(self, connect, users, room_id):
        a, _ = connect(users[0], room=room_id)
        ack = a.emit('signal', {'room_id': 9, 'signal_type': 'hangup', 'signal_data': {}}, callback=True)
        assert ack['error']['code'] == 'invalid_signal'


class TestDisconnect:
    def test_disconnect_updates_presence(self, app, connect, users, room_id):
        alice, bob, _ = users
        a, a_inbox = connect(alice, room=room_id)
        b, _ = connect(bob, room=room_id)

        b.disconnect()

        update = [p for p in a_inbox.wait('presence_updated', count=3) if p['user_id'] == bob.user_id][-1]
        assert update['status'] == 'offline'
        with app.app_context():
            presence = realtime.presence.get_presence(bob.user_id)
        assert presence['current_room_id'] is None
        assert realtime.registry.sessions_for_user(bob.user_id) == []

    def test_ban_forces_disconnect(self, client, connect, users, room_id, auth_headers):
        alice, bob, _ = users
        b, _ = connect(bob, room=room_id)

        response = client.post(f'/api/rooms/{room_id}/ban/{bob.user_id}', headers=auth_headers(alice))

        assert response.status_code == 200
        assert _wait_disconnected(b)

    def test_remaining_sessions_keep_receiving(self, connect, users, room_id):
        alice, bob, carol = users
        a, _ = connect(alice, room=room_id)
        b, b_inbox = connect(bob, room=room_id)
        c, _ = connect(carol, room=room_id)

        a.emit('send_message', {'content': 'before'}, callback=True)
        c.disconnect()
        a.emit('send_message', {'content': 'after'}, callback=True)

        received = b_inbox.wait('receive_message', count=2)
        assert [m['content'] for m in received] == ['before', 'after']
