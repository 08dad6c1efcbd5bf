"""Tests for the WebRTC signal relay."""

from datetime import timedelta

import pytest

from wya.extensions import db
from wya.functions import to_millis, utcnow
from wya.models import SignalEnvelope
from wya.realtime import realtime
from wya.realtime.errors import InvalidSignal, NotFound
from wya.realtime.sessions import Session

OFFER = {'type': 'offer', 'sdp': 'v=0\r\n'}


@pytest.fixture
def peers(make_user):
    return make_user('alice'), make_user('bob'), make_user('carol')


def _ids(result):
    return [s['id'] for s in result['signals']]


class TestPublish:
    def test_stores_envelope(self, ctx, peers):
        alice, bob, _ = peers
        signal = realtime.signals.publish(alice.user_id, 9, bob.user_id, 'offer', OFFER)

        assert signal['room_id'] == 9
        assert signal['sender_id'] == alice.user_id
        assert signal['target_user_id'] == bob.user_id
        assert signal['signal_type'] == 'offer'
        assert signal['signal_data'] == OFFER
        assert signal['sender_name'] == 'alice'

    @pytest.mark.parametrize('room_id, signal_type, payload', [
        (None, 'offer', OFFER),
        (9, None, OFFER),
        (9, 'offer', None),
        (9, 'offer', ''),
        (9, 'offer', 0),
        (9, 'offer', False),
        (9, 'hangup', OFFER),
        ('nine', 'offer', OFFER),
    ])
    def test_rejects_malformed(self, ctx, peers, room_id, signal_type, payload):
        with pytest.raises(InvalidSignal):
            realtime.signals.publish(peers[0].user_id, room_id, None, signal_type, payload)

    def test_empty_object_is_a_payload(self, ctx, peers):
        signal = realtime.signals.publish(peers[0].user_id, 9, None, 'ice-candidate', {})
        assert signal['signal_data'] == {}

    def test_rejects_oversized_payload(self, ctx, peers):
        realtime.signals.max_payload_bytes = 64
        with pytest.raises(InvalidSignal):
            realtime.signals.publish(peers[0].user_id, 9, None, 'offer', {'sdp': 'x' * 100})

    def test_unknown_target(self, ctx, peers):
        with pytest.raises(NotFound):
            realtime.signals.publish(peers[0].user_id, 9, 999, 'offer', OFFER)


class TestPoll:
    def test_targeted_offer_only_reaches_target(self, ctx, peers):
        alice, bob, carol = peers
        realtime.signals.publish(alice.user_id, 9, bob.user_id, 'offer', OFFER)

        assert realtime.signals.poll(carol.user_id, 9)['signals'] == []
        seen = realtime.signals.poll(bob.user_id, 9)['signals']
        assert len(seen) == 1
        assert seen[0]['signal_type'] == 'offer'

    def test_never_returns_own_envelopes(self, ctx, peers):
        alice, bob, _ = peers
        realtime.signals.publish(alice.user_id, 9, None, 'offer', OFFER)
        realtime.signals.publish(bob.user_id, 9, None, 'answer', {'type': 'answer'})

        result = realtime.signals.poll(alice.user_id, 9, since=0)
        assert [s['sender_id'] for s in result['signals']] == [bob.user_id]

    def test_filters_by_room(self, ctx, peers):
        alice, bob, _ = peers
        realtime.signals.publish(alice.user_id, 9, None, 'offer', OFFER)
        assert realtime.signals.poll(bob.user_id, 10)['signals'] == []

    def test_since_watermark(self, ctx, peers):
        alice, bob, _ = peers
        old = SignalEnvelope(room_id=9, sender_id=alice.user_id, signal_type='offer',
                             signal_data='{}', created_at=utcnow() - timedelta(seconds=10))
        db.session.add(old)
        db.session.commit()
        fresh = realtime.signals.publish(alice.user_id, 9, None, 'ice-candidate', {'candidate': 'c'})

        since = to_millis(utcnow() - timedelta(seconds=5))
        assert _ids(realtime.signals.poll(bob.user_id, 9, since=since)) == [fresh['id']]
        assert len(realtime.signals.poll(bob.user_id, 9, since=0)['signals']) == 2

    def test_default_window_skips_stale_envelopes(self, ctx, peers):
        alice, bob, _ = peers
        stale = SignalEnvelope(room_id=9, sender_id=alice.user_id, signal_type='offer',
                               signal_data='{}', created_at=utcnow() - timedelta(seconds=60))
        db.session.add(stale)
        db.session.commit()

        assert realtime.signals.poll(bob.user_id, 9)['signals'] == []

    def test_cursor_takes_precedence(self, ctx, peers):
        alice, bob, _ = peers
        first = realtime.signals.publish(alice.user_id, 9, None, 'offer', OFFER)
        second = realtime.signals.publish(alice.user_id, 9, None, 'ice-candidate', {'candidate': 'c'})

        result = realtime.signals.poll(bob.user_id, 9, since=0, cursor=first['id'])
        assert _ids(result) == [second['id']]
        assert result['cursor'] == second['id']

        empty = realtime.signals.poll(bob.user_id, 9, cursor=second['id'])
        assert empty['signals'] == []
        assert empty['cursor'] == second['id']

    def test_returns_server_timestamp(self, ctx, peers):
        before = to_millis(utcnow())
        result = realtime.signals.poll(peers[0].user_id, 9)
        assert result['timestamp'] >= before

    def test_room_id_required(self, ctx, peers):
        with pytest.raises(InvalidSignal):
            realtime.signals.poll(peers[0].user_id, None)


class TestPush:
    def test_subscribers_get_visible_envelopes(self, ctx, peers):
        alice, bob, carol = peers
        b = Session(bob.user_id, room_id=9)
        c = Session(carol.user_id, room_id=9)
        a = Session(alice.user_id, room_id=9)
        for session in (a, b, c):
            realtime.registry.add(session)
            assert realtime.signals.subscribe(session, 9)

        realtime.signals.publish(alice.user_id, 9, bob.user_id, 'offer', OFFER)

        assert [event for event, _ in b.drain()] == ['signal']
        assert c.drain() == []
        assert a.drain() == []

    def test_unsubscribe_stops_push(self, ctx, peers):
        alice, bob, _ = peers
        b = Session(bob.user_id, room_id=9)
        realtime.registry.add(b)
        realtime.signals.subscribe(b, 9)
        realtime.signals.unsubscribe(b, 9)

        realtime.signals.publish(alice.user_id, 9, None, 'offer', OFFER)
        assert b.drain() == []


class TestRetention:
    def test_purge_expired(self, ctx, peers):
        alice = peers[0]
        db.session.add(SignalEnvelope(room_id=9, sender_id=alice.user_id, signal_type='offer',
                                      signal_data='{}', created_at=utcnow() - timedelta(hours=1)))
        db.session.commit()
        kept = realtime.signals.publish(alice.user_id, 9, None, 'offer', OFFER)

        assert realtime.signals.purge_expired() == 1
        assert [e.id for e in SignalEnvelope.query.all()] == [kept['id']]
