import json
import logging

import pytest

from quizmaster.services.games.errors import NoActiveRound
from quizmaster.services.games.fanout import Event, TopicBroker, session_topic


def test_publish_reaches_topic_subscribers_only():
    broker = TopicBroker(queue_size=10)
    mine = broker.subscribe('session:1')
    other = broker.subscribe('session:2')
    event = broker.publish('session:1', 'session_update', {'id': 1})
    assert mine.get(timeout=0.1) is event
    assert other.get(timeout=0.01) is None
    assert event.server_time.endswith('Z')


def test_publish_without_subscribers_is_a_no_op():
    broker = TopicBroker()
    event = broker.publish('session:404', 'player_join', {})
    assert event.type == 'player_join'
    assert broker.subscriber_count('session:404') == 0


def test_full_subscriber_is_pruned(caplog):
    caplog.set_level(logging.INFO)
    broker = TopicBroker(queue_size=2)
    slow = broker.subscribe('t')
    fast = broker.subscribe('t')
    for n in range(2):
        broker.publish('t', 'tick', {'n': n})
    assert fast.get(timeout=0.1).payload == {'n': 0}
    assert fast.get(timeout=0.1).payload == {'n': 1}
    broker.publish('t', 'tick', {'n': 2})
    assert slow.closed
    assert broker.subscriber_count('t') == 1
    assert fast.get(timeout=0.1).payload == {'n': 2}
    assert any('[fanout-prune]' in r.getMessage() for r in caplog.records)


def test_failing_relay_does_not_block_others(caplog):
    broker = TopicBroker()
    seen = []

    def broken(topic, event):
        raise RuntimeError('socket gone')
    broker.add_relay(broken)
    remove = broker.add_relay(lambda topic, event: seen.append((topic, event.type)))
    sub = broker.subscribe('t')
    broker.publish('t', 'attempt_insert', {})
    assert seen == [('t', 'attempt_insert')]
    assert sub.get(timeout=0.1).type == 'attempt_insert'
    assert any('[fanout-relay]' in r.getMessage() for r in caplog.records)

    remove()
    broker.publish('t', 'attempt_insert', {})
    assert len(seen) == 1


def test_closed_subscription_stops_iteration():
    broker = TopicBroker()
    sub = broker.subscribe('t')
    broker.publish('t', 'a', {})
    sub.close()
    assert broker.subscriber_count('t') == 0
    assert [e.type for e in sub.events(keepalive=0.01)] == []
    # Later publishes skip it
    broker.publish('t', 'b', {})


def test_idle_stream_yields_ping():
    broker = TopicBroker()
    sub = broker.subscribe('t')
    stream = sub.events(keepalive=0.01)
    assert next(stream).type == 'ping'
    broker.publish('t', 'session_update', {'id': 3})
    assert next(stream).type == 'session_update'
    sub.close()


def test_event_sse_framing():
    event = Event('player_leave', {'id': 4}, server_time='2024-01-01T00:00:00Z')
    frame = event.to_sse()
    assert frame.startswith('data: ') and frame.endswith('\n\n')
    assert json.loads(frame[len('data: '):]) == {
        'type': 'player_leave',
        'payload': {'id': 4},
        'server_time': '2024-01-01T00:00:00Z',
    }


def test_commands_publish_after_commit(broker, engine, new_game):
    sid, (gina, xavier, _, _) = new_game()
    sub = broker.subscribe(session_topic(sid))
    engine.start_round(sid, gina, 'Q?', 'answer')
    engine.submit_guess(sid, xavier, 'answer')

    types = []
    while True:
        event = sub.get(timeout=0.05)
        if event is None:
            break
        types.append(event.type)
        if event.type == 'session_update' and event.payload['status'] == 'in_progress':
            assert 'current_answer' not in event.payload
            assert event.payload['current_question'] == 'Q?'
    assert types == ['session_update', 'attempt_insert', 'player_update', 'session_update']


def test_rejected_command_publishes_nothing(broker, engine, new_game):
    sid, (gina, xavier, _, _) = new_game()
    sub = broker.subscribe(session_topic(sid))
    with pytest.raises(NoActiveRound):
        engine.submit_guess(sid, xavier, 'answer')
    assert sub.get(timeout=0.05) is None


def test_join_and_leave_events(broker, lobby, engine):
    session = lobby.create_session()
    sub = broker.subscribe(session_topic(session['id']))
    alice = lobby.join(session['id'], 'Alice')
    bob = lobby.join(session['id'], 'Bob')
    engine.leave(session['id'], bob['id'])
    lobby.heartbeat(alice['id'])
    types = []
    while True:
        event = sub.get(timeout=0.05)
        if event is None:
            break
        types.append(event.type)
    assert types == [
        'player_join', 'session_update',
        'player_join', 'session_update',
        'player_update', 'player_leave', 'session_update',
        'player_update',
    ]


def test_sse_stream_delivers_events(client, broker, lobby):
    session = lobby.create_session()
    topic = session_topic(session['id'])
    res = client.get(f'/sse/{topic}', buffered=False)
    assert res.status_code == 200
    assert res.mimetype == 'text/event-stream'
    assert broker.subscriber_count(topic) == 1

    broker.publish(topic, 'session_update', {'id': session['id']})
    chunks = iter(res.response)
    # Keepalive pings may arrive first
    for _ in range(10):
        chunk = next(chunks)
        if isinstance(chunk, bytes):
            chunk = chunk.decode()
        body = json.loads(chunk[len('data: '):])
        if body['type'] != 'ping':
            break
    assert body['type'] == 'session_update'
    assert body['payload'] == {'id': session['id']}
    res.close()
    assert broker.subscriber_count(topic) == 0
