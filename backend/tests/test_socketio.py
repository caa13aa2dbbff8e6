def _connected(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')
    # Flush any initial events
    return sio_client.get_received('/ws')


def test_socket_connect_greets_with_server_time(sio_client):
    received = _connected(sio_client)
    connected = [pkt for pkt in received if pkt['name'] == 'connected']
    assert connected
    assert connected[0]['args'][0]['server_time'].endswith('Z')


def test_join_session_room_and_receive_updates(sio_client, client):
    session = client.post('/api/sessions').get_json()
    _connected(sio_client)

    sio_client.emit('join_session', {'session_id': session['id']}, namespace='/ws')
    received = sio_client.get_received('/ws')
    joined = [pkt for pkt in received if pkt['name'] == 'joined']
    assert joined
    assert joined[0]['args'][0]['room'] == f"session:{session['id']}"
    assert joined[0]['args'][0]['session']['code'] == session['code']

    # A REST action is pushed to the room
    client.post(f"/api/sessions/{session['id']}/players", json={'username': 'Alice'})
    received = sio_client.get_received('/ws')
    names = [pkt['name'] for pkt in received]
    assert 'player_join' in names
    assert 'session_update' in names
    update = next(pkt for pkt in received if pkt['name'] == 'session_update')['args'][0]
    assert update['type'] == 'session_update'
    assert update['payload']['id'] == session['id']
    assert update['server_time'].endswith('Z')


def test_join_unknown_session_reports_error(sio_client):
    _connected(sio_client)
    sio_client.emit('join_session', {'session_id': 424242}, namespace='/ws')
    received = sio_client.get_received('/ws')
    errors = [pkt['args'][0] for pkt in received if pkt['name'] == 'error']
    assert errors and errors[0]['error'] == 'not_found'

    sio_client.emit('join_session', {}, namespace='/ws')
    errors = [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == 'error']
    assert errors and errors[0]['error'] == 'invalid_input'


def test_leave_session_with_player_leaves_game(sio_client, client):
    session = client.post('/api/sessions').get_json()
    alice = client.post(f"/api/sessions/{session['id']}/players", json={'username': 'Alice'}).get_json()
    bob = client.post(f"/api/sessions/{session['id']}/players", json={'username': 'Bob'}).get_json()
    _connected(sio_client)
    sio_client.emit('join_session', {'session_id': session['id'], 'player_id': alice['id']}, namespace='/ws')
    sio_client.get_received('/ws')

    sio_client.emit('leave_session', {'session_id': session['id'], 'player_id': alice['id']}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'left' for pkt in received)

    state = client.get(f"/api/sessions/{session['id']}").get_json()
    assert [p['id'] for p in state['players']] == [bob['id']]
    assert state['game_master_id'] == bob['id']


def test_leave_session_defaults_to_joined_room(sio_client, client):
    session = client.post('/api/sessions').get_json()
    _connected(sio_client)
    sio_client.emit('join_session', {'session_id': session['id']}, namespace='/ws')
    sio_client.get_received('/ws')

    sio_client.emit('leave_session', {}, namespace='/ws')
    left = [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == 'left']
    assert left == [{'room': f"session:{session['id']}"}]

    # Nothing joined any more
    sio_client.emit('leave_session', {}, namespace='/ws')
    errors = [pkt['args'][0] for pkt in sio_client.get_received('/ws') if pkt['name'] == 'error']
    assert errors and errors[0]['error'] == 'invalid_input'


def test_ping_pong(sio_client):
    _connected(sio_client)
    sio_client.emit('ping', {'client_time': 123}, namespace='/ws')
    received = sio_client.get_received('/ws')
    pongs = [pkt['args'][0] for pkt in received if pkt['name'] == 'pong']
    assert pongs
    assert pongs[0]['client_time'] == 123
    assert 'server_time' in pongs[0]
