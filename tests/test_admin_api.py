import io


def test_add_command_single_and_list(client):
    response = client.post('/api/add-command', json={'command': 'CMD_A'})
    assert response.status_code == 201
    assert response.get_json()['backlogSize'] == 1

    response = client.post('/api/add-command', json={'commands': ['CMD_B', 'CMD_C']})
    assert response.get_json() == {
        'message': 'Command added successfully',
        'queued': 2,
        'backlogSize': 3
    }

    backlog = client.get('/api/commands').get_json()
    assert backlog['date'] == '2024-05-01'
    assert backlog['commands'] == ['CMD_A', 'CMD_B', 'CMD_C']


def test_add_command_requires_payload(client):
    for payload in ({}, {'command': ''}, {'commands': []}, {'commands': ['ok', 3]}):
        response = client.post('/api/add-command', json=payload)
        assert response.status_code == 400
        assert response.get_json() == {'error': 'Command is required'}

    assert client.get('/api/commands').get_json()['commands'] == []


def test_register_user_queues_user_and_biodata(client):
    response = client.post(
        '/api/register-user',
        data={'name': 'Alice', 'userPin': '42', 'photo': (io.BytesIO(b'jpeg-bytes'), 'alice.jpg')},
        content_type='multipart/form-data'
    )

    assert response.status_code == 200
    assert response.get_json()['commands'] == 2

    commands = client.get('/api/commands').get_json()['commands']
    assert 'DATA USER PIN=42\tName=Alice' in commands[0]
    assert 'DATA UPDATE BIODATA PIN=42' in commands[1]
    assert '\tSize=10\t' in commands[1]

    assert client.get('/iclock/getrequest?SN=ZK001').get_data(as_text=True) == commands[0]


def test_register_user_rejects_missing_fields(client):
    response = client.post('/api/register-user', data={'name': 'Alice'},
                           content_type='multipart/form-data')
    assert response.status_code == 400

    response = client.post(
        '/api/register-user',
        data={'name': 'Alice', 'userPin': '42', 'photo': (io.BytesIO(b''), 'empty.jpg')},
        content_type='multipart/form-data'
    )
    assert response.status_code == 400


def test_delete_user_queues_delete_command(client):
    response = client.post('/api/delete-user', json={'userPin': 1001})

    assert response.status_code == 200
    command = response.get_json()['command']
    assert command.endswith(':DATA DELETE USERINFO PIN=1001')
    assert client.get('/api/commands').get_json()['commands'] == [command]

    assert client.post('/api/delete-user', json={}).status_code == 400


def test_devices_list_shows_progress_and_status(client, clock):
    client.post('/api/add-command', json={'commands': ['C:1:DATA USER PIN=7\tName=Bo', 'CMD_B']})
    client.get('/iclock/cdata?SN=ZK001')
    client.get('/iclock/getrequest?SN=ZK001')

    device = client.get('/api/devices').get_json()[0]
    assert device['serial'] == 'ZK001'
    assert device['status'] == 'online'
    assert device['deliveredCount'] == 1
    assert device['pendingCommands'] == 1
    assert device['lastUserPin'] == '7'
    assert device['createdAt'] == '2024-05-01'

    clock.advance(minutes=10)
    assert client.get('/api/devices').get_json()[0]['status'] == 'offline'


def test_delete_device(client):
    client.get('/iclock/cdata?SN=ZK001')

    assert client.delete('/api/devices/ZK001').status_code == 200
    assert client.get('/api/devices').get_json() == []
    assert client.delete('/api/devices/ZK001').status_code == 404


def test_manual_sweep(client, clock):
    client.post('/api/add-command', json={'command': 'OLD'})
    client.get('/iclock/cdata?SN=ZK001')
    clock.advance(days=1)

    response = client.post('/api/maintenance/sweep')

    assert response.get_json() == {'partitions': 1, 'devices': 1}
    assert client.get('/api/devices').get_json() == []


def test_logs_are_newest_first_and_limited(client):
    client.get('/iclock/cdata?SN=ZK001')
    client.post('/api/add-command', json={'command': 'CMD_A'})

    logs = client.get('/api/logs?limit=2').get_json()

    assert len(logs) == 2
    assert logs[0]['logType'] == 'command_queued'
    assert logs[0]['id'] > logs[1]['id']


def test_admin_api_allows_cross_origin_calls(client):
    response = client.get('/api/commands', headers={'Origin': 'http://dashboard.local'})
    assert response.headers.get('Access-Control-Allow-Origin') in ('*', 'http://dashboard.local')


def test_unknown_route_is_json_404(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json()['error'] == 'Not found'


def test_non_object_json_bodies_are_rejected(client):
    response = client.post('/api/add-command', json=['CMD_A'])
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Request body must be a JSON object'}

    assert client.post('/api/delete-user', json='1001').status_code == 400
    assert client.get('/api/commands').get_json()['commands'] == []


def test_register_user_rejects_control_characters(client):
    response = client.post(
        '/api/register-user',
        data={'name': 'Eve\tPIN=1', 'userPin': '42', 'photo': (io.BytesIO(b'jpeg'), 'eve.jpg')},
        content_type='multipart/form-data'
    )

    assert response.status_code == 400
    assert client.get('/api/commands').get_json()['commands'] == []
    assert client.get('/api/users').get_json() == []


def test_user_roster_follows_register_and_delete(client):
    client.post(
        '/api/register-user',
        data={'name': 'Alice', 'userPin': '42', 'photo': (io.BytesIO(b'jpeg-bytes'), 'alice.jpg')},
        content_type='multipart/form-data'
    )

    users = client.get('/api/users').get_json()
    assert users == [{
        'userPin': '42',
        'name': 'Alice',
        'photoSize': 10,
        'registeredAt': '2024-05-01 09:00:00'
    }]

    client.post('/api/delete-user', json={'userPin': '42'})
    assert client.get('/api/users').get_json() == []
