import threading

import server
from kv_store import StoreError


def test_handshake_returns_option_block_with_terminal_headers(client):
    response = client.get('/iclock/cdata?SN=ZK001')

    assert response.status_code == 200
    body = response.get_data(as_text=True)
    assert body.splitlines()[0] == 'GET OPTION FROM:ZK001'
    assert 'TransInterval=1' in body
    assert response.headers['Content-Type'] == 'text/plain'
    assert response.headers['Cache-Control'] == 'no-store'
    assert response.headers['Connection'] == 'close'
    assert response.headers['Date'].endswith('GMT')


def test_handshake_registers_device_once(client, log_types):
    client.get('/iclock/cdata?SN=ZK001')
    client.get('/iclock/cdata?SN=ZK001')

    devices = client.get('/api/devices').get_json()
    assert [d['serial'] for d in devices] == ['ZK001']
    assert log_types().count('device_registered') == 1
    assert log_types().count('handshake') == 2


def test_missing_serial_is_rejected_without_side_effects(client):
    for path in ('/iclock/cdata', '/iclock/getrequest', '/iclock/getrequest?SN='):
        response = client.get(path)
        assert response.status_code == 400
        assert response.headers['Content-Type'] == 'text/plain'
        assert response.get_data(as_text=True).startswith('Bad Request')

    assert client.get('/api/devices').get_json() == []


def test_getrequest_delivers_one_command_per_poll(client):
    client.post('/api/add-command', json={'commands': ['CMD_A', 'CMD_B']})

    first = client.get('/iclock/getrequest?SN=ZK001')
    assert first.status_code == 200
    assert first.get_data(as_text=True) == 'CMD_A'
    assert first.headers['Pragma'] == 'no-cache'

    assert client.get('/iclock/getrequest?SN=ZK001').get_data(as_text=True) == 'CMD_B'

    no_work = client.get('/iclock/getrequest?SN=ZK001')
    assert no_work.status_code == 200
    assert no_work.get_data(as_text=True) == ''

    assert client.get('/iclock/getrequest?SN=ZK002').get_data(as_text=True) == 'CMD_A'


def test_getrequest_store_failure_is_server_error(client, monkeypatch):
    engine = server.get_engine()

    def broken_poll(serial):
        raise StoreError('database is gone')

    monkeypatch.setattr(engine, 'poll', broken_poll)
    response = client.get('/iclock/getrequest?SN=ZK001')

    assert response.status_code == 500
    assert response.get_data(as_text=True) == 'Internal Server Error'


def test_delivered_commands_are_logged_without_templates(client):
    client.post('/api/add-command', json={'command': 'C:5:DATA UPDATE BIODATA PIN=9\tTMP=QUFBQQ=='})
    client.get('/iclock/getrequest?SN=ZK001')

    sent = [e for e in client.get('/api/logs').get_json() if e['logType'] == 'command_sent']
    assert sent[0]['message'] == 'C:5:DATA UPDATE BIODATA PIN=9'
    assert sent[0]['deviceName'] == 'ZK001'


def test_devicecmd_acknowledges_and_logs_results(client):
    response = client.post('/iclock/devicecmd?SN=ZK001', data='ID=11&Return=0&CMD=DATA\n')

    assert response.status_code == 200
    assert response.get_data(as_text=True) == 'OK'
    acks = [e for e in client.get('/api/logs').get_json() if e['logType'] == 'command_ack']
    assert acks[0]['message'] == 'ID=11 Return=0 CMD=DATA'


def test_malformed_devicecmd_still_answers_ok(client, log_types):
    response = client.post('/iclock/devicecmd?SN=ZK001', data='nonsense')

    assert response.status_code == 200
    assert response.get_data(as_text=True) == 'OK'
    assert 'command_ack_error' in log_types()


def test_data_upload_is_acknowledged(client):
    response = client.post(
        '/iclock/cdata?SN=ZK001&table=ATTLOG',
        data='1001\t2024-05-01 08:00:00\t0\t15\n1002\t2024-05-01 08:01:00\t0\t15\n'
    )

    assert response.status_code == 200
    assert response.get_data(as_text=True) == 'OK'
    uploads = [e for e in client.get('/api/logs').get_json() if e['logType'] == 'data_upload']
    assert uploads[0]['message'] == 'Received 2 ATTLOG record(s)'


def test_handshake_sweeps_previous_day(client, clock):
    client.post('/api/add-command', json={'command': 'YESTERDAY'})
    client.get('/iclock/cdata?SN=ZK001')

    clock.advance(days=1)
    client.get('/iclock/cdata?SN=ZK002')

    assert client.get('/api/commands').get_json()['commands'] == []
    assert [d['serial'] for d in client.get('/api/devices').get_json()] == ['ZK002']


def test_concurrent_first_requests_share_one_engine(app):
    engines = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        engines.append(server.get_engine())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(engine) for engine in engines}) == 1
