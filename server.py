"""
iClock Command Sync Server

A Flask web application that feeds administrative commands to biometric
attendance terminals speaking the iClock push protocol.
The system provides:
- Terminal handshake with lazy device registration
- Per-terminal, deduplicated, ordered command delivery (one command per poll)
- Acknowledgment and data-upload intake recorded in the system log
- Admin API to queue user enrollment/deletion and raw commands
- Daily retention sweep of the backlog and device delivery state

Database: SQLite (kv_store for engine state, system_logs for events)
Timezone: configurable, Asia/Tehran by default
Terminal Communication: plain-text /iclock/* endpoints
"""

import logging
import os
import sqlite3
import threading
import time
from datetime import datetime

from flask import Flask, jsonify, make_response, request
from flask_cors import CORS

from command_sync import TIMESTAMP_FORMAT, CommandSyncEngine, make_clock
from iclock_protocol import (
    ACK_BODY,
    NO_WORK_BODY,
    ProtocolDecodeError,
    ValidationError,
    build_delete_user_command,
    build_handshake_body,
    build_user_commands,
    command_summary,
    parse_command_results,
    require_serial,
    terminal_headers,
)
from kv_store import DatabaseConnection, KeyValueStore, StoreError

logger = logging.getLogger(__name__)

# Flask application initialization
app = Flask(__name__)
# Admin API is called from browser dashboards on other origins
CORS(app, resources={r"/api/*": {"origins": "*"}})

# Configuration constants
DATABASE = os.getenv('ICLOCK_DATABASE', 'iclock_sync.db')   # SQLite file for engine state and logs
TIMEZONE = os.getenv('ICLOCK_TIMEZONE', 'Asia/Tehran')      # Zone deciding what "today" is
HOST = os.getenv('ICLOCK_HOST', '0.0.0.0')
PORT = int(os.getenv('ICLOCK_PORT', '8081'))
DEVICE_OFFLINE_AFTER = int(os.getenv('DEVICE_OFFLINE_AFTER', '300'))  # seconds

app.config.update(
    DATABASE=DATABASE,
    TIMEZONE=TIMEZONE,
    DEVICE_OFFLINE_AFTER=DEVICE_OFFLINE_AFTER,
    CLOCK=None,  # tests may inject a zero-argument callable returning an aware datetime
)

# Guards creation of the shared engine
engine_lock = threading.Lock()


def get_engine():
    """
    Return the sync engine bound to the configured database.

    The engine is shared by all requests so its per-device locks are too.
    """
    database = app.config['DATABASE']
    with engine_lock:
        engine = app.extensions.get('command_sync')
        if engine is None or engine.store.database != database:
            clock = app.config.get('CLOCK') or make_clock(app.config['TIMEZONE'])
            engine = CommandSyncEngine(KeyValueStore(database), clock)
            app.extensions['command_sync'] = engine
    return engine


def log_system_event(device_name, log_type, message):
    """
    Thread-safe logging of system events with retry logic.

    Event logging is best effort: a failure here never fails the request.

    Args:
        device_name (str): Serial number of the terminal, or 'System'
        log_type (str): Type of log event (handshake, command_sent, command_ack, ...)
        message (str): Log message content
    """
    retry_count = 0
    max_retries = 3

    while retry_count < max_retries:
        try:
            with DatabaseConnection(app.config['DATABASE']) as conn:
                conn.execute(
                    '''INSERT INTO system_logs (device_name, log_type, message)
                       VALUES (?, ?, ?)''',
                    (device_name, log_type, message)
                )
            return
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e).lower() and retry_count < max_retries - 1:
                retry_count += 1
                time.sleep(0.05 * retry_count)  # Small delay with backoff
                continue
            logger.error("Could not write system log after %d attempt(s): %s", retry_count + 1, e)
            return
        except sqlite3.Error as e:
            logger.error("Error logging event: %s", e)
            return


def init_db(database=None):
    """
    Initialize database and create all required tables.
    Creates the key-value table used by the sync engine and the system_logs table.
    """
    database = database or app.config['DATABASE']
    KeyValueStore(database).init_schema()

    with DatabaseConnection(database) as conn:
        conn.execute('''CREATE TABLE IF NOT EXISTS system_logs
                        (id INTEGER PRIMARY KEY AUTOINCREMENT,
                         timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                         device_name TEXT,
                         log_type TEXT,
                         message TEXT)''')


def terminal_response(body, status=200):
    """Plain-text response carrying the headers terminal firmware expects."""
    response = make_response(body, status)
    for name, value in terminal_headers().items():
        response.headers[name] = value
    return response


def is_terminal_request():
    return request.path.startswith('/iclock/')


def json_object_body():
    """
    Parsed JSON body of an admin request, {} when there is none.

    Raises:
        ValidationError: When the body is JSON but not an object
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# Error handlers

@app.errorhandler(ValidationError)
def handle_validation_error(e):
    if is_terminal_request():
        return terminal_response(f'Bad Request: {e}', 400)
    return jsonify({'error': str(e)}), 400


@app.errorhandler(StoreError)
def handle_store_error(e):
    logger.error("Store failure on %s: %s", request.path, e)
    if is_terminal_request():
        return terminal_response('Internal Server Error', 500)
    return jsonify({'error': 'Storage unavailable', 'details': str(e)}), 500


@app.errorhandler(500)
def handle_500(e):
    logger.error("500 error: %s", e)
    return jsonify({'error': 'Internal server error', 'details': str(e)}), 500


@app.errorhandler(404)
def handle_404(e):
    return jsonify({'error': 'Not found', 'details': str(e)}), 404


# Terminal (iClock) Endpoints

@app.route('/iclock/cdata', methods=['GET'])
def iclock_handshake():
    """
    Terminal handshake.

    Runs the retention sweep, registers the terminal if it is unseen and
    answers the fixed option block with the serial echoed on the first line.

    Query parameters:
        SN (str): Terminal serial number (required)

    Returns:
        text/plain: key=value option block
    """
    serial = require_serial(request.args)
    _, created = get_engine().handshake(serial)

    if created:
        log_system_event(serial, 'device_registered', f"Terminal {serial} registered on handshake")
    log_system_event(serial, 'handshake', f"Handshake from {request.remote_addr}")

    return terminal_response(build_handshake_body(serial))


@app.route('/iclock/cdata', methods=['POST'])
def iclock_upload():
    """
    Data pushed by the terminal (attendance logs, operation logs, photos).

    The records themselves are not processed; the upload is acknowledged
    and noted in the system log.
    """
    serial = request.args.get('SN') or 'unknown'
    table = request.args.get('table', 'unknown')
    body = request.get_data(as_text=True) or ''
    record_count = len([line for line in body.splitlines() if line.strip()])

    log_system_event(serial, 'data_upload', f"Received {record_count} {table} record(s)")
    return terminal_response(ACK_BODY)


@app.route('/iclock/getrequest', methods=['GET'])
def iclock_getrequest():
    """
    Work-request poll.

    Delivers at most one command: the first of today's backlog this terminal
    has not received yet. An empty body means there is no work.

    Query parameters:
        SN (str): Terminal serial number (required)

    Returns:
        text/plain: Command payload or empty body
    """
    serial = require_serial(request.args)
    command = get_engine().poll(serial)

    if command is None:
        return terminal_response(NO_WORK_BODY)

    log_system_event(serial, 'command_sent', command_summary(command))
    return terminal_response(command)


@app.route('/iclock/devicecmd', methods=['POST'])
def iclock_devicecmd():
    """
    Command execution results reported by the terminal.

    Acknowledgments are telemetry only: malformed bodies are logged and
    the terminal still gets OK.
    """
    serial = request.args.get('SN') or 'unknown'

    try:
        results = parse_command_results(request.get_data())
    except ProtocolDecodeError as e:
        logger.warning("Undecodable acknowledgment from %s: %s", serial, e)
        log_system_event(serial, 'command_ack_error', str(e))
        return terminal_response(ACK_BODY)

    for result in results:
        log_system_event(
            serial, 'command_ack',
            f"ID={result.get('ID')} Return={result.get('Return')} CMD={result.get('CMD', '')}"
        )
    return terminal_response(ACK_BODY)


# Command Management API Endpoints

@app.route('/api/add-command', methods=['POST'])
def add_command():
    """
    Queue raw command payloads for every terminal.

    Expected JSON payload:
        command (str): A single command, or
        commands (list): Several commands, delivered in list order

    Returns:
        JSON: Number of commands queued and backlog size
    """
    data = json_object_body()
    commands = data.get('commands')
    if commands is None and data.get('command'):
        commands = [data['command']]

    if not commands or not isinstance(commands, list) \
            or not all(isinstance(c, str) and c.strip() for c in commands):
        raise ValidationError('Command is required')

    backlog_size = get_engine().backlog.enqueue(commands)
    log_system_event('System', 'command_queued', f"{len(commands)} command(s) queued")

    return jsonify({
        'message': 'Command added successfully',
        'queued': len(commands),
        'backlogSize': backlog_size
    }), 201


@app.route('/api/register-user', methods=['POST'])
def register_user():
    """
    Queue enrollment of a user with a face photo.

    Expected form data:
        name (str): User display name
        userPin (str): User identifier on the terminals
        photo (file): Face photo, sent to terminals as a base64 template

    Returns:
        JSON: Success message with number of commands queued
    """
    name = (request.form.get('name') or '').strip()
    user_pin = (request.form.get('userPin') or '').strip()
    photo = request.files.get('photo')

    if not name or not user_pin or photo is None:
        raise ValidationError('Missing required fields')

    photo_bytes = photo.read()
    if not photo_bytes:
        raise ValidationError('Photo upload is empty')

    commands = build_user_commands(user_pin, name, photo_bytes)
    engine = get_engine()
    engine.backlog.enqueue(commands)
    engine.users.add_user(user_pin, name, photo_size=len(photo_bytes))
    log_system_event('System', 'user_register', f"User {name} (PIN {user_pin}) queued for enrollment")

    return jsonify({
        'message': 'User registration queued successfully',
        'commands': len(commands)
    }), 200


@app.route('/api/delete-user', methods=['POST'])
def delete_user():
    """
    Queue deletion of a user from every terminal.

    Expected JSON payload:
        userPin (str): User identifier on the terminals
    """
    data = json_object_body()
    user_pin = str(data.get('userPin') or '').strip()
    if not user_pin:
        raise ValidationError('userPin is required')

    command = build_delete_user_command(user_pin)
    engine = get_engine()
    engine.backlog.enqueue(command)
    engine.users.remove_user(user_pin)
    log_system_event('System', 'user_delete', f"User PIN {user_pin} queued for deletion")

    return jsonify({'message': 'User deletion queued successfully', 'command': command}), 200


@app.route('/api/commands', methods=['GET'])
def get_commands():
    """Get today's command backlog"""
    engine = get_engine()
    return jsonify({
        'date': engine.backlog.today(),
        'commands': engine.backlog.current_partition()
    })


@app.route('/api/users', methods=['GET'])
def get_users():
    """
    Get the roster of users queued for enrollment.

    Users leave the roster when their deletion is queued. The photo itself
    is not kept, only its size.

    Returns:
        JSON: List of users ordered by PIN
    """
    return jsonify(get_engine().users.list_users())


# Device Management API Endpoints

@app.route('/api/devices', methods=['GET'])
def get_devices():
    """
    Get all registered terminals with status and delivery progress.

    Status is 'online' when the terminal was seen within
    DEVICE_OFFLINE_AFTER seconds, 'offline' otherwise.

    Returns:
        JSON: List of device records
    """
    engine = get_engine()
    now = engine.clock().replace(tzinfo=None)
    offline_after = app.config['DEVICE_OFFLINE_AFTER']

    devices_list = []
    for device in engine.registry.list_devices():
        status = 'offline'
        last_seen = device.get('lastSeen')
        if last_seen:
            try:
                last_seen_dt = datetime.strptime(last_seen, TIMESTAMP_FORMAT)
                status = 'online' if (now - last_seen_dt).total_seconds() < offline_after else 'offline'
            except ValueError:
                status = 'offline'

        devices_list.append({
            'serial': device.get('serial'),
            'createdAt': device.get('createdAt'),
            'lastSeen': last_seen,
            'lastUserPin': device.get('lastUserPin'),
            'deliveredCount': len(device.get('deliveredCommands') or []),
            'pendingCommands': len(engine.pending_commands(device)),
            'status': status
        })

    return jsonify(devices_list)


@app.route('/api/devices/<path:serial>', methods=['DELETE'])
def delete_device(serial):
    """Forget a terminal; it is registered again on its next handshake or poll."""
    if get_engine().remove_device(serial):
        log_system_event(serial, 'device_management', f"Device '{serial}' deleted")
        return jsonify({'message': f"Device '{serial}' deleted successfully."}), 200

    return jsonify({'error': f"Device '{serial}' not found."}), 404


@app.route('/api/maintenance/sweep', methods=['POST'])
def run_sweep():
    """Run the retention sweep now instead of waiting for the next handshake"""
    removed = get_engine().sweep()
    log_system_event(
        'System', 'retention_sweep',
        f"Removed {removed['partitions']} partition(s) and {removed['devices']} device(s)"
    )
    return jsonify(removed)


# System Logging and Monitoring API Endpoints

@app.route('/api/logs', methods=['GET'])
def get_system_logs():
    """
    Get system logs with pagination support.

    Query parameters:
        limit (int, optional): Maximum number of log entries to return (default: 100)

    Returns:
        JSON: List of log entries ordered newest first
    """
    limit = request.args.get('limit', 100, type=int)

    try:
        with DatabaseConnection(app.config['DATABASE']) as conn:
            logs = conn.execute('''SELECT id, timestamp, device_name, log_type, message
                                   FROM system_logs
                                   ORDER BY id DESC LIMIT ?''', (limit,)).fetchall()
    except sqlite3.Error as e:
        raise StoreError(f"Error reading system logs: {e}") from e

    logs_list = []
    for log in logs:
        logs_list.append({
            'id': log['id'],
            'timestamp': log['timestamp'],
            'deviceName': log['device_name'],
            'logType': log['log_type'],
            'message': log['message']
        })

    return jsonify(logs_list)


def main():
    """
    Main application entry point.

    Initializes the database and starts the Flask server on all interfaces.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    init_db()

    logger.info("Starting iClock command sync server on %s:%d", HOST, PORT)
    logger.info("Terminals should push to: http://<server-ip>:%d/iclock/", PORT)

    app.run(host=HOST, port=PORT, threaded=True)


if __name__ == '__main__':
    main()
