"""
Encode/decode helpers for the iClock push protocol spoken by the terminals.

Terminals talk plain text over short-lived HTTP requests:
- GET  /iclock/cdata       handshake, answered with an option block
- GET  /iclock/getrequest  poll, answered with one command or an empty body
- POST /iclock/devicecmd   command results, one "ID=..&Return=..&CMD=.." line each

Commands look like ``C:<id>:DATA USER PIN=42\tName=Alice``: a tag, an id,
the instruction keyword and tab separated KEY=value fields.
"""

import base64
import itertools
import re
import time
from urllib.parse import parse_qsl

from werkzeug.http import http_date


class ValidationError(Exception):
    """Raised when a request is missing required input, e.g. the terminal SN."""


class ProtocolDecodeError(Exception):
    """Raised when a terminal sends a body that cannot be decoded."""


# Option block returned on every handshake, in the order terminals expect it
HANDSHAKE_OPTIONS = (
    ('ATTLOGStamp', 'None'),
    ('OPERLOGStamp', '9999'),
    ('ATTPHOTOStamp', 'None'),
    ('ErrorDelay', '30'),
    ('Delay', '10'),
    ('TransTimes', '00:00;14:05'),
    ('TransInterval', '1'),
    ('TransFlag', 'TransData AttLog OpLog AttPhoto EnrollUser ChgUser EnrollFP ChgFP UserPic'),
    ('TimeZone', '8'),
    ('Realtime', '0'),
    ('Encrypt', '0'),
)

NO_WORK_BODY = ''
ACK_BODY = 'OK'
SERVER_BANNER = 'nginx/1.6.0'

PIN_PATTERN = re.compile(r'(?:^|\s)PIN=([^\t\r\n]+)')
CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')

# Command ids only need to be unique within a day; seed from the clock
_command_ids = itertools.count(int(time.time() * 1000))


def require_serial(args):
    """
    Pull the terminal serial number out of the query string.

    Args:
        args (Mapping): Request query parameters

    Returns:
        str: The stripped serial number

    Raises:
        ValidationError: When SN is missing or blank
    """
    serial = args.get('SN')
    if not isinstance(serial, str) or not serial.strip():
        raise ValidationError('SN is required and must be a non-empty string')
    return serial.strip()


def terminal_headers(now=None):
    """Headers the terminal firmware expects on every response."""
    return {
        'Content-Type': 'text/plain',
        'Pragma': 'no-cache',
        'Cache-Control': 'no-store',
        'Connection': 'close',
        'Date': http_date(now if now is not None else time.time()),
        'Server': SERVER_BANNER,
    }


def build_handshake_body(serial, options=HANDSHAKE_OPTIONS):
    """
    Build the option block answered to a handshake.

    Args:
        serial (str): Terminal serial number, echoed on the first line
        options (iterable): (key, value) pairs to send

    Returns:
        str: Newline separated key=value block
    """
    lines = [f'GET OPTION FROM:{serial}']
    lines.extend(f'{key}={value}' for key, value in options)
    return '\n'.join(lines)


def extract_pin(command):
    """
    Best-effort extraction of the PIN field of a command payload.

    Returns:
        str or None: The PIN value, None when the marker is absent or empty
    """
    if not isinstance(command, str):
        return None
    match = PIN_PATTERN.search(command)
    if not match:
        return None
    return match.group(1).strip() or None


def command_summary(command):
    """Header of a command up to its first tab, so templates stay out of logs."""
    return command.split('\t', 1)[0]


def parse_command_results(body):
    """
    Decode a /iclock/devicecmd body.

    Each non-empty line is an url-encoded record such as
    ``ID=1700000000000&Return=0&CMD=DATA``.

    Args:
        body (str or bytes): Raw request body

    Returns:
        list: One dict per result line

    Raises:
        ProtocolDecodeError: When the body is not text or a line has no ID/Return
    """
    if isinstance(body, bytes):
        try:
            body = body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolDecodeError(f'Acknowledgment body is not UTF-8: {e}') from e

    results = []
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        fields = dict(parse_qsl(line, keep_blank_values=True))
        if 'ID' not in fields or 'Return' not in fields:
            raise ProtocolDecodeError(f'Malformed command result line: {line!r}')
        results.append(fields)

    if not results:
        raise ProtocolDecodeError('Acknowledgment body is empty')
    return results


def next_command_id():
    return next(_command_ids)


def format_command(keyword, fields, command_id=None):
    """
    Format an administrative command.

    Args:
        keyword (str): Instruction, e.g. 'DATA USER'
        fields (list): (key, value) pairs, joined with tabs
        command_id (int, optional): Explicit id, generated when omitted

    Returns:
        str: Command payload ready to enqueue

    Raises:
        ValidationError: When a value holds a tab, newline or other control
            character, which would split it into extra fields
    """
    for key, value in fields:
        if CONTROL_CHARS.search(str(value)):
            raise ValidationError(f'{key} must not contain tabs, newlines or control characters')

    if command_id is None:
        command_id = next_command_id()
    body = '\t'.join(f'{key}={value}' for key, value in fields)
    return f'C:{command_id}:{keyword} {body}'


def build_user_commands(user_pin, name, photo_bytes):
    """
    Commands that enroll a user together with a face photo template.

    Args:
        user_pin (str): User identifier on the terminal
        name (str): Display name
        photo_bytes (bytes): Raw photo, sent base64-encoded as TMP

    Returns:
        list: [DATA USER command, DATA UPDATE BIODATA command]
    """
    template = base64.b64encode(photo_bytes).decode('ascii')
    return [
        format_command('DATA USER', [('PIN', user_pin), ('Name', name)]),
        format_command('DATA UPDATE BIODATA', [
            ('PIN', user_pin),
            ('FID', 1),
            ('No', 0),
            ('Index', 0),
            ('Type', 9),
            ('majorVer', 5),
            ('minorVer', 622),
            ('Format', 0),
            ('Size', len(photo_bytes)),
            ('Valid', 1),
            ('TMP', template),
        ]),
    ]


def build_delete_user_command(user_pin):
    return format_command('DATA DELETE USERINFO', [('PIN', user_pin)])
