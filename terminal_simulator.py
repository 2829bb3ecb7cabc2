#!/usr/bin/env python3
"""
Terminal simulator for the iClock command sync server.

Behaves like an attendance terminal: handshake, poll until there is no
work left and acknowledge every command received.

Usage:
    python terminal_simulator.py [SERIAL] [BASE_URL]
"""

import sys

import requests

BASE_URL = "http://localhost:8081"
TIMEOUT = 5


def handshake(session, base_url, serial):
    """Send the handshake and return the option block as a dict"""
    response = session.get(f"{base_url}/iclock/cdata", params={"SN": serial}, timeout=TIMEOUT)
    response.raise_for_status()

    options = {}
    for line in response.text.splitlines()[1:]:
        key, _, value = line.partition("=")
        options[key] = value
    return options


def poll(session, base_url, serial):
    """Fetch the next command, None when the server has no work"""
    response = session.get(f"{base_url}/iclock/getrequest", params={"SN": serial}, timeout=TIMEOUT)
    response.raise_for_status()
    return response.text or None


def acknowledge(session, base_url, serial, command, return_code=0):
    """Report a command as executed"""
    command_id = command.split(":")[1] if command.count(":") >= 2 else "0"
    body = f"ID={command_id}&Return={return_code}&CMD=DATA"
    response = session.post(
        f"{base_url}/iclock/devicecmd", params={"SN": serial}, data=body, timeout=TIMEOUT
    )
    response.raise_for_status()
    return response.text


def run_terminal(serial, session=None, base_url=BASE_URL, max_polls=50):
    """
    Run one terminal sync cycle.

    Args:
        serial (str): Serial number to present
        session: requests.Session-like object (a new Session when omitted)
        base_url (str): Server base URL
        max_polls (int): Upper bound on polls, in case the backlog keeps growing

    Returns:
        list: Commands received, in delivery order
    """
    session = session or requests.Session()
    received = []

    handshake(session, base_url, serial)
    for _ in range(max_polls):
        command = poll(session, base_url, serial)
        if command is None:
            break
        received.append(command)
        acknowledge(session, base_url, serial, command)

    return received


def main():
    serial = sys.argv[1] if len(sys.argv) > 1 else "SIM0001"
    base_url = sys.argv[2] if len(sys.argv) > 2 else BASE_URL

    print(f"📟 Simulating terminal {serial} against {base_url}")
    try:
        commands = run_terminal(serial, base_url=base_url)
    except requests.RequestException as e:
        print(f"❌ Sync failed: {e}")
        return 1

    if not commands:
        print("📭 No pending commands")
    for command in commands:
        print(f"✅ {command.split(chr(9), 1)[0]}")
    print(f"📊 Received {len(commands)} command(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
