"""
Device command synchronization engine.

Administrative commands are appended to a backlog partitioned by calendar day
and broadcast to every terminal. Each device record keeps the set of commands
already handed to that terminal; a poll delivers the first command of today's
backlog that is not in that set. There is no per-device queue and no numeric
cursor, so a sweep or an enqueue running mid-poll cannot corrupt delivery.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime

import pytz

from iclock_protocol import extract_pin

logger = logging.getLogger(__name__)

DEVICE_PREFIX = 'device:'
PARTITION_PREFIX = 'commands:'
DATE_FORMAT = '%Y-%m-%d'
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def make_clock(timezone):
    """
    Build a clock returning the current time in a named timezone.

    Args:
        timezone (str or tzinfo): e.g. 'Asia/Tehran'

    Returns:
        callable: Zero-argument function returning an aware datetime
    """
    if isinstance(timezone, str):
        timezone = pytz.timezone(timezone)
    return lambda: datetime.now(timezone)


def unique_in_order(commands):
    """Drop repeated payloads, keeping the first occurrence of each."""
    seen = set()
    unique = []
    for command in commands:
        if command not in seen:
            seen.add(command)
            unique.append(command)
    return unique


class DeviceRegistry:
    """
    One record per terminal serial number, stored under ``device:<serial>``.

    Records are plain dicts::

        {'serial': 'ZK001', 'deliveredCommands': [...], 'lastUserPin': '42',
         'createdAt': '2024-05-01', 'lastSeen': '2024-05-01 08:00:00'}
    """

    def __init__(self, store, clock):
        self.store = store
        self.clock = clock

    @staticmethod
    def key(serial):
        return f'{DEVICE_PREFIX}{serial}'

    def get_device(self, serial):
        return self.store.get(self.key(serial))

    def ensure_device(self, serial):
        """
        Return the device record, creating it if the serial is unseen.

        A record created on an earlier day is replaced by a fresh one, so the
        delivered set always belongs to today and the next sweep cannot drop
        deliveries made today.

        Concurrent creation is harmless: both writers store the same shape.

        Returns:
            tuple: (device record, True if it was created by this call)
        """
        now = self.clock()
        device = self.get_device(serial)
        if device is not None and (device.get('createdAt') or '') >= now.strftime(DATE_FORMAT):
            return device, False

        if device is not None:
            logger.info("Resetting stale delivery state of device %s", serial)
        device = {
            'serial': serial,
            'deliveredCommands': [],
            'createdAt': now.strftime(DATE_FORMAT),
            'lastSeen': now.strftime(TIMESTAMP_FORMAT),
        }
        self.store.put(self.key(serial), device)
        logger.info("Registered device %s", serial)
        return device, True

    def record_delivery(self, serial, command, extracted_pin=None):
        """
        Mark a command as delivered to a device.

        Appending is idempotent: a command already in the delivered set is not
        added twice. The record is persisted before returning, so a command is
        never considered delivered unless the write succeeded.

        Args:
            serial (str): Terminal serial number
            command (str): Command payload handed to the terminal
            extracted_pin (str, optional): PIN parsed from the payload
        """
        device, _ = self.ensure_device(serial)
        delivered = device.setdefault('deliveredCommands', [])
        if command not in delivered:
            delivered.append(command)
        if extracted_pin is not None:
            device['lastUserPin'] = extracted_pin
        device['lastSeen'] = self.clock().strftime(TIMESTAMP_FORMAT)
        self.store.put(self.key(serial), device)

    def touch(self, serial):
        """Refresh lastSeen of an existing device."""
        device, created = self.ensure_device(serial)
        if not created:
            device['lastSeen'] = self.clock().strftime(TIMESTAMP_FORMAT)
            self.store.put(self.key(serial), device)
        return device

    def list_devices(self):
        devices = []
        for key in self.store.keys(DEVICE_PREFIX):
            device = self.store.get(key)
            if device is not None:
                devices.append(device)
        return devices

    def remove_device(self, serial):
        return self.store.delete(self.key(serial))

    def sweep_older_than_today(self):
        """
        Delete device records created before today.

        Returns:
            int: Number of records removed
        """
        today = self.clock().strftime(DATE_FORMAT)
        removed = 0
        for key in self.store.keys(DEVICE_PREFIX):
            device = self.store.get(key)
            # Records without a creation date cannot be aged; treat them as stale
            created_at = (device or {}).get('createdAt') or ''
            if created_at < today and self.store.delete(key):
                removed += 1
        return removed


class CommandBacklog:
    """
    Append-only command log partitioned by day, shared by all terminals.

    Partitions live under ``commands:<YYYY-MM-DD>``; only today's partition
    takes part in dispatch.
    """

    def __init__(self, store, clock):
        self.store = store
        self.clock = clock
        # Serialises read-modify-write appends within this process
        self._append_lock = threading.Lock()

    def today(self):
        return self.clock().strftime(DATE_FORMAT)

    @staticmethod
    def key(day):
        return f'{PARTITION_PREFIX}{day}'

    def enqueue(self, commands):
        """
        Append one command or a list of commands to today's partition.

        Args:
            commands (str or list): Command payload(s), kept in argument order

        Returns:
            int: Size of today's partition after the append
        """
        if isinstance(commands, str):
            commands = [commands]
        else:
            commands = list(commands)
        if not commands:
            return len(self.current_partition())

        for command in commands:
            if not isinstance(command, str):
                raise TypeError(f"Commands must be strings, got {type(command).__name__}")

        with self._append_lock:
            key = self.key(self.today())
            partition = self.store.get(key) or []
            partition.extend(commands)
            self.store.put(key, partition)

        logger.info("Enqueued %d command(s), backlog now %d", len(commands), len(partition))
        return len(partition)

    def current_partition(self):
        return self.store.get(self.key(self.today())) or []

    def sweep_older_than_today(self):
        """
        Delete every partition dated strictly before today.

        Returns:
            int: Number of partitions removed
        """
        today_key = self.key(self.today())
        removed = 0
        for key in self.store.keys(PARTITION_PREFIX):
            if key < today_key and self.store.delete(key):
                removed += 1
        return removed


class UserRoster:
    """
    Users enrolled through the admin API, stored under ``users`` keyed by PIN.

    The roster is the administrative view of who was queued for enrollment;
    it is not day-partitioned and the retention sweep leaves it alone.
    """

    KEY = 'users'

    def __init__(self, store, clock):
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()

    def add_user(self, user_pin, name, photo_size=None):
        user = {
            'userPin': user_pin,
            'name': name,
            'photoSize': photo_size,
            'registeredAt': self.clock().strftime(TIMESTAMP_FORMAT),
        }
        with self._lock:
            users = self.store.get(self.KEY) or {}
            users[user_pin] = user
            self.store.put(self.KEY, users)
        return user

    def remove_user(self, user_pin):
        with self._lock:
            users = self.store.get(self.KEY) or {}
            if users.pop(user_pin, None) is None:
                return False
            self.store.put(self.KEY, users)
        return True

    def list_users(self):
        users = self.store.get(self.KEY) or {}
        return sorted(users.values(), key=lambda user: user['userPin'])


class CommandSyncEngine:
    """
    Ties the registry and backlog together for the terminal-facing calls.

    Args:
        store: Key-value store with get/put/delete/keys
        clock (callable): Returns the current aware datetime
    """

    def __init__(self, store, clock):
        self.store = store
        self.clock = clock
        self.registry = DeviceRegistry(store, clock)
        self.backlog = CommandBacklog(store, clock)
        self.users = UserRoster(store, clock)
        self._locks_guard = threading.Lock()
        self._serial_locks = {}

    def _lock_for(self, serial):
        with self._locks_guard:
            lock = self._serial_locks.get(serial)
            if lock is None:
                lock = self._serial_locks[serial] = threading.Lock()
            return lock

    @contextmanager
    def _device_section(self, serial):
        """Hold the serial's lock; retry if the lock was pruned while waiting."""
        while True:
            lock = self._lock_for(serial)
            lock.acquire()
            with self._locks_guard:
                if self._serial_locks.get(serial) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _prune_locks(self):
        """Drop idle per-device locks whose device record no longer exists."""
        known = set(self.store.keys(DEVICE_PREFIX))
        with self._locks_guard:
            for serial, lock in list(self._serial_locks.items()):
                if DeviceRegistry.key(serial) not in known and not lock.locked():
                    del self._serial_locks[serial]

    def handshake(self, serial):
        """
        Handle a terminal handshake: sweep stale state, then register the device.

        Returns:
            tuple: (device record, True if the device was created)
        """
        self.sweep()
        with self._device_section(serial):
            device, created = self.registry.ensure_device(serial)
            if not created:
                device = self.registry.touch(serial)
        return device, created

    def pending_commands(self, device):
        """Today's commands not yet delivered to a device, in backlog order."""
        delivered = set((device or {}).get('deliveredCommands') or [])
        backlog = unique_in_order(self.backlog.current_partition())
        return [command for command in backlog if command not in delivered]

    def poll(self, serial):
        """
        Pick the next command for a terminal and record it as delivered.

        A poll from an unseen serial registers the device on the fly. Store
        failures propagate; they are never reported as "no work".

        Returns:
            str or None: The command payload, or None when nothing is pending
        """
        with self._device_section(serial):
            device, _ = self.registry.ensure_device(serial)
            pending = self.pending_commands(device)
            if not pending:
                return None

            command = pending[0]
            pin = extract_pin(command)
            self.registry.record_delivery(serial, command, pin)

        logger.info("Dispatched command to %s (PIN=%s)", serial, pin)
        return command

    def sweep(self):
        """
        Remove backlog partitions and device records older than today.

        Returns:
            dict: {'partitions': n, 'devices': m}
        """
        partitions = self.backlog.sweep_older_than_today()
        devices = self.registry.sweep_older_than_today()
        self._prune_locks()
        if partitions or devices:
            logger.info("Retention sweep removed %d partition(s) and %d device(s)",
                        partitions, devices)
        return {'partitions': partitions, 'devices': devices}

    def remove_device(self, serial):
        """
        Forget a device and its lock.

        Returns:
            bool: True if a record was deleted
        """
        with self._device_section(serial):
            removed = self.registry.remove_device(serial)
        self._prune_locks()
        return removed
