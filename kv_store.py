"""
Durable key-value store for the iClock command sync server.

Values are JSON documents kept in a single SQLite table, so the sync engine
needs no relational schema of its own. Every call opens its own connection,
which keeps the store safe to share between Flask request threads.
"""

import json
import sqlite3


class StoreError(Exception):
    """Raised when the underlying storage cannot be read or written."""


class DatabaseConnection:
    """
    Context manager for SQLite database connections.
    Commits on success, rolls back when the block raises.
    """

    def __init__(self, database):
        self.database = database
        self.conn = None

    def __enter__(self):
        """
        Establish database connection with optimized SQLite settings.

        Returns:
            sqlite3.Connection: Database connection object with row factory
        """
        self.conn = sqlite3.connect(self.database, timeout=30, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        # Enable WAL mode for better concurrency
        self.conn.execute('PRAGMA journal_mode=WAL;')
        self.conn.execute('PRAGMA synchronous=NORMAL;')
        self.conn.execute('PRAGMA temp_store=memory;')
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            try:
                if exc_type is None:
                    self.conn.commit()
                else:
                    self.conn.rollback()
            finally:
                self.conn.close()


class KeyValueStore:
    """
    SQLite-backed store of named JSON values.

    Args:
        database (str): Path to the SQLite database file
    """

    def __init__(self, database):
        self.database = database

    def init_schema(self):
        """Create the kv_store table if it does not exist yet."""
        try:
            with DatabaseConnection(self.database) as conn:
                conn.execute('''CREATE TABLE IF NOT EXISTS kv_store
                                (key TEXT PRIMARY KEY,
                                 value TEXT NOT NULL,
                                 updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)''')
        except sqlite3.Error as e:
            raise StoreError(f"Could not initialise store at {self.database}: {e}") from e

    def get(self, key):
        """
        Read a value.

        Args:
            key (str): Name of the value

        Returns:
            The JSON-decoded value, or None when the key is absent

        Raises:
            StoreError: On I/O failure or when the stored document is not valid JSON
        """
        try:
            with DatabaseConnection(self.database) as conn:
                row = conn.execute('SELECT value FROM kv_store WHERE key = ?', (key,)).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Error reading '{key}': {e}") from e

        if row is None:
            return None
        try:
            return json.loads(row['value'])
        except ValueError as e:
            raise StoreError(f"Corrupt value stored under '{key}': {e}") from e

    def put(self, key, value):
        """
        Write (insert or replace) a value.

        Args:
            key (str): Name of the value
            value: Any JSON-serialisable object
        """
        try:
            document = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for '{key}' is not JSON serialisable: {e}") from e

        try:
            with DatabaseConnection(self.database) as conn:
                conn.execute('''INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                                VALUES (?, ?, CURRENT_TIMESTAMP)''', (key, document))
        except sqlite3.Error as e:
            raise StoreError(f"Error writing '{key}': {e}") from e

    def delete(self, key):
        """
        Remove a value.

        Returns:
            bool: True if something was deleted
        """
        try:
            with DatabaseConnection(self.database) as conn:
                cursor = conn.execute('DELETE FROM kv_store WHERE key = ?', (key,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"Error deleting '{key}': {e}") from e

    def keys(self, prefix=''):
        """
        List keys starting with a prefix, sorted.

        Args:
            prefix (str, optional): Key prefix to match (default: all keys)

        Returns:
            list: Matching keys in ascending order
        """
        try:
            with DatabaseConnection(self.database) as conn:
                rows = conn.execute(
                    'SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key',
                    (len(prefix), prefix)
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Error listing keys with prefix '{prefix}': {e}") from e
        return [row['key'] for row in rows]
