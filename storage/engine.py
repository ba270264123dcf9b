"""
Adapter over the embedded key-value engine.

The engine is a single SQLite table reached through the Django ORM. SQLite
gives us what the handlers rely on: durable commits, a unique ordered key
index, snapshot reads under WAL and one writer at a time. Each engine owns the
SQLite file inside its data directory and reaches it through its own
connection alias. Callers never touch the ORM directly; they get a Transaction
inside ``read_transaction`` or ``write_transaction`` and work with plain keys,
values and version tokens.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from django.conf import settings
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connections, transaction
from django.db.models import Max

from storage.exceptions import KeyNotFound, StorageError
from storage.models import KeyValueEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PREFETCH_SIZE = 10


def register_database(path: str) -> str:
    """Register a connection alias for the database file under ``path`` and return it."""
    path = os.path.abspath(path)
    alias = f"kv:{path}"
    if alias not in connections.settings:
        configured = connections.configure_settings(
            {
                **connections.settings,
                alias: {
                    "ENGINE": "django.db.backends.sqlite3",
                    "NAME": os.path.join(path, settings.KV_DB_FILENAME),
                    "OPTIONS": dict(settings.KV_DB_OPTIONS),
                },
            }
        )
        connections.settings[alias] = configured[alias]
    return alias


@dataclass(frozen=True)
class Item:
    """A (key, value, version) triple as stored by the engine."""

    key: str
    value: Optional[str]
    version: int


class Transaction:
    """Operations available inside a single engine transaction."""

    def __init__(self, using: str, update: bool):
        self.using = using
        self.update = update
        self._entries = KeyValueEntry.objects.using(using)

    def _check_writable(self):
        if not self.update:
            raise StorageError("No sets or deletes are allowed in a read-only transaction")

    def _next_version(self) -> int:
        # Commit time in microseconds, forced past the newest stored version.
        newest = self._entries.aggregate(newest=Max("version"))["newest"] or 0
        return max(time.time_ns() // 1000, newest + 1)

    def get(self, key: str) -> Item:
        row = self._entries.filter(key=key).values_list("key", "value", "version").first()
        if row is None:
            raise KeyNotFound(key)
        return Item(*row)

    def set(self, key: str, value: str) -> int:
        """Store ``value`` under ``key``, replacing any previous value. Returns the new version."""
        self._check_writable()
        version = self._next_version()
        updated = self._entries.filter(key=key).update(value=value, version=version)
        if not updated:
            self._entries.create(key=key, value=value, version=version)
        return version

    def delete(self, key: str) -> None:
        self._check_writable()
        deleted, _ = self._entries.filter(key=key).delete()
        if not deleted:
            raise KeyNotFound(key)

    def iterate(
        self, prefetch_values: bool = True, prefetch_size: int = DEFAULT_PREFETCH_SIZE
    ) -> Iterator[Item]:
        """
        Lazily walk the whole keyspace in ascending key order.

        Args:
            prefetch_values: Load values along with keys. When False every
                yielded item has ``value=None``.
            prefetch_size: Number of rows fetched from the engine per round trip.
        """
        queryset = self._entries.order_by("key")
        if prefetch_values:
            for key, value, version in queryset.values_list("key", "value", "version").iterator(
                chunk_size=prefetch_size
            ):
                yield Item(key, value, version)
        else:
            for key, version in queryset.values_list("key", "version").iterator(
                chunk_size=prefetch_size
            ):
                yield Item(key, None, version)


class StorageEngine:
    """Handle to the engine rooted at ``path``; safe to share between requests."""

    def __init__(self, path: str, using: Optional[str] = None):
        """
        Args:
            path: Data directory holding the database file.
            using: Connection alias already configured for that file. When
                omitted a new alias is registered for ``path``.
        """
        self.path = os.fspath(path)
        self.using = using if using is not None else register_database(self.path)

    def __repr__(self) -> str:
        return f"StorageEngine(path={self.path!r}, using={self.using!r})"

    def ensure_directory(self) -> None:
        os.makedirs(self.path, exist_ok=True)

    def close(self) -> None:
        """Close the calling thread's connection to the engine."""
        connections[self.using].close()

    def open(self) -> "StorageEngine":
        """
        Make the engine ready to serve: create the data directory, connect and
        bring the schema up to date.

        Raises:
            StorageError: If any of these steps fails.
        """
        try:
            self.ensure_directory()
            connections[self.using].ensure_connection()
            call_command("migrate", database=self.using, interactive=False, verbosity=0)
        except (OSError, DatabaseError, CommandError) as exc:
            raise StorageError(f"Failed to open database at {self.path}: {exc}") from exc

        logger.info(f"Opened storage engine at {self.path}")
        return self

    def read_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` against a consistent, read-only snapshot."""
        return self._run(fn, update=False)

    def write_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` and commit its mutations atomically; nothing is kept if it raises."""
        return self._run(fn, update=True)

    def _run(self, fn: Callable[[Transaction], T], update: bool) -> T:
        try:
            with transaction.atomic(using=self.using):
                return fn(Transaction(self.using, update=update))
        except DatabaseError as exc:
            raise StorageError(str(exc)) from exc

    def size_on_disk(self) -> int:
        """Total size in bytes of every file under the data directory."""
        total = 0
        for root, _dirs, files in os.walk(self.path):
            for name in files:
                try:
                    total += os.path.getsize(os.path.join(root, name))
                except FileNotFoundError:
                    # WAL and shared-memory files disappear on checkpoint.
                    continue
        return total
