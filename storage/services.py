import logging
from dataclasses import dataclass
from itertools import islice
from typing import List

from storage.engine import StorageEngine, Transaction
from storage.records import Record, to_record

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


@dataclass(frozen=True)
class Stats:
    num_keys: int
    database_size: int


def list_records(engine: StorageEngine, limit: int = DEFAULT_LIST_LIMIT) -> List[Record]:
    """
    Return up to ``limit`` records starting from the first key.

    There is no cursor: every call walks from the start of the keyspace.
    Negative limits are treated as zero.
    """
    limit = max(limit, 0)

    def collect(txn: Transaction) -> List[Record]:
        items = islice(txn.iterate(), limit)
        return [to_record(item.key, item.value, item.version) for item in items]

    records = engine.read_transaction(collect)
    logger.debug(f"Listed {len(records)} records (limit={limit})")
    return records


def get_record(engine: StorageEngine, key: str) -> Record:
    """
    Raises:
        KeyNotFound: If ``key`` is not stored.
    """
    item = engine.read_transaction(lambda txn: txn.get(key))
    return to_record(item.key, item.value, item.version)


def _put(engine: StorageEngine, key: str, value: str) -> Record:
    version = engine.write_transaction(lambda txn: txn.set(key, value))
    return to_record(key, value, version)


def create_record(engine: StorageEngine, key: str, value: str) -> Record:
    """
    Store ``value`` under ``key``, overwriting whatever was there.

    Raises:
        ValueError: If ``key`` is empty. Nothing is written in that case.
    """
    if not key:
        raise ValueError("Key cannot be empty")
    record = _put(engine, key, value)
    logger.info(f"Created key {key!r}")
    return record


def update_record(engine: StorageEngine, key: str, value: str) -> Record:
    """Replace the value of ``key``; a missing key is created."""
    record = _put(engine, key, value)
    logger.info(f"Updated key {key!r}")
    return record


def delete_record(engine: StorageEngine, key: str) -> None:
    """
    Raises:
        KeyNotFound: If ``key`` is not stored.
    """
    engine.write_transaction(lambda txn: txn.delete(key))
    logger.info(f"Deleted key {key!r}")


def search_records(engine: StorageEngine, query: str) -> List[Record]:
    """
    Full scan returning every record whose key contains ``query``, ignoring case.

    Raises:
        ValueError: If ``query`` is empty.
    """
    if not query:
        raise ValueError("Query parameter 'q' is required")
    needle = query.lower()

    def scan(txn: Transaction) -> List[Record]:
        return [
            to_record(item.key, item.value, item.version)
            for item in txn.iterate()
            if needle in item.key.lower()
        ]

    records = engine.read_transaction(scan)
    logger.debug(f"Search {query!r} matched {len(records)} records")
    return records


def get_stats(engine: StorageEngine) -> Stats:
    # Key count and directory size are two separate reads, not one snapshot.
    num_keys = engine.read_transaction(
        lambda txn: sum(1 for _ in txn.iterate(prefetch_values=False))
    )
    return Stats(num_keys=num_keys, database_size=engine.size_on_disk())
