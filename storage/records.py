from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Record:
    """A key/value pair as exposed by the API."""

    key: str
    value: str
    created_at: datetime


def _text(raw: Union[str, bytes, memoryview, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return bytes(raw).decode("utf-8", errors="replace")


def version_to_datetime(version: int) -> datetime:
    """Version tokens count microseconds since the Unix epoch."""
    return EPOCH + timedelta(microseconds=int(version))


def to_record(key, value, version: int) -> Record:
    return Record(key=_text(key), value=_text(value), created_at=version_to_datetime(version))
