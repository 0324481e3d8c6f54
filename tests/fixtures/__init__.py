"""
Shared test helpers for the bookspace_bus tests.

Usage:
    from tests.fixtures import RecordingHandler, document_created, wait_until
"""

from tests.fixtures.broker import BusFactory, publish_raw, settlement_counts
from tests.fixtures.events import (
    RecordingHandler,
    comment_added,
    document_created,
    file_uploaded,
    user_registered,
    wait_until,
)

__all__ = [
    "BusFactory",
    "RecordingHandler",
    "comment_added",
    "document_created",
    "file_uploaded",
    "publish_raw",
    "settlement_counts",
    "user_registered",
    "wait_until",
]
