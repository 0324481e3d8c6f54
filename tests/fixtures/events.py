"""Event factories and recording handlers for bus tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from bookspace_bus.events import (
    CommentAdded,
    CommentAddedData,
    DocumentCreated,
    DocumentCreatedData,
    Event,
    FileUploaded,
    FileUploadedData,
    UserRegistered,
    UserRegisteredData,
)


def document_created(
    document_id: str = "d1",
    title: str = "API Guide",
    created_by: str = "u1",
    tags: list[str] | None = None,
    correlation_id: str | None = None,
) -> DocumentCreated:
    return DocumentCreated(
        correlation_id=correlation_id,
        data=DocumentCreatedData(
            document_id=document_id,
            title=title,
            created_by=created_by,
            tags=tags if tags is not None else ["docs"],
        ),
    )


def comment_added(comment_id: str = "c1", document_id: str = "d1") -> CommentAdded:
    return CommentAdded(
        data=CommentAddedData(
            comment_id=comment_id,
            document_id=document_id,
            user_id="u2",
            text="Nice write-up",
        )
    )


def user_registered(user_id: str = "u1") -> UserRegistered:
    return UserRegistered(
        data=UserRegisteredData(user_id=user_id, email=f"{user_id}@example.com", name="Ada"),
    )


def file_uploaded(
    file_id: str = "f1",
    s3_key: str = "uploads/u1/photo.png",
    is_image: bool = True,
) -> FileUploaded:
    return FileUploaded(
        data=FileUploadedData(
            file_id=file_id,
            file_name=s3_key.rsplit("/", 1)[-1],
            file_size=1024,
            mime_type="image/png" if is_image else "application/pdf",
            s3_key=s3_key,
            uploaded_by="u1",
            is_image=is_image,
        )
    )


class RecordingHandler:
    """
    Handler that records every event it receives and fails on demand.

    Args:
        failures: Number of leading calls that raise
        always_fail: Raise on every call
    """

    def __init__(self, failures: int = 0, always_fail: bool = False) -> None:
        self.failures = failures
        self.always_fail = always_fail
        self.events: list[Event] = []
        self.call_times: list[float] = []

    @property
    def calls(self) -> int:
        return len(self.events)

    async def __call__(self, event: Event) -> None:
        self.events.append(event)
        self.call_times.append(time.monotonic())
        if self.always_fail or len(self.events) <= self.failures:
            raise RuntimeError(f"handler failure #{len(self.events)}")


async def wait_until(
    predicate: Callable[[], Any],
    timeout: float = 3.0,
    interval: float = 0.005,
) -> None:
    """Poll ``predicate`` until it is truthy or fail after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)
