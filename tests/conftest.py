"""
Shared pytest fixtures for voicejournal tests.

Provides a fake AI backend so worker tests never touch the network.
"""

import asyncio
from pathlib import Path

import pytest

from voicejournal.types import SummaryResult
from voicejournal.worker import AiWorker
from voicejournal.workspace import WorkspaceRouter


class FakeAiClient:
    """
    In-memory stand-in for AiBackendClient.

    Set the *_error attributes to an exception instance to make the
    matching call fail; `delay` makes transcribe() yield to the event
    loop so concurrent drains can overlap.
    """

    base_url = "http://ai.test"

    def __init__(self):
        self.transcript = "We need to book flights and reserve the hotel for the trip."
        self.summary = SummaryResult(title="Trip planning", bullets=("Book flights", "Reserve hotel"))
        self.tags = ["travel", "planning"]
        self.transcribe_error = None
        self.summarize_error = None
        self.tags_error = None
        self.delay = 0.0
        self.calls = {"transcribe": 0, "summarize": 0, "suggest_tags": 0}
        self.transcribed = []

    async def transcribe(self, audio_location: str) -> str:
        self.calls["transcribe"] += 1
        self.transcribed.append(audio_location)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript

    async def summarize(self, transcript: str) -> SummaryResult:
        self.calls["summarize"] += 1
        if self.summarize_error is not None:
            raise self.summarize_error
        return self.summary

    async def suggest_tags(self, transcript: str, summary: str | None = None) -> list[str]:
        self.calls["suggest_tags"] += 1
        if self.tags_error is not None:
            raise self.tags_error
        return list(self.tags)


@pytest.fixture
def router(tmp_path):
    """Two-workspace router over a temporary store directory."""
    r = WorkspaceRouter(tmp_path / "store", workspaces=("professional", "personal"))
    yield r
    r.close()


@pytest.fixture
def workspace(router):
    """The active (professional) workspace."""
    return router.resolve()


@pytest.fixture
def fake_client():
    return FakeAiClient()


@pytest.fixture
def worker(router, fake_client):
    """Worker that retries a failed job within the same drain."""
    return AiWorker(router, fake_client, max_attempts=3, retry_backoff=0)


@pytest.fixture
def audio_file(tmp_path) -> Path:
    """A small file standing in for a recorded voice note."""
    path = tmp_path / "note.m4a"
    path.write_bytes(b"\x00\x00\x00\x18ftypM4A fake audio")
    return path


@pytest.fixture
def entry(workspace, audio_file):
    """A fresh entry with no AI work done yet."""
    return workspace.entries.create_entry(str(audio_file), 42.4)
