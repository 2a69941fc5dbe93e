"""Run orchestration against the provider's assistant threads.

One AssistantRun drives a single user message through the provider:

    SUBMITTING -> POLLING -> STREAMING -> DONE
                         +-> FAILED | TIMED_OUT
    (any state before DONE) -> CANCELLED when the consuming task is cancelled

Provider calls are blocking SDK calls, so each one runs in the threadpool;
poll ticks and inter-chunk pauses are asyncio sleeps, which keeps the whole
run cancellable from the request task.
"""
from enum import Enum
from typing import AsyncIterator, Optional
import asyncio
import logging
import re
import time

import anyio
from fastapi.concurrency import run_in_threadpool

from chatwidget.config import settings
from chatwidget.core.errors import ChatError, NoAssistantOutput, ProviderError, ProviderTimeout
from chatwidget.providers.base import (
    RUN_PENDING_STATES,
    AssistantProvider,
    ProviderMessage,
    RunStatus,
)

logger = logging.getLogger(__name__)

_CHUNK_PATTERN = re.compile(r"\s*\S+\s*")


class RunState(str, Enum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def split_into_chunks(text: str) -> list[str]:
    """
    Split text into word-sized chunks.

    Whitespace is kept attached to the words, so joining the chunks gives
    back the original text exactly.
    """
    return _CHUNK_PATTERN.findall(text)


def select_assistant_output(messages: list[ProviderMessage], run_id: Optional[str]) -> ProviderMessage:
    """
    Pick the newest assistant-authored message produced by run_id.

    Provider listings may interleave roles, so the head of the list is not
    trusted to be the answer. Without a run_id, the newest assistant message
    is taken.

    Raises:
        NoAssistantOutput: No assistant message from the run, or it holds no text
    """
    candidates = [msg for msg in messages if msg.role == "assistant"]
    if run_id:
        candidates = [msg for msg in candidates if msg.run_id == run_id]
    if not candidates:
        raise NoAssistantOutput("Assistant produced no message")

    latest = max(candidates, key=lambda msg: msg.created_at)
    if not latest.text.strip():
        raise NoAssistantOutput("Assistant message has no text content")
    return latest


class AssistantRun:
    """
    A single provider run exposed as a lazy, finite, one-shot chunk stream.

    After the stream is exhausted, text, run_id and output_message_id describe
    the result.
    """

    def __init__(
        self,
        provider: AssistantProvider,
        thread_id: str,
        assistant_id: str,
        message: str,
        file_ids: Optional[list[str]] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        chunk_delay: Optional[float] = None,
    ):
        self.provider = provider
        self.thread_id = thread_id
        self.assistant_id = assistant_id
        self.message = message
        self.file_ids = file_ids or []
        self.poll_interval = settings.RUN_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_polls = settings.RUN_MAX_POLLS if max_polls is None else max_polls
        self.chunk_delay = settings.STREAM_CHUNK_DELAY if chunk_delay is None else chunk_delay

        self.state = RunState.SUBMITTING
        self.run_id: Optional[str] = None
        self.output_message_id: Optional[str] = None
        self.text = ""
        self.poll_count = 0
        self.error: Optional[ChatError] = None
        self._consumed = False

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    def __aiter__(self) -> AsyncIterator[str]:
        return self.stream()

    async def stream(self) -> AsyncIterator[str]:
        """Submit, poll and yield the assistant's answer chunk by chunk."""
        if self._consumed:
            raise RuntimeError("AssistantRun can only be streamed once")
        self._consumed = True
        started = time.monotonic()

        try:
            await self._submit()
            await self._poll()
            output = await self._fetch_output()

            self.state = RunState.STREAMING
            self.output_message_id = output.id
            for index, chunk in enumerate(split_into_chunks(output.text)):
                if index and self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                yield chunk
            self.text = output.text
            self.state = RunState.DONE
            logger.info(
                f"Run completed: thread={self.thread_id}, run={self.run_id}, "
                f"polls={self.poll_count}, elapsed={time.monotonic() - started:.2f}s"
            )
        except asyncio.CancelledError:
            previous = self.state
            self.state = RunState.CANCELLED
            logger.info(f"Run cancelled in state {previous.value}: thread={self.thread_id}, run={self.run_id}")
            if previous in (RunState.SUBMITTING, RunState.POLLING):
                await self._cancel_remote()
            raise
        except ChatError as e:
            if self.state not in (RunState.FAILED, RunState.TIMED_OUT):
                self.state = RunState.FAILED
            self.error = e
            raise

    async def _submit(self) -> None:
        await run_in_threadpool(
            self.provider.create_message,
            self.thread_id,
            "user",
            self.message,
            self.file_ids or None,
        )
        self.run_id = await run_in_threadpool(
            self.provider.start_run, self.thread_id, self.assistant_id
        )
        self.state = RunState.POLLING
        logger.debug(f"Run started: thread={self.thread_id}, run={self.run_id}")

    async def _poll(self) -> RunStatus:
        status: Optional[RunStatus] = None
        while self.poll_count < self.max_polls:
            await asyncio.sleep(self.poll_interval)
            status = await run_in_threadpool(
                self.provider.get_run_status, self.thread_id, self.run_id
            )
            self.poll_count += 1
            if status.status not in RUN_PENDING_STATES:
                break
        else:
            self.state = RunState.TIMED_OUT
            logger.warning(
                f"Run timed out after {self.poll_count} polls: thread={self.thread_id}, run={self.run_id}"
            )
            await self._cancel_remote()
            raise ProviderTimeout(f"Run did not complete after {self.poll_count} polls")

        if status.status != "completed":
            self.state = RunState.FAILED
            raise ProviderError(f"Run {status.status}: {status.last_error or 'no error detail'}")
        return status

    async def _fetch_output(self) -> ProviderMessage:
        messages = await run_in_threadpool(self.provider.list_messages, self.thread_id)
        return select_assistant_output(messages, self.run_id)

    async def _cancel_remote(self) -> None:
        if not self.run_id:
            return
        # Shielded so cleanup still runs inside an already-cancelled scope
        with anyio.CancelScope(shield=True):
            try:
                await run_in_threadpool(self.provider.cancel_run, self.thread_id, self.run_id)
            except ChatError as e:
                logger.warning(f"Run cancel failed: thread={self.thread_id}, run={self.run_id}: {e.detail}")
