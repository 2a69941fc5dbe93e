"""Streaming transport: an AssistantRun as a chunked HTTP response.

The response is handed back to the HTTP layer before the run has produced
anything; chunks are written as the run yields them. Once the response has
started, errors end the stream quietly instead of writing error content into
a body the client parses as plain text. Clients that see a stream end without
a finish marker re-fetch the conversation's turns.

Wire formats:
- text/plain (default): raw text chunks
- text/event-stream (opt-in via Accept):
      data: {"type": "text-delta", "delta": "<text>"}\n\n
      data: {"type": "finish"}\n\n          (only after a successful run)
"""
from typing import AsyncIterator, Awaitable, Callable, Optional
import json
import logging

from starlette.background import BackgroundTask
from fastapi.responses import StreamingResponse

from chatwidget.core.errors import ChatError
from chatwidget.services.run_orchestrator import AssistantRun

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"
PLAIN_TEXT = "text/plain; charset=utf-8"


def _sse(chunk: dict) -> str:
    """Format a chunk as an SSE data event."""
    return f"data: {json.dumps(chunk)}\n\n"


def wants_event_stream(accept: Optional[str]) -> bool:
    return bool(accept) and EVENT_STREAM in accept


class StreamingTransport:
    """Wraps a run's chunk stream into a StreamingResponse."""

    def __init__(
        self,
        run: AssistantRun,
        event_stream: bool = False,
        on_complete: Optional[Callable[[], Awaitable[None]]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.run = run
        self.event_stream = event_stream
        self.on_complete = on_complete
        self.headers = headers or {}
        self.bytes_sent = 0

    async def body(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.run:
                if self.event_stream:
                    data = _sse({"type": "text-delta", "delta": chunk}).encode("utf-8")
                else:
                    data = chunk.encode("utf-8")
                self.bytes_sent += len(data)
                yield data
        except ChatError as e:
            logger.warning(
                f"Stream ended early: thread={self.run.thread_id}, run={self.run.run_id}, "
                f"state={self.run.state.value}, bytes_sent={self.bytes_sent}: {e.detail}"
            )
            return
        except Exception:
            logger.exception(
                f"Unexpected streaming error: thread={self.run.thread_id}, run={self.run.run_id}"
            )
            return

        if self.event_stream:
            yield _sse({"type": "finish"}).encode("utf-8")

    async def _after_stream(self) -> None:
        if self.on_complete is not None:
            await self.on_complete()

    def response(self) -> StreamingResponse:
        headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            **self.headers,
        }
        return StreamingResponse(
            self.body(),
            media_type=EVENT_STREAM if self.event_stream else PLAIN_TEXT,
            headers=headers,
            background=BackgroundTask(self._after_stream),
        )
