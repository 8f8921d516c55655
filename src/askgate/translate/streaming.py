"""Canonical provider events -> vendor streaming events.

``StreamTranslator`` is the per-request session state machine::

    IDLE -> MESSAGE_STARTED -> (BLOCK_OPEN -> BLOCK_CLOSED)* -> MESSAGE_DELTA -> MESSAGE_STOPPED
                     any non-terminal state -> ERROR_ABORTED

It never writes anything itself; each call returns the vendor events to send,
in order. The framing guarantees are: ``message_start`` comes first and exactly
once, every ``content_block_start`` gets exactly one ``content_block_stop``,
block indices start at 0 and only grow, and ``message_stop`` or ``error`` is
the last event.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from askgate.core.errors import ProtocolViolation
from askgate.domain.events import BlockDelta, BlockEnd, BlockKind, BlockStart, Finish, ProviderEvent
from askgate.translate.response import vendor_stop_reason


class SessionState(str, Enum):
    IDLE = "idle"
    MESSAGE_STARTED = "message_started"
    BLOCK_OPEN = "block_open"
    BLOCK_CLOSED = "block_closed"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOPPED = "message_stopped"
    ERROR_ABORTED = "error_aborted"


TERMINAL_STATES = frozenset({SessionState.MESSAGE_STOPPED, SessionState.ERROR_ABORTED})


@dataclass(frozen=True)
class VendorEvent:
    type: str
    data: dict[str, Any]

    def encode(self) -> bytes:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.type}\ndata: {payload}\n\n".encode("utf-8")


def _content_block(start: BlockStart) -> dict[str, Any]:
    if start.kind is BlockKind.TEXT:
        return {"type": "text", "text": ""}
    if start.kind is BlockKind.THINKING:
        return {"type": "thinking", "thinking": ""}
    return {"type": "tool_use", "id": start.tool_call_id, "name": start.tool_name, "input": {}}


def _delta(kind: BlockKind, payload: str) -> dict[str, Any]:
    if kind is BlockKind.TEXT:
        return {"type": "text_delta", "text": payload}
    if kind is BlockKind.THINKING:
        return {"type": "thinking_delta", "thinking": payload}
    return {"type": "input_json_delta", "partial_json": payload}


class StreamTranslator:
    def __init__(self, *, message_id: str, model: str, input_tokens: int = 0) -> None:
        self.message_id = message_id
        self.model = model
        self._input_tokens = input_tokens
        self._state = SessionState.IDLE
        self._next_index = 0
        self._open: tuple[int, BlockKind] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def feed(self, event: ProviderEvent) -> list[VendorEvent]:
        if self.terminal:
            raise ProtocolViolation(f"provider event {type(event).__name__} after the stream ended")
        self._check(event)

        out = self._ensure_started()
        if isinstance(event, BlockStart):
            index = self._next_index
            self._next_index += 1
            self._open = (index, event.kind)
            self._state = SessionState.BLOCK_OPEN
            out.append(
                VendorEvent(
                    "content_block_start",
                    {"type": "content_block_start", "index": index, "content_block": _content_block(event)},
                )
            )
        elif isinstance(event, BlockDelta):
            index, kind = self._open  # type: ignore[misc]
            out.append(
                VendorEvent(
                    "content_block_delta",
                    {"type": "content_block_delta", "index": index, "delta": _delta(kind, event.payload)},
                )
            )
        elif isinstance(event, BlockEnd):
            out.append(self._close_block())
        else:
            out.extend(self._finish(event))
        return out

    def keepalive(self) -> list[VendorEvent]:
        if self.terminal:
            raise ProtocolViolation("keep-alive after the stream ended")
        out = self._ensure_started()
        out.append(VendorEvent("ping", {"type": "ping"}))
        return out

    def abort(self, error_type: str, message: str) -> list[VendorEvent]:
        """Terminate the stream with an error event, closing any open block first.

        Calling it on a terminated session returns nothing.
        """
        if self.terminal:
            return []
        out = self._ensure_started()
        if self._open is not None:
            out.append(self._close_block())
        out.append(VendorEvent("error", {"type": "error", "error": {"type": error_type, "message": message}}))
        self._state = SessionState.ERROR_ABORTED
        return out

    def _check(self, event: ProviderEvent) -> None:
        if isinstance(event, BlockStart):
            if self._open is not None:
                raise ProtocolViolation(
                    f"block {self._open[0]} is still open when a new {event.kind.value} block starts"
                )
            if event.kind is BlockKind.TOOL_CALL and not (event.tool_call_id and event.tool_name):
                raise ProtocolViolation("tool call block started without an id and name")
        elif isinstance(event, (BlockDelta, BlockEnd)):
            if self._open is None:
                raise ProtocolViolation(f"{type(event).__name__} received with no open block")
        elif isinstance(event, Finish):
            if self._open is not None:
                raise ProtocolViolation(f"finish received while block {self._open[0]} is open")
        else:
            raise ProtocolViolation(f"unknown provider event {event!r}")

    def _ensure_started(self) -> list[VendorEvent]:
        if self._state is not SessionState.IDLE:
            return []
        self._state = SessionState.MESSAGE_STARTED
        return [
            VendorEvent(
                "message_start",
                {
                    "type": "message_start",
                    "message": {
                        "id": self.message_id,
                        "type": "message",
                        "role": "assistant",
                        "model": self.model,
                        "content": [],
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": self._input_tokens, "output_tokens": 0},
                    },
                },
            )
        ]

    def _close_block(self) -> VendorEvent:
        index, _ = self._open  # type: ignore[misc]
        self._open = None
        self._state = SessionState.BLOCK_CLOSED
        return VendorEvent("content_block_stop", {"type": "content_block_stop", "index": index})

    def _finish(self, event: Finish) -> list[VendorEvent]:
        input_tokens = event.usage.input_tokens or self._input_tokens
        self._state = SessionState.MESSAGE_DELTA
        delta = VendorEvent(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {"stop_reason": vendor_stop_reason(event.stop_reason), "stop_sequence": event.stop_sequence},
                "usage": {"input_tokens": input_tokens, "output_tokens": event.usage.output_tokens},
            },
        )
        self._state = SessionState.MESSAGE_STOPPED
        return [delta, VendorEvent("message_stop", {"type": "message_stop"})]
