"""
Per-connection state of the relay.

One ConnectionState exists per client WebSocket. It is only ever touched by
that connection's own message handlers, remote-session callbacks and silence
timer, all of which run on the same event loop.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from gemini_relay.config.client import ClientConfiguration
from gemini_relay.providers.base import RealtimeSession


@dataclass
class UsageStats:
    """Token usage reported by the remote session over the connection's lifetime."""
    session_tokens: int = 0
    turns: int = 0

    def add(self, total_tokens: int) -> int:
        self.session_tokens += total_tokens
        self.turns += 1
        return self.session_tokens


@dataclass
class ConnectionState:
    conn_id: str
    config: ClientConfiguration = field(default_factory=ClientConfiguration)
    session: Optional[RealtimeSession] = None
    recording: bool = False
    silence_task: Optional[asyncio.Task] = None
    usage: UsageStats = field(default_factory=UsageStats)
    started_at: float = field(default_factory=time.monotonic)

    def duration_seconds(self) -> int:
        return round(time.monotonic() - self.started_at)

    def cancel_silence_timer(self) -> None:
        task = self.silence_task
        self.silence_task = None
        if task and not task.done():
            task.cancel()
