"""Unix socket control channel for splitting the metric logs from outside.

Protocol: newline-delimited text requests, one JSON reply line each.
- empty line or "split": rotate to a new segment now
- any other text: rename the current segment to that name, then rotate
Reply: {"ok": bool, "segment": <index of the segment now open>}
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from perfwatch.sampler import Sampler

log = structlog.get_logger()

MAX_LINE = 4096


def parse_request(line: str) -> tuple[str, str | None]:
    """Map one request line to a (action, name) pair for Sampler.submit."""
    text = line.strip()
    if not text or text == "split":
        return "split", None
    return "rename", text


class ControlServer:
    """Accepts split requests and forwards them to the sampler's queue.

    Commands are applied between ticks, so a reply arrives after at most
    one sample interval.
    """

    def __init__(self, socket_path: Path, sampler: Sampler) -> None:
        self.socket_path = socket_path
        self.sampler = sampler
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def has_clients(self) -> bool:
        return len(self._clients) > 0

    async def start(self) -> None:
        """Start listening, replacing any stale socket file."""
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
            limit=MAX_LINE,
        )
        # Owner only
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)
        log.info("control_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Close clients, stop listening and remove the socket file."""
        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()
        log.info("control_server_stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._clients.add(writer)
        log.debug("control_client_connected", count=len(self._clients))
        try:
            while True:
                try:
                    data = await reader.readline()
                except (ConnectionError, ValueError) as e:
                    # ValueError: line longer than MAX_LINE
                    log.warning("control_read_failed", error=str(e))
                    break
                if not data:
                    break
                action, name = parse_request(data.decode("utf-8", errors="replace"))
                log.info("control_request", action=action, name=name)
                if self.sampler.stopping:
                    reply = {"ok": False, "segment": self.sampler.state.segments.index}
                else:
                    result = await self.sampler.submit(action, name)
                    reply = {"ok": result.ok, "segment": result.segment}
                writer.write(json.dumps(reply).encode() + b"\n")
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.debug("control_client_disconnected", count=len(self._clients))


async def send_request(socket_path: Path, text: str = "", timeout: float = 10.0) -> dict:
    """Send one request to a running monitor and return its reply."""
    reader, writer = await asyncio.wait_for(
        asyncio.open_unix_connection(str(socket_path)), timeout=timeout
    )
    try:
        writer.write(text.encode() + b"\n")
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    finally:
        writer.close()
        await writer.wait_closed()
    if not line:
        raise ConnectionError("monitor closed the connection without replying")
    return json.loads(line)
