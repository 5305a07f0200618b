from __future__ import annotations

import asyncio
import socket
import sys
from collections.abc import AsyncIterator, Callable

from aiovoicerelay.models import TranscoderConfig

# Stand-in encoder copying stdin to stdout unchanged
ECHO_ENCODER = """
import sys
while True:
    data = sys.stdin.buffer.read1(65536)
    if not data:
        break
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
"""


def echo_command(config: TranscoderConfig) -> list[str]:
    _ = config
    return [sys.executable, "-u", "-c", ECHO_ENCODER]


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def packets_from(queue: asyncio.Queue[bytes | None]) -> AsyncIterator[bytes]:
    while (packet := await queue.get()) is not None:
        yield packet


class PassthroughDecoder:
    """Decoder treating every packet as already decoded PCM."""

    instances: list[PassthroughDecoder] = []

    def __init__(self, *, channels: int, sample_rate: int, frame_size: int) -> None:
        self.channels = channels
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.close_calls = 0
        PassthroughDecoder.instances.append(self)

    def decode(self, data: bytes) -> list[bytes]:
        return [data]

    def close(self) -> None:
        self.close_calls += 1
