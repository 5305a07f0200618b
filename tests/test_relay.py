from __future__ import annotations

import asyncio
from pathlib import Path

import numpy as np
import pytest

from aiovoicerelay import (
    EncoderSpawnError,
    MixerConfig,
    OutputTarget,
    RelayConfig,
    TranscoderConfig,
    VoiceRelay,
)
from aiovoicerelay.sink import FileSink, NetworkSink

from helpers import PassthroughDecoder, echo_command, packets_from, wait_for

FRAME = 3840


def _file_config(path: Path) -> RelayConfig:
    return RelayConfig(
        transcoder=TranscoderConfig(
            output_target=OutputTarget(file_path=str(path)),
            restart_delay_ms=50,
        ),
        mixer=MixerConfig(keepalive_amplitude=0),
    )


def test_output_target_selects_sink(tmp_path: Path) -> None:
    relay = VoiceRelay(_file_config(tmp_path / "out.mp3"))
    assert isinstance(relay.sink, FileSink)

    config = RelayConfig(
        transcoder=TranscoderConfig(
            output_target=OutputTarget(network_url="icecast://127.0.0.1:8000/live")
        )
    )
    assert isinstance(VoiceRelay(config).sink, NetworkSink)


@pytest.mark.asyncio
async def test_relay_writes_mixed_speakers_to_file(tmp_path: Path) -> None:
    path = tmp_path / "out.mp3"
    queue: asyncio.Queue[bytes | None] = asyncio.Queue()
    speech = np.full(FRAME // 2, 1000, dtype="<i2").tobytes()

    async with VoiceRelay(
        _file_config(path),
        decoder_factory=PassthroughDecoder,
        command_factory=echo_command,
    ) as relay:
        assert relay.attach_speaker(packets_from(queue), "speaker-1") is not None
        for _ in range(5):
            queue.put_nowait(speech)
        await wait_for(lambda: speech in path.read_bytes())
        assert relay.detach_speaker("speaker-1")

    assert relay.closed
    data = path.read_bytes()
    assert len(data) % 4 == 0
    assert data.count(speech) >= 1
    assert relay.transcoder.process is None
    assert not relay.mixer.running


@pytest.mark.asyncio
async def test_encoder_spawn_failure_propagates_from_start(tmp_path: Path) -> None:
    relay = VoiceRelay(
        _file_config(tmp_path / "out.mp3"),
        command_factory=lambda config: ["/nonexistent/bin/encoder"],
    )
    with pytest.raises(EncoderSpawnError):
        await relay.start()
    assert relay.closed
    assert not relay.mixer.running


@pytest.mark.asyncio
async def test_wait_returns_after_close(tmp_path: Path) -> None:
    relay = VoiceRelay(_file_config(tmp_path / "out.mp3"), command_factory=echo_command)
    await relay.start()
    waiter = asyncio.create_task(relay.wait())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    await relay.close()
    await relay.close()
    async with asyncio.timeout(2):
        await waiter


@pytest.mark.asyncio
async def test_wait_raises_fatal_encoder_error(tmp_path: Path) -> None:
    commands = iter([echo_command, lambda config: ["/nonexistent/bin/encoder"]])
    relay = VoiceRelay(
        _file_config(tmp_path / "out.mp3"),
        command_factory=lambda config: next(commands)(config),
    )
    await relay.start()
    process = relay.transcoder.process
    assert process is not None
    process.kill()

    with pytest.raises(EncoderSpawnError):
        async with asyncio.timeout(5):
            await relay.wait()
    assert relay.fatal_error is not None
    # The mixer keeps ticking, but nothing piles up for the dead encoder
    await asyncio.sleep(0.1)
    assert relay.transcoder.buffer.size == 0
    await relay.close()
