from __future__ import annotations

import asyncio

import numpy as np
import pytest

from aiovoicerelay.mixer import KeepaliveGenerator, Mixer, MixerInput
from aiovoicerelay.models import MixerConfig

from helpers import PassthroughDecoder, packets_from, wait_for

FRAME = 3840
ONE_SECOND = 192_000


def _pcm(value: int, size: int) -> bytes:
    return np.full(size // 2, value, dtype="<i2").tobytes()


def test_keepalive_frames_are_one_frame_of_low_noise() -> None:
    generator = KeepaliveGenerator(FRAME, amplitude=1, seed=7)
    for _ in range(10):
        frame = generator.next_frame()
        assert len(frame) == FRAME
        samples = np.frombuffer(frame, dtype="<i2")
        assert samples.min() >= -1
        assert samples.max() <= 1

    silent = KeepaliveGenerator(FRAME, amplitude=0)
    assert silent.next_frame() == bytes(FRAME)


def test_mixer_input_drops_oldest_frames_on_overflow() -> None:
    mixer_input = MixerInput("a", frame_bytes=4, max_buffer_bytes=8)
    mixer_input.write(b"\x01\x00\x01\x00\x02\x00\x02\x00\x03\x00\x03\x00")

    assert mixer_input.buffered_bytes == 8
    assert mixer_input.dropped_bytes == 4
    assert mixer_input.read_frame() == b"\x02\x00\x02\x00"


def test_mixer_input_flushes_padded_remainder_once_closed() -> None:
    mixer_input = MixerInput("a", frame_bytes=8, max_buffer_bytes=16)
    mixer_input.write(b"\x05\x00\x05\x00")

    assert mixer_input.read_frame() is None
    mixer_input.close()
    mixer_input.write(b"\x07\x00\x07\x00")
    assert mixer_input.read_frame() == b"\x05\x00\x05\x00\x00\x00\x00\x00"
    assert mixer_input.read_frame() is None


def test_mix_frame_without_speakers_emits_keepalive() -> None:
    frames: list[bytes] = []
    mixer = Mixer(frames.append, config=MixerConfig(keepalive_amplitude=1))

    for _ in range(5):
        mixer.mix_frame()

    assert mixer.frames_emitted == 5
    assert all(len(frame) == FRAME for frame in frames)
    samples = np.frombuffer(b"".join(frames), dtype="<i2")
    assert np.abs(samples).max() <= 1


def test_mix_frame_clips_instead_of_wrapping() -> None:
    mixer = Mixer(lambda _: None, config=MixerConfig(keepalive_amplitude=0))
    loud = [MixerInput(name, frame_bytes=FRAME, max_buffer_bytes=FRAME) for name in "ab"]
    for mixer_input in loud:
        mixer_input.write(_pcm(30000, FRAME))
    mixer._inputs.extend(loud)

    samples = np.frombuffer(mixer.mix_frame(), dtype="<i2")
    assert (samples == 32767).all()


@pytest.mark.asyncio
async def test_clock_emits_frames_at_frame_cadence() -> None:
    frames: list[bytes] = []
    mixer = Mixer(frames.append)
    mixer.start()
    await asyncio.sleep(0.5)
    await mixer.shutdown()

    # 25 frames expected; allow for scheduler jitter
    assert 15 <= len(frames) <= 30
    assert all(len(frame) == FRAME for frame in frames)
    assert not mixer.running
    emitted = mixer.frames_emitted
    await asyncio.sleep(0.1)
    assert mixer.frames_emitted == emitted


@pytest.mark.asyncio
async def test_each_speaker_gets_one_decoder_and_input() -> None:
    PassthroughDecoder.instances.clear()
    mixer = Mixer(lambda _: None, decoder_factory=PassthroughDecoder)
    queues: dict[str, asyncio.Queue[bytes | None]] = {
        f"speaker-{index}": asyncio.Queue() for index in range(5)
    }

    for speaker_id, queue in queues.items():
        assert mixer.attach_speaker(packets_from(queue), speaker_id) is not None
    # Re-attaching a live speaker is a no-op
    assert mixer.attach_speaker(packets_from(asyncio.Queue()), "speaker-0") is None

    assert len(PassthroughDecoder.instances) == 5
    assert len(mixer.active_inputs) == 5
    assert set(mixer.sessions) == set(queues)
    assert PassthroughDecoder.instances[0].frame_size == 960

    sessions = mixer.sessions
    queues["speaker-0"].put_nowait(None)
    assert mixer.detach_speaker("speaker-1")
    assert not mixer.detach_speaker("speaker-1")
    assert not mixer.detach_speaker("unknown")
    await sessions["speaker-0"].wait_closed()
    await sessions["speaker-1"].wait_closed()

    assert set(mixer.sessions) == {"speaker-2", "speaker-3", "speaker-4"}
    assert len(mixer.active_inputs) == 3

    # A speaker that left may come back with a fresh session
    assert mixer.attach_speaker(packets_from(asyncio.Queue()), "speaker-0") is not None

    await mixer.shutdown()
    assert mixer.sessions == {}
    assert mixer.active_inputs == []
    assert all(decoder.close_calls == 1 for decoder in PassthroughDecoder.instances)
    assert mixer.attach_speaker(packets_from(asyncio.Queue()), "late") is None


@pytest.mark.asyncio
async def test_two_speakers_one_second_yields_one_second_of_output() -> None:
    frames: list[bytes] = []
    mixer = Mixer(
        frames.append,
        config=MixerConfig(keepalive_amplitude=0),
        decoder_factory=PassthroughDecoder,
    )
    speakers = {"alice": 1000, "bob": 2000}
    for speaker_id, value in speakers.items():
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        for _ in range(50):
            queue.put_nowait(_pcm(value, FRAME))
        mixer.attach_speaker(packets_from(queue), speaker_id)

    await wait_for(
        lambda: all(
            mixer_input.buffered_bytes == ONE_SECOND for mixer_input in mixer.active_inputs
        )
    )
    for _ in range(50):
        mixer.mix_frame()

    output = b"".join(frames)
    assert len(output) == ONE_SECOND
    assert (np.frombuffer(output, dtype="<i2") == 3000).all()

    # Nothing left to mix: the next frame is silence
    assert mixer.mix_frame() == bytes(FRAME)
    await mixer.shutdown()


@pytest.mark.asyncio
async def test_closed_speaker_input_drains_before_removal() -> None:
    frames: list[bytes] = []
    mixer = Mixer(
        frames.append,
        config=MixerConfig(keepalive_amplitude=0),
        decoder_factory=PassthroughDecoder,
    )
    queue: asyncio.Queue[bytes | None] = asyncio.Queue()
    queue.put_nowait(_pcm(500, 2 * FRAME))
    queue.put_nowait(None)
    session = mixer.attach_speaker(packets_from(queue), "carol")
    assert session is not None
    await session.wait_closed()

    assert mixer.sessions == {}
    mixer.mix_frame()
    mixer.mix_frame()
    assert frames == [_pcm(500, FRAME), _pcm(500, FRAME)]
    assert mixer._inputs == []
    await mixer.shutdown()


@pytest.mark.asyncio
async def test_pcm_callback_errors_do_not_stop_the_mixer() -> None:
    def broken(_: bytes) -> None:
        raise RuntimeError("consumer failed")

    mixer = Mixer(broken)
    mixer.mix_frame()
    mixer.mix_frame()
    assert mixer.frames_emitted == 2


@pytest.mark.asyncio
async def test_shutdown_twice_is_safe() -> None:
    mixer = Mixer(lambda _: None)
    mixer.start()
    await asyncio.sleep(0.05)
    await mixer.shutdown()
    await mixer.shutdown()
    assert not mixer.running
