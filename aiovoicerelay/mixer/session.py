"""Per-speaker decode pipeline attached to the mixer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from typing import TYPE_CHECKING

from aiovoicerelay.models import SessionEvent, SessionState, next_session_state

if TYPE_CHECKING:
    from .decoder import PacketDecoder
    from .mixer import MixerInput

logger = logging.getLogger(__name__)


class SpeakerSession:
    """
    Owns one speaker's decoder and mixer input for a speaking turn.

    The session pumps compressed packets from the speaker stream through the
    decoder into its mixer input. The first end, close or error signal tears
    everything down; later signals are ignored.
    """

    speaker_id: str
    """Stable identifier of the speaker."""
    _state: SessionState = SessionState.ACTIVE
    _torn_down: bool = False
    """Cleanup guard, set once teardown has started."""
    _task: asyncio.Task[None] | None = None
    """Task reading the speaker stream."""

    def __init__(
        self,
        speaker_id: str,
        source: AsyncIterator[bytes],
        *,
        decoder: PacketDecoder,
        mixer_input: MixerInput,
        on_teardown: Callable[[SpeakerSession], None],
    ) -> None:
        """
        Create a session; call start() to begin reading.

        Args:
            speaker_id: Stable identifier of the speaker.
            source: Async iterator of compressed packets from the voice provider.
            decoder: Decoder fixed to the call format.
            mixer_input: Dedicated mixer input receiving the decoded PCM.
            on_teardown: Called once during teardown so the owner can forget the session.
        """
        self.speaker_id = speaker_id
        self._source = source
        self._decoder = decoder
        self._mixer_input = mixer_input
        self._on_teardown = on_teardown
        self._logger = logger.getChild(speaker_id)

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def mixer_input(self) -> MixerInput:
        """Mixer input fed by this session."""
        return self._mixer_input

    @property
    def closed(self) -> bool:
        """Return True once teardown has run."""
        return self._torn_down

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start pumping the speaker stream into the mixer."""
        if self._task is not None or self._torn_down:
            return
        self._task = loop.create_task(self._pump(), name=f"speaker-{self.speaker_id}")

    async def _pump(self) -> None:
        try:
            async for packet in self._source:
                # A bad packet is skipped; only the stream itself ends the session
                try:
                    decoded = self._decoder.decode(packet)
                except Exception as err:
                    self._logger.warning("Dropping undecodable packet: %s", err)
                    continue
                for pcm in decoded:
                    self._mixer_input.write(pcm)
        except asyncio.CancelledError:
            self.handle_event(SessionEvent.CLOSE)
            raise
        except Exception as err:
            self._logger.warning("Speaker stream error: %s", err)
            self.handle_event(SessionEvent.ERROR)
        else:
            self.handle_event(SessionEvent.END)

    def handle_event(self, event: SessionEvent) -> bool:
        """
        Apply a stream signal to the session.

        Returns:
            True if this signal tore the session down, False if it was a no-op.
        """
        if self._torn_down:
            self._logger.debug("Ignoring %s signal, session already closed", event.value)
            return False
        self._state = next_session_state(self._state, event)
        if self._state is not SessionState.CLOSED:
            return False
        self._torn_down = True
        self._logger.debug("Speaker stream %s, tearing down session", event.value)
        self._teardown()
        return True

    def _teardown(self) -> None:
        steps: tuple[tuple[str, Callable[[], None]], ...] = (
            ("mixer input", self._mixer_input.close),
            ("decoder", self._decoder.close),
            ("session", lambda: self._on_teardown(self)),
        )
        for name, release in steps:
            try:
                release()
            except Exception:
                self._logger.exception("Failed to release %s", name)

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the pump task to finish."""
        if self._task is None:
            return
        with suppress(asyncio.CancelledError):
            await self._task
