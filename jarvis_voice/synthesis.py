"""
Response synthesis and playback

ResponseSynthesizer owns the speaker. Every `speak()` / `play_audio()` call
stops the previous output first, and its `on_complete` callback fires exactly
once when playback ends or fails. `stop()` cancels the current output without
firing its callback.

OpenAISpeechSynthesizer renders text with the OpenAI TTS API, decodes audio
with pydub and plays it through sounddevice.
"""

import asyncio
import functools
import io
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import numpy as np
import openai
from openai import OpenAI
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from .config_manager import SynthesisConfig
from .error_handling import SynthesisError

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[], None]


class ResponseSynthesizer(ABC):
    """Single-output speech synthesizer with exactly-once completion"""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._output_id = 0

    @abstractmethod
    async def render_speech(self, text: str, voice: str) -> None:
        """Synthesize and play text, returning when playback ends"""

    @abstractmethod
    async def render_audio(self, data: bytes) -> None:
        """Decode and play encoded audio, returning when playback ends"""

    def speak(self, text: str, voice: str, on_complete: CompletionCallback) -> None:
        self._begin(functools.partial(self.render_speech, text, voice), on_complete)

    def play_audio(self, data: bytes, on_complete: CompletionCallback) -> None:
        self._begin(functools.partial(self.render_audio, data), on_complete)

    def stop(self) -> None:
        """Cancel in-flight output; its completion callback is suppressed"""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def is_speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    def _begin(self, output: Callable[[], Awaitable[None]], on_complete: CompletionCallback) -> None:
        self.stop()
        self._output_id += 1
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._output_id, output, on_complete)
        )

    async def _run(self, output_id: int, output: Callable[[], Awaitable[None]], on_complete: CompletionCallback) -> None:
        try:
            await output()
        except SynthesisError as e:
            logger.error(f"🔇 Speech output failed: {e}")
        except Exception as e:
            logger.error(f"🔇 Unexpected speech output error: {e}", exc_info=True)

        if output_id == self._output_id:
            self._task = None
        on_complete()


class OpenAISpeechSynthesizer(ResponseSynthesizer):
    """OpenAI TTS with pydub decoding and sounddevice playback"""

    def __init__(
        self,
        config: SynthesisConfig,
        api_key: Optional[str] = None,
        org_id: Optional[str] = None,
        client: Optional[OpenAI] = None
    ):
        super().__init__()
        self.config = config
        if client is None and api_key:
            client_kwargs = {"api_key": api_key}
            if org_id:
                client_kwargs["organization"] = org_id
            client = OpenAI(**client_kwargs)
        self.client = client

    async def synthesize(self, text: str, voice: str) -> bytes:
        """Render text to encoded audio bytes"""
        if self.client is None:
            raise SynthesisError("Speech synthesis is not configured (missing OpenAI API key)")

        try:
            response = await asyncio.to_thread(
                self.client.audio.speech.create,
                model=self.config.model,
                voice=voice,
                input=text,
                speed=self.config.speed,
                response_format=self.config.response_format,
                timeout=self.config.timeout
            )
        except openai.OpenAIError as e:
            raise SynthesisError(f"TTS request failed: {e}", e)

        return response.content

    def decode(self, data: bytes) -> AudioSegment:
        """Decode MP3/WAV bytes; a `data:` URL prefix must already be stripped"""
        audio_format = "wav" if data[:4] == b"RIFF" else None
        try:
            return AudioSegment.from_file(io.BytesIO(data), format=audio_format)
        except (CouldntDecodeError, OSError, IndexError) as e:
            raise SynthesisError(f"Could not decode audio: {e}", e)

    async def render_speech(self, text: str, voice: str) -> None:
        logger.info(f"🔊 Speaking: {text[:60]}{'...' if len(text) > 60 else ''}")
        data = await self.synthesize(text, voice)
        await self.render_audio(data)

    async def render_audio(self, data: bytes) -> None:
        segment = self.decode(data)
        await self._play_segment(segment)

    async def _play_segment(self, segment: AudioSegment) -> None:
        try:
            import sounddevice as sd
        except OSError as e:
            raise SynthesisError(f"Audio output unavailable: {e}", e)

        samples = np.array(segment.get_array_of_samples(), dtype=np.float32)
        samples /= float(1 << (8 * segment.sample_width - 1))
        samples *= self.config.volume
        if segment.channels > 1:
            samples = samples.reshape((-1, segment.channels))

        try:
            sd.play(samples, segment.frame_rate)
            await asyncio.sleep(len(segment) / 1000.0)
        except sd.PortAudioError as e:
            raise SynthesisError(f"Playback failed: {e}", e)
        finally:
            sd.stop()


__all__ = ['ResponseSynthesizer', 'OpenAISpeechSynthesizer', 'CompletionCallback']
