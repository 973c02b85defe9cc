"""
Speech capture sources

A SpeechCaptureSource turns microphone audio into a stream of transcript
updates. `start()` returns an async iterator that runs until `stop()` or an
unrecoverable recognizer error; the source never restarts itself.

WhisperCaptureSource:
- Reads 16-bit PCM from PyAudio on a background thread
- Transcribes the rolling window through the OpenAI transcription API
- Skips windows without voice activity (RMS gate)
- Emits a `final` update and opens a fresh window at the maximum window length
"""

import asyncio
import io
import logging
import threading
import wave
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional

import numpy as np
import openai
from openai import OpenAI

from .config_manager import CaptureConfig
from .conversation_types import CaptureMode, TranscriptUpdate
from .error_handling import CaptureUnavailable

logger = logging.getLogger(__name__)


class SpeechCaptureSource(ABC):
    """Restartable source of transcript updates"""

    @abstractmethod
    async def start(self, mode: CaptureMode) -> AsyncIterator[TranscriptUpdate]:
        """Begin capturing; raises CaptureUnavailable when capture cannot start"""

    @abstractmethod
    def stop(self) -> None:
        """Stop the active capture; the iterator returned by start() ends"""


class MicrophoneSession:
    """One PyAudio input stream feeding a shared PCM buffer from a reader thread"""

    def __init__(self, config: CaptureConfig):
        self.config = config
        self.error: Optional[Exception] = None

        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pyaudio = None
        self._stream = None

    def open(self) -> None:
        """Open the input device and start reading; raises OSError on failure"""
        import pyaudio

        self._pyaudio = pyaudio.PyAudio()
        try:
            self._stream = self._pyaudio.open(
                format=pyaudio.paInt16,
                channels=self.config.channels,
                rate=self.config.sample_rate,
                input=True,
                input_device_index=self.config.input_device_index,
                frames_per_buffer=self.config.chunk_size
            )
        except OSError:
            self._pyaudio.terminate()
            self._pyaudio = None
            raise

        self._thread = threading.Thread(target=self._read_loop, name="microphone-reader", daemon=True)
        self._thread.start()

    def _read_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                data = self._stream.read(self.config.chunk_size, exception_on_overflow=False)
                with self._lock:
                    self._buffer.extend(data)
        except OSError as e:
            logger.error(f"Microphone read failed: {e}")
            self.error = e
        finally:
            try:
                self._stream.stop_stream()
                self._stream.close()
            finally:
                self._pyaudio.terminate()

    def snapshot(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    def reset(self) -> None:
        with self._lock:
            self._buffer.clear()

    def close(self) -> None:
        self._stop_event.set()

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()


class WhisperCaptureSource(SpeechCaptureSource):
    """Microphone capture transcribed by OpenAI Whisper"""

    def __init__(
        self,
        config: CaptureConfig,
        api_key: Optional[str] = None,
        org_id: Optional[str] = None,
        client: Optional[OpenAI] = None,
        microphone_factory: Callable[[CaptureConfig], MicrophoneSession] = MicrophoneSession
    ):
        self.config = config
        if client is None and api_key:
            client_kwargs = {"api_key": api_key}
            if org_id:
                client_kwargs["organization"] = org_id
            client = OpenAI(**client_kwargs)
        self.client = client
        self._microphone_factory = microphone_factory
        self._session: Optional[MicrophoneSession] = None

    async def start(self, mode: CaptureMode) -> AsyncIterator[TranscriptUpdate]:
        self.stop()

        if self.client is None:
            raise CaptureUnavailable("Speech recognizer is not configured (missing OpenAI API key)")

        session = self._microphone_factory(self.config)
        try:
            await asyncio.to_thread(session.open)
        except OSError as e:
            raise CaptureUnavailable(f"Microphone could not be opened: {e}", e)

        self._session = session
        logger.info(f"🎤 Capture started ({mode.value})")
        return self._updates(session)

    def stop(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
            logger.debug("Capture stopped")

    def has_voice(self, pcm: bytes) -> bool:
        """RMS voice activity gate over 16-bit samples"""
        if not pcm:
            return False
        audio_array = np.frombuffer(pcm, dtype=np.int16)
        rms = np.sqrt(np.mean(audio_array.astype(np.float32) ** 2))
        normalized_rms = rms / 32768.0
        return normalized_rms > self.config.silence_threshold

    def _window_seconds(self, pcm: bytes) -> float:
        return len(pcm) / (2 * self.config.channels * self.config.sample_rate)

    def _to_wav(self, pcm: bytes) -> bytes:
        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, 'wb') as wav_file:
            wav_file.setnchannels(self.config.channels)
            wav_file.setsampwidth(2)  # 16-bit audio
            wav_file.setframerate(self.config.sample_rate)
            wav_file.writeframes(pcm)
        return wav_buffer.getvalue()

    async def transcribe(self, pcm: bytes) -> str:
        """Transcribe one PCM window; recognizer failures end the capture"""
        audio_file = io.BytesIO(self._to_wav(pcm))
        audio_file.name = "audio.wav"

        try:
            response = await asyncio.to_thread(
                self.client.audio.transcriptions.create,
                model=self.config.model,
                file=audio_file,
                language=self.config.language
            )
        except openai.OpenAIError as e:
            raise CaptureUnavailable(f"Speech recognizer error: {e}", e)

        return (getattr(response, 'text', '') or '').strip()

    async def _updates(self, session: MicrophoneSession) -> AsyncIterator[TranscriptUpdate]:
        last_text = ""
        try:
            while True:
                await asyncio.sleep(self.config.partial_interval)
                if session.closed:
                    return
                if session.error is not None:
                    raise CaptureUnavailable(f"Microphone read failed: {session.error}", session.error)

                pcm = session.snapshot()
                window_full = self._window_seconds(pcm) >= self.config.max_window_seconds

                if self.has_voice(pcm):
                    text = await self.transcribe(pcm)
                    if session.closed:
                        return
                    if text and text != last_text:
                        last_text = text
                        yield TranscriptUpdate.partial(text)
                else:
                    logger.debug("No voice activity detected")

                if window_full:
                    if last_text:
                        yield TranscriptUpdate.final(last_text)
                    session.reset()
                    last_text = ""
        finally:
            session.close()


__all__ = ['SpeechCaptureSource', 'MicrophoneSession', 'WhisperCaptureSource']
