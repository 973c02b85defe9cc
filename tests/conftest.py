#!/usr/bin/env python3
"""
Test Configuration for the conversation core
Provides fakes for the capture, synthesis and assistant boundaries plus a
harness that wires them into a ConversationTurnController
"""

import asyncio
import dataclasses
from typing import List, Optional

import pytest_asyncio

from jarvis_voice.actions import ActionDispatcher
from jarvis_voice.connectivity import ConnectivityMonitor
from jarvis_voice.conversation import ConversationTurnController
from jarvis_voice.conversation_types import (
    AssistantContext, AssistantReply, CaptureMode, ConversationSettings,
    ReplySource, TranscriptUpdate
)
from jarvis_voice.error_handling import CaptureUnavailable
from jarvis_voice.events import ConversationEvent
from jarvis_voice.offline_assistant import OfflineAssistant
from jarvis_voice.remote_assistant import RemoteAssistant
from jarvis_voice.speech_capture import SpeechCaptureSource
from jarvis_voice.synthesis import ResponseSynthesizer


class FakeCaptureSource(SpeechCaptureSource):
    """Capture source fed by the test through push()/end()"""

    _END = object()

    def __init__(self):
        self.modes: List[CaptureMode] = []
        self.stop_count = 0
        self.failures: List[str] = []
        self.always_fail: Optional[str] = None
        self._queue: Optional[asyncio.Queue] = None

    @property
    def active(self) -> bool:
        return self._queue is not None

    async def start(self, mode: CaptureMode):
        self.modes.append(mode)
        if self.always_fail:
            raise CaptureUnavailable(self.always_fail)
        if self.failures:
            raise CaptureUnavailable(self.failures.pop(0))
        queue = asyncio.Queue()
        self._queue = queue
        return self._stream(queue)

    async def _stream(self, queue: asyncio.Queue):
        while True:
            item = await queue.get()
            if item is self._END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def stop(self) -> None:
        self.stop_count += 1
        if self._queue is not None:
            self._queue.put_nowait(self._END)
            self._queue = None

    def push(self, text: str, final: bool = False) -> None:
        update = TranscriptUpdate.final(text) if final else TranscriptUpdate.partial(text)
        self._queue.put_nowait(update)

    def end(self, error: Optional[Exception] = None) -> None:
        queue = self._queue
        self._queue = None
        queue.put_nowait(error if error is not None else self._END)


class FakeSynthesizer(ResponseSynthesizer):
    """Records output requests; completes on the next loop iteration unless held"""

    def __init__(self, capture: Optional[FakeCaptureSource] = None, auto_complete: bool = True):
        super().__init__()
        self.capture = capture
        self.auto_complete = auto_complete
        self.spoken = []
        self.played = []
        self.stop_count = 0
        self.overlaps = 0
        self._on_complete = None

    async def render_speech(self, text: str, voice: str) -> None:
        raise NotImplementedError

    async def render_audio(self, data: bytes) -> None:
        raise NotImplementedError

    def speak(self, text, voice, on_complete) -> None:
        self.spoken.append((text, voice))
        self._begin_output(on_complete)

    def play_audio(self, data, on_complete) -> None:
        self.played.append(data)
        self._begin_output(on_complete)

    def _begin_output(self, on_complete) -> None:
        if self.capture is not None and self.capture.active:
            self.overlaps += 1
        self._on_complete = on_complete
        if self.auto_complete:
            asyncio.get_running_loop().call_soon(self.finish)

    def finish(self) -> None:
        on_complete = self._on_complete
        self._on_complete = None
        if on_complete is not None:
            on_complete()

    def stop(self) -> None:
        self.stop_count += 1
        self._on_complete = None

    @property
    def is_speaking(self) -> bool:
        return self._on_complete is not None

    @property
    def texts(self) -> List[str]:
        return [text for text, _ in self.spoken]


class FakeRemoteAssistant(RemoteAssistant):
    """Remote assistant returning a fixed reply or raising a fixed error"""

    def __init__(self, reply: Optional[AssistantReply] = None, error: Optional[Exception] = None):
        self.reply = reply or AssistantReply(text="Right away, sir.")
        self.error = error
        self.calls = []
        self.gate: Optional[asyncio.Event] = None
        self.on_call = None

    async def send(self, text: str, context: AssistantContext) -> AssistantReply:
        self.calls.append((text, context))
        if self.on_call is not None:
            self.on_call()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class FakeOfflineAssistant(OfflineAssistant):
    """Offline assistant recording every request"""

    def __init__(self, reply_text: str = "Offline answer, sir."):
        super().__init__()
        self.reply_text = reply_text
        self.calls = []

    async def respond(self, text: str) -> AssistantReply:
        self.calls.append(text)
        return AssistantReply(text=self.reply_text, source=ReplySource.OFFLINE)


class SettingsHolder:
    """Mutable source of ConversationSettings snapshots"""

    def __init__(self, **overrides):
        values = {"silence_timeout": 0.05}
        values.update(overrides)
        self.settings = ConversationSettings(**values)
        self.error: Optional[Exception] = None

    def __call__(self) -> ConversationSettings:
        if self.error is not None:
            raise self.error
        return self.settings

    def update(self, **changes) -> None:
        self.settings = dataclasses.replace(self.settings, **changes)


class ControllerHarness:
    """A controller wired to fakes, with helpers to let the event loop settle"""

    def __init__(self, retry_delay: float = 0.02, greeting_cache=None, **settings):
        self.capture = FakeCaptureSource()
        self.synth = FakeSynthesizer(capture=self.capture)
        self.remote = FakeRemoteAssistant()
        self.offline = FakeOfflineAssistant()
        self.connectivity = ConnectivityMonitor()
        self.settings = SettingsHolder(**settings)
        self.dispatcher = ActionDispatcher()
        self.events: List[ConversationEvent] = []

        self.controller = ConversationTurnController(
            capture=self.capture,
            synthesizer=self.synth,
            remote=self.remote,
            offline=self.offline,
            connectivity=self.connectivity,
            settings_provider=self.settings,
            action_dispatcher=self.dispatcher,
            greeting_cache=greeting_cache,
            context_provider=lambda: AssistantContext(timezone="Europe/London"),
            capture_retry_delay=retry_delay
        )
        self.controller.subscribe(self.events.append)

    async def settle(self, rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
            await self.controller.join()

    async def wait(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        await self.settle()

    def events_of(self, event_type) -> List[ConversationEvent]:
        return [event for event in self.events if event.type == event_type]

    async def wake(self) -> None:
        """Start, say the wake word and let the greeting finish"""
        await self.controller.start()
        self.capture.push("Hey Jarvis")
        await self.settle()

    async def say(self, text: str) -> None:
        """Speak one utterance and wait for the silence timeout to dispatch it"""
        self.capture.push(text)
        await self.settle()
        await self.wait(self.settings().silence_timeout + 0.05)


@pytest_asyncio.fixture
async def harness():
    harness = ControllerHarness()
    yield harness
    await harness.controller.close()


@pytest_asyncio.fixture
async def harness_factory():
    created = []

    def factory(**kwargs) -> ControllerHarness:
        harness = ControllerHarness(**kwargs)
        created.append(harness)
        return harness

    yield factory

    for harness in created:
        await harness.controller.close()
