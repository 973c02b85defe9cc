"""
Conversation Turn Controller - the wake → listen → dispatch → respond cycle

All state lives here and changes on a single asyncio task that drains an
event queue. Capture pumps, timers, assistant calls and playback completions
only post events; each event carries the generation token it was created
under (capture id, timer generation, turn id, playback id) and is dropped
when that token is no longer current.

States:
    IDLE → LISTENING_FOR_WAKE_WORD → SPEAKING (greeting) → LISTENING_FOR_UTTERANCE
    LISTENING_FOR_UTTERANCE → AWAITING_REPLY → SPEAKING → LISTENING_FOR_UTTERANCE
    AWAITING_REPLY → SPEAKING (apology) → LISTENING_FOR_WAKE_WORD
    any → IDLE on teardown()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from .actions import ActionDispatcher
from .connectivity import ConnectivityMonitor
from .conversation_types import (
    AssistantContext,
    AssistantReply,
    CaptureMode,
    ConversationSettings,
    ConversationState,
    PendingUtterance,
    ReplySource,
    Transcript,
    TranscriptUpdate,
)
from .error_handling import (
    OFFLINE_GENERATION_APOLOGY,
    CaptureUnavailable,
    RemoteError,
    RemoteErrorKind,
)
from .events import ConversationEventType, EventCallback, EventEmitter, Subscription
from .greeting import DEFAULT_GREETING, GreetingCache
from .offline_assistant import OfflineAssistant
from .remote_assistant import RemoteAssistant
from .speech_capture import SpeechCaptureSource
from .structured_logging import turn_logging_context
from .synthesis import ResponseSynthesizer

logger = logging.getLogger(__name__)


# Internal events -------------------------------------------------------------

@dataclass
class _ControlEvent:
    done: Optional[asyncio.Future] = field(default=None, repr=False)


@dataclass
class _Resume(_ControlEvent):
    pass


@dataclass
class _Teardown(_ControlEvent):
    pass


@dataclass
class _SubmitText(_ControlEvent):
    text: str = ""


@dataclass
class _TranscriptReceived:
    capture_id: int
    update: TranscriptUpdate


@dataclass
class _CaptureEnded:
    capture_id: int
    error: Optional[Exception] = None


@dataclass
class _SilenceElapsed:
    generation: int


@dataclass
class _ReplyReady:
    turn_id: int
    reply: AssistantReply


@dataclass
class _RemoteFailed:
    turn_id: int
    text: str
    error: RemoteError


@dataclass
class _PlaybackFinished:
    playback_id: int


@dataclass
class _RetryCapture:
    generation: int


@dataclass
class _ConnectivityChanged:
    is_offline: bool


def local_context() -> AssistantContext:
    """Context with the local time zone name and no location"""
    return AssistantContext(timezone=datetime.now().astimezone().tzname() or "UTC")


class ConversationTurnController:
    """Single owner of the voice conversation state machine"""

    def __init__(
        self,
        capture: SpeechCaptureSource,
        synthesizer: ResponseSynthesizer,
        remote: RemoteAssistant,
        offline: OfflineAssistant,
        connectivity: ConnectivityMonitor,
        settings_provider: Callable[[], ConversationSettings],
        action_dispatcher: Optional[ActionDispatcher] = None,
        greeting_cache: Optional[GreetingCache] = None,
        context_provider: Callable[[], AssistantContext] = local_context,
        capture_retry_delay: float = 1.0,
        greeting_text: str = DEFAULT_GREETING
    ):
        self.capture = capture
        self.synthesizer = synthesizer
        self.remote = remote
        self.offline = offline
        self.connectivity = connectivity
        self.action_dispatcher = action_dispatcher or ActionDispatcher()
        self.greeting_cache = greeting_cache
        self.capture_retry_delay = capture_retry_delay
        self.greeting_text = greeting_text
        self.events = EventEmitter()

        self._settings_provider = settings_provider
        self._context_provider = context_provider
        self._last_settings = ConversationSettings()

        self._state = ConversationState.IDLE
        self._transcript = Transcript()
        self._pending: Optional[PendingUtterance] = None
        self.last_reply: Optional[AssistantReply] = None

        # Event loop plumbing
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._connectivity_unsubscribe: Optional[Callable[[], None]] = None

        # Generation tokens
        self._capture_id = 0
        self._timer_generation = 0
        self._turn_id = 0
        self._playback_id = 0
        self._retry_generation = 0

        self._capture_task: Optional[asyncio.Task] = None
        self._capture_mode: Optional[CaptureMode] = None
        self._silence_handle: Optional[asyncio.TimerHandle] = None
        self._silence_deadline: Optional[float] = None
        self._silence_timeout = 5.0
        self._assistant_task: Optional[asyncio.Task] = None
        self._after_speaking = ConversationState.LISTENING_FOR_UTTERANCE
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._retry_used = False

        self._handlers = {
            _Resume: self._handle_resume,
            _Teardown: self._handle_teardown,
            _SubmitText: self._handle_submit_text,
            _TranscriptReceived: self._handle_transcript,
            _CaptureEnded: self._handle_capture_ended,
            _SilenceElapsed: self._handle_silence_elapsed,
            _ReplyReady: self._handle_reply_ready,
            _RemoteFailed: self._handle_remote_failed,
            _PlaybackFinished: self._handle_playback_finished,
            _RetryCapture: self._handle_retry_capture,
            _ConnectivityChanged: self._handle_connectivity_changed,
        }

    # Public API ---------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def pending_utterance(self) -> Optional[PendingUtterance]:
        return self._pending

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    @property
    def silence_deadline(self) -> Optional[float]:
        """Loop time at which the armed silence timer fires, or None"""
        return self._silence_deadline

    @property
    def has_silence_timer(self) -> bool:
        return self._silence_handle is not None

    @property
    def capture_active(self) -> bool:
        return self._capture_task is not None

    @property
    def turn_id(self) -> int:
        return self._turn_id

    def subscribe(
        self,
        callback: EventCallback,
        event_type: Optional[ConversationEventType] = None
    ) -> Subscription:
        return self.events.subscribe(callback, event_type)

    async def start(self) -> None:
        """Start the event loop and begin listening for the wake word"""
        if self._loop_task is None:
            self._loop = asyncio.get_running_loop()
            self._queue = asyncio.Queue()
            self._loop_task = self._loop.create_task(self._run())
            self._connectivity_unsubscribe = self.connectivity.subscribe(self._on_connectivity_changed)
            logger.info("🎙️ Conversation controller started")
        await self.resume()

    async def resume(self) -> None:
        """Leave IDLE and listen for the wake word again"""
        await self._request(_Resume())

    async def teardown(self) -> None:
        """Stop everything immediately and go to IDLE"""
        await self._request(_Teardown())

    async def submit_text(self, text: str) -> bool:
        """Dispatch a typed message as the next utterance; False when busy"""
        return await self._request(_SubmitText(text=text))

    async def join(self) -> None:
        """Wait until every queued event has been handled"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Tear down and stop the event loop"""
        if self._loop_task is None:
            return
        await self.teardown()
        if self._connectivity_unsubscribe is not None:
            self._connectivity_unsubscribe()
            self._connectivity_unsubscribe = None
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        self.action_dispatcher.cancel_all()
        logger.info("Conversation controller stopped")

    # Event loop ---------------------------------------------------------------

    async def _request(self, event: _ControlEvent):
        if self._loop_task is None:
            raise RuntimeError("Conversation controller is not started")
        event.done = self._loop.create_future()
        self._post(event)
        return await event.done

    def _post(self, event) -> None:
        self._queue.put_nowait(event)

    def _on_connectivity_changed(self, is_offline: bool) -> None:
        self._post(_ConnectivityChanged(is_offline))

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = await self._handlers[type(event)](event)
                if isinstance(event, _ControlEvent) and not event.done.done():
                    event.done.set_result(result)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)
                if isinstance(event, _ControlEvent) and not event.done.done():
                    event.done.set_exception(e)
            finally:
                self._queue.task_done()

    def _settings(self) -> ConversationSettings:
        try:
            self._last_settings = self._settings_provider()
        except Exception as e:
            logger.error(f"Settings unavailable, keeping the last snapshot: {e}")
        return self._last_settings

    def _set_state(self, state: ConversationState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.info(f"State: {previous.value} → {state.value}")
        self.events.emit(ConversationEventType.STATE_CHANGED, previous=previous, state=state)

    # Capture ------------------------------------------------------------------

    async def _start_capture(self, mode: CaptureMode) -> Optional[CaptureUnavailable]:
        self._stop_capture()
        try:
            stream = await self.capture.start(mode)
        except CaptureUnavailable as e:
            logger.warning(f"🎤 {e}")
            return e

        self._capture_id += 1
        self._capture_mode = mode
        self._capture_task = self._loop.create_task(self._pump_capture(self._capture_id, stream))
        return None

    async def _pump_capture(self, capture_id: int, stream: AsyncIterator[TranscriptUpdate]) -> None:
        error: Optional[Exception] = None
        try:
            async for update in stream:
                self._post(_TranscriptReceived(capture_id, update))
        except Exception as e:
            error = e
        self._post(_CaptureEnded(capture_id, error))

    def _stop_capture(self) -> None:
        if self._capture_task is None:
            return
        self._capture_task.cancel()
        self._capture_task = None
        self._capture_id += 1
        self._capture_mode = None
        self.capture.stop()

    def _capture_unavailable(self, error: CaptureUnavailable) -> None:
        self._set_state(ConversationState.IDLE)
        self.events.emit(ConversationEventType.CAPTURE_UNAVAILABLE, reason=error.reason)
        self._schedule_capture_retry()

    def _schedule_capture_retry(self) -> None:
        if self._retry_used:
            logger.info("Capture retry already used; staying idle")
            return
        self._retry_used = True
        self._cancel_capture_retry()
        generation = self._retry_generation
        self._retry_handle = self._loop.call_later(
            self.capture_retry_delay, self._post, _RetryCapture(generation)
        )
        logger.info(f"Capture retry scheduled in {self.capture_retry_delay}s")

    def _cancel_capture_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self._retry_generation += 1

    # Silence timer ------------------------------------------------------------

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        generation = self._timer_generation
        self._silence_deadline = self._pending.updated_at + self._silence_timeout
        self._silence_handle = self._loop.call_at(
            self._silence_deadline, self._post, _SilenceElapsed(generation)
        )

    def _cancel_silence_timer(self) -> None:
        if self._silence_handle is not None:
            self._silence_handle.cancel()
        self._silence_handle = None
        self._silence_deadline = None
        self._timer_generation += 1

    # Transitions --------------------------------------------------------------

    async def _enter_wake_listening(self) -> None:
        self._cancel_silence_timer()
        self._pending = None
        self._transcript.clear()

        settings = self._settings()
        if not settings.wake_word_enabled:
            self._stop_capture()
            self._set_state(ConversationState.IDLE)
            self.events.emit(ConversationEventType.CAPTURE_UNAVAILABLE, reason="Wake word listening is disabled")
            return

        error = await self._start_capture(CaptureMode.WAKE_WORD)
        if error is not None:
            self._capture_unavailable(error)
            return

        self._retry_used = False
        self._set_state(ConversationState.LISTENING_FOR_WAKE_WORD)

    async def _enter_utterance_listening(self) -> None:
        self._cancel_silence_timer()
        self._pending = None
        self._transcript.clear()
        self._silence_timeout = self._settings().silence_timeout

        error = await self._start_capture(CaptureMode.UTTERANCE)
        if error is not None:
            self._capture_unavailable(error)
            return

        self._retry_used = False
        self._set_state(ConversationState.LISTENING_FOR_UTTERANCE)

    def _speak(
        self,
        after: ConversationState,
        text: Optional[str] = None,
        audio: Optional[bytes] = None,
        voice: Optional[str] = None
    ) -> None:
        self._stop_capture()
        self._playback_id += 1
        playback_id = self._playback_id
        self._after_speaking = after
        self._set_state(ConversationState.SPEAKING)

        def on_complete() -> None:
            self._post(_PlaybackFinished(playback_id))

        if audio:
            self.synthesizer.play_audio(audio, on_complete)
        else:
            self.synthesizer.speak(text or "", voice or self._settings().voice, on_complete)

    def _dispatch(self, text: str) -> None:
        settings = self._settings()
        self._cancel_silence_timer()
        self._pending = None
        self._stop_capture()

        self._turn_id += 1
        turn_id = self._turn_id
        self._set_state(ConversationState.AWAITING_REPLY)
        self.events.emit(ConversationEventType.UTTERANCE_DISPATCHED, text=text, turn_id=turn_id)

        use_offline = self.connectivity.is_offline or settings.offline_mode
        self._assistant_task = self._loop.create_task(self._ask(turn_id, text, use_offline))

    async def _ask(self, turn_id: int, text: str, use_offline: bool) -> None:
        if use_offline:
            async with turn_logging_context(logger, "offline_reply", text):
                reply = await self._ask_offline(text)
            self._post(_ReplyReady(turn_id, reply))
            return

        try:
            async with turn_logging_context(logger, "remote_reply", text):
                reply = await self.remote.send(text, self._context_provider())
        except RemoteError as e:
            self._post(_RemoteFailed(turn_id, text, e))
            return
        except Exception as e:
            logger.error(f"Remote assistant raised unexpectedly: {e}", exc_info=True)
            self._post(_RemoteFailed(turn_id, text, RemoteError(RemoteErrorKind.SERVER_ERROR, str(e), e)))
            return

        self._post(_ReplyReady(turn_id, reply))

    async def _ask_offline(self, text: str) -> AssistantReply:
        try:
            return await self.offline.respond(text)
        except Exception as e:
            logger.error(f"Offline assistant failed: {e}", exc_info=True)
            return AssistantReply(text=OFFLINE_GENERATION_APOLOGY, source=ReplySource.OFFLINE)

    def _awaiting(self, turn_id: int) -> bool:
        return turn_id == self._turn_id and self._state == ConversationState.AWAITING_REPLY

    # Handlers -----------------------------------------------------------------

    async def _handle_resume(self, event: _Resume) -> None:
        if self._state != ConversationState.IDLE:
            logger.debug(f"Resume ignored in {self._state.value}")
            return
        self._cancel_capture_retry()
        self._retry_used = False
        await self._enter_wake_listening()

    async def _handle_teardown(self, event: _Teardown) -> None:
        self._cancel_silence_timer()
        self._cancel_capture_retry()
        self._stop_capture()

        self.synthesizer.stop()
        self._playback_id += 1

        if self._assistant_task is not None:
            self._assistant_task.cancel()
            self._assistant_task = None
        self._turn_id += 1

        self._pending = None
        self._transcript.clear()
        self._set_state(ConversationState.IDLE)

    async def _handle_submit_text(self, event: _SubmitText) -> bool:
        text = event.text.strip()
        if not text:
            return False
        if self._state not in (
            ConversationState.IDLE,
            ConversationState.LISTENING_FOR_WAKE_WORD,
            ConversationState.LISTENING_FOR_UTTERANCE,
        ):
            logger.warning(f"Typed message ignored while {self._state.value}")
            return False

        self._cancel_capture_retry()
        self._dispatch(text)
        return True

    async def _handle_transcript(self, event: _TranscriptReceived) -> None:
        if event.capture_id != self._capture_id:
            return

        text = event.update.text.strip()
        self.events.emit(
            ConversationEventType.TRANSCRIPT_UPDATED,
            text=text,
            kind=event.update.kind,
            mode=self._capture_mode
        )

        if self._state == ConversationState.LISTENING_FOR_WAKE_WORD:
            if not text:
                return
            self._transcript.append(text)
            wake_token = self._settings().wake_token.lower()
            if wake_token and wake_token in text.lower():
                self._on_wake_word(text)

        elif self._state == ConversationState.LISTENING_FOR_UTTERANCE:
            if not text or (self._pending is not None and self._pending.text == text):
                return
            self._transcript.append(text)
            self._pending = PendingUtterance(text=text, updated_at=self._loop.time())
            self._arm_silence_timer()

    def _on_wake_word(self, text: str) -> None:
        logger.info(f"👋 Wake word detected: {text}")
        self._stop_capture()
        self._transcript.clear()
        self.events.emit(ConversationEventType.WAKE_WORD_DETECTED, text=text)

        audio = self.greeting_cache.audio if self.greeting_cache is not None else None
        if audio:
            self._speak(ConversationState.LISTENING_FOR_UTTERANCE, audio=audio)
        else:
            self._speak(ConversationState.LISTENING_FOR_UTTERANCE, text=self.greeting_text)

    async def _handle_capture_ended(self, event: _CaptureEnded) -> None:
        if event.capture_id != self._capture_id:
            return
        self._capture_task = None
        self._capture_mode = None

        if event.error is not None:
            logger.warning(f"Capture ended with error: {event.error}")

        if self._state == ConversationState.LISTENING_FOR_WAKE_WORD:
            self.capture.stop()
            self._set_state(ConversationState.IDLE)
            if event.error is not None:
                reason = event.error.reason if isinstance(event.error, CaptureUnavailable) else str(event.error)
                self.events.emit(ConversationEventType.CAPTURE_UNAVAILABLE, reason=reason)
            self._schedule_capture_retry()

        elif self._state == ConversationState.LISTENING_FOR_UTTERANCE:
            # A clean end with a pending utterance lets the armed timer dispatch it
            if event.error is None and self._pending is not None:
                return
            self.capture.stop()
            await self._enter_wake_listening()

    async def _handle_silence_elapsed(self, event: _SilenceElapsed) -> None:
        if event.generation != self._timer_generation or self._state != ConversationState.LISTENING_FOR_UTTERANCE:
            return
        if self._pending is None:
            return

        text = self._pending.text
        logger.info(f"⏱️ Silence timeout, dispatching: {text}")
        self._dispatch(text)

    async def _handle_reply_ready(self, event: _ReplyReady) -> None:
        if not self._awaiting(event.turn_id):
            return
        self._assistant_task = None

        reply = event.reply
        self.last_reply = reply
        if reply.actions:
            self.action_dispatcher.dispatch(reply.actions)
        self.events.emit(ConversationEventType.REPLY_RECEIVED, reply=reply, turn_id=event.turn_id)

        settings = self._settings()
        if reply.audio and settings.use_premium_voice:
            self._speak(ConversationState.LISTENING_FOR_UTTERANCE, audio=reply.audio)
        elif reply.text:
            self._speak(ConversationState.LISTENING_FOR_UTTERANCE, text=reply.text, voice=settings.voice)
        else:
            logger.info("Empty reply; continuing to listen")
            await self._enter_utterance_listening()

    async def _handle_remote_failed(self, event: _RemoteFailed) -> None:
        if not self._awaiting(event.turn_id):
            return

        if self.connectivity.is_offline:
            logger.info("📴 Remote assistant failed while offline; answering on device")
            self._assistant_task = self._loop.create_task(self._ask(event.turn_id, event.text, True))
            return

        self._assistant_task = None
        apology = AssistantReply(text=event.error.user_message, source=ReplySource.APOLOGY)
        self.last_reply = apology
        self.events.emit(ConversationEventType.REPLY_RECEIVED, reply=apology, turn_id=event.turn_id)
        self._speak(ConversationState.LISTENING_FOR_WAKE_WORD, text=apology.text)

    async def _handle_playback_finished(self, event: _PlaybackFinished) -> None:
        if event.playback_id != self._playback_id or self._state != ConversationState.SPEAKING:
            return

        if self._after_speaking == ConversationState.LISTENING_FOR_WAKE_WORD:
            await self._enter_wake_listening()
        else:
            await self._enter_utterance_listening()

    async def _handle_retry_capture(self, event: _RetryCapture) -> None:
        if event.generation != self._retry_generation or self._state != ConversationState.IDLE:
            return
        self._retry_handle = None
        logger.info("Retrying speech capture")
        await self._enter_wake_listening()

    async def _handle_connectivity_changed(self, event: _ConnectivityChanged) -> None:
        self.events.emit(ConversationEventType.CONNECTIVITY_CHANGED, is_offline=event.is_offline)


__all__ = ['ConversationTurnController', 'local_context']
