#!/usr/bin/env python3
"""
JARVIS Voice Assistant Main Entry Point

This is the main entry point for the voice assistant. It handles:
- Configuration loading and hot reload
- Component construction (capture, synthesis, remote, offline, connectivity)
- A console presenter subscribed to the controller's events
- Graceful shutdown on SIGINT/SIGTERM
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .actions import create_default_dispatcher
from .config_manager import ConfigManager, JarvisConfig
from .connectivity import ConnectivityMonitor
from .conversation import ConversationTurnController, local_context
from .conversation_types import AssistantContext, ConversationState, ReplySource
from .error_handling import ConfigurationError
from .events import ConversationEvent, ConversationEventType, Subscription
from .greeting import GreetingCache
from .offline_assistant import LlamaCppModel, OfflineAssistant
from .remote_assistant import CallableFunctionAssistant
from .speech_capture import WhisperCaptureSource
from .structured_logging import setup_logging
from .synthesis import OpenAISpeechSynthesizer

logger = logging.getLogger(__name__)


class ConsolePresenter:
    """Thin consumer of controller events that prints the conversation"""

    STATE_LABELS = {
        ConversationState.IDLE: "💤 Idle",
        ConversationState.LISTENING_FOR_WAKE_WORD: "👂 Listening for wake word",
        ConversationState.LISTENING_FOR_UTTERANCE: "🎤 Listening...",
        ConversationState.AWAITING_REPLY: "🤔 Thinking...",
        ConversationState.SPEAKING: "🔊 Speaking",
    }

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._subscription: Optional[Subscription] = None

    def attach(self, controller: ConversationTurnController) -> None:
        self._subscription = controller.subscribe(self.handle)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def handle(self, event: ConversationEvent) -> None:
        if event.type == ConversationEventType.STATE_CHANGED:
            self._print(self.STATE_LABELS[event.get('state')])
        elif event.type == ConversationEventType.UTTERANCE_DISPATCHED:
            self._print(f"🗣️  You: {event.get('text')}")
        elif event.type == ConversationEventType.REPLY_RECEIVED:
            reply = event.get('reply')
            prefix = "⚠️  JARVIS" if reply.source == ReplySource.APOLOGY else "🤖 JARVIS"
            self._print(f"{prefix}: {reply.text}")
            for url in reply.image_urls:
                self._print(f"   🖼️  {url}")
        elif event.type == ConversationEventType.CAPTURE_UNAVAILABLE:
            self._print(f"🚫 Microphone unavailable: {event.get('reason')}")
        elif event.type == ConversationEventType.CONNECTIVITY_CHANGED:
            self._print("📴 Offline" if event.get('is_offline') else "🌐 Online")

    def _print(self, message: str) -> None:
        print(message, file=self.stream, flush=True)


class JarvisVoiceApp:
    """Builds the components from configuration and runs the controller"""

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self.config: JarvisConfig = config_manager.get_config()

        self.connectivity: Optional[ConnectivityMonitor] = None
        self.controller: Optional[ConversationTurnController] = None
        self.greeting_cache: Optional[GreetingCache] = None
        self.presenter = ConsolePresenter()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._settings_task: Optional[asyncio.Task] = None

    def _context(self) -> AssistantContext:
        if self.config.remote.timezone or self.config.remote.location:
            return AssistantContext(
                timezone=self.config.remote.timezone or local_context().timezone,
                location_description=self.config.remote.location
            )
        return local_context()

    def build(self) -> ConversationTurnController:
        config = self.config
        api_key = config.api.openai_api_key
        org_id = config.api.openai_org_id

        self.connectivity = ConnectivityMonitor(
            probe_urls=config.connectivity.probe_urls,
            check_interval=config.connectivity.check_interval,
            probe_timeout=config.connectivity.probe_timeout
        )
        remote = CallableFunctionAssistant(
            function_url=config.remote.function_url,
            timeout=config.remote.timeout
        )
        offline = OfflineAssistant(
            model=LlamaCppModel(config.offline),
            timezone=config.remote.timezone
        )
        self.greeting_cache = GreetingCache(
            config.voice.greeting_cache_path,
            greeting_text=config.voice.greeting_text
        )

        self.controller = ConversationTurnController(
            capture=WhisperCaptureSource(config.capture, api_key=api_key, org_id=org_id),
            synthesizer=OpenAISpeechSynthesizer(config.synthesis, api_key=api_key, org_id=org_id),
            remote=remote,
            offline=offline,
            connectivity=self.connectivity,
            settings_provider=self.config_manager.settings_snapshot,
            action_dispatcher=create_default_dispatcher(),
            greeting_cache=self.greeting_cache,
            context_provider=self._context,
            capture_retry_delay=config.voice.capture_retry_delay,
            greeting_text=config.voice.greeting_text
        )
        self.presenter.attach(self.controller)
        return self.controller

    def _on_config_reload(self, config: JarvisConfig) -> None:
        # Called from the watchdog thread
        self.config = config
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._schedule_apply_settings)

    def _schedule_apply_settings(self) -> None:
        self._settings_task = self._loop.create_task(self.apply_settings())
        self._settings_task.add_done_callback(self._on_settings_applied)

    def _on_settings_applied(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Failed to apply reloaded settings: {error}", exc_info=error)

    async def apply_settings(self) -> None:
        """Tear down when the wake word was disabled, resume when re-enabled"""
        settings = self.config_manager.settings_snapshot()
        if not settings.wake_word_enabled and self.controller.state != ConversationState.IDLE:
            logger.info("Wake word disabled; stopping conversation")
            await self.controller.teardown()
        elif settings.wake_word_enabled and self.controller.state == ConversationState.IDLE:
            logger.info("Wake word enabled; resuming conversation")
            await self.controller.resume()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self, typed_messages: Optional[List[str]] = None) -> None:
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda *_: self.request_shutdown())

        controller = self.controller or self.build()
        self.config_manager.add_reload_callback(self._on_config_reload)
        self.config_manager.enable_hot_reload()

        try:
            await self.connectivity.check()
            self.connectivity.start()

            if not self.connectivity.is_offline and not self.config.voice.offline_mode:
                await self.greeting_cache.ensure(controller.remote, self._context())
            else:
                self.greeting_cache.load()

            await controller.start()
            for message in typed_messages or []:
                await controller.submit_text(message)

            logger.info("🤖 JARVIS is ready")
            await self._shutdown_event.wait()

        finally:
            self.config_manager.disable_hot_reload()
            self.config_manager.remove_reload_callback(self._on_config_reload)
            if self._settings_task is not None and not self._settings_task.done():
                self._settings_task.cancel()
            await controller.close()
            await self.connectivity.stop()
            self.presenter.detach()
            logger.info("JARVIS stopped")


def validate_environment(config: JarvisConfig) -> bool:
    """Report missing credentials; only a missing backend while online is fatal"""
    if not config.api.openai_api_key:
        logger.warning("OPENAI_API_KEY not set: speech capture and synthesis are unavailable")
    if not config.remote.function_url and not config.voice.offline_mode:
        logger.error("No remote function URL configured (set JARVIS_FUNCTION_URL or use --offline)")
        return False
    return True


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="jarvis-voice",
        description="JARVIS voice conversation assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: config/jarvis.yaml)"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file"
    )

    parser.add_argument(
        "--offline",
        action="store_true",
        help="Force on-device processing even when the network is available"
    )

    parser.add_argument(
        "--say",
        action="append",
        default=[],
        metavar="TEXT",
        help="Send a typed message once listening starts (repeatable)"
    )

    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = parse_arguments(argv)

    load_dotenv()

    if args.offline:
        os.environ['JARVIS_OFFLINE_MODE'] = 'true'

    try:
        config_manager = ConfigManager(config_path=args.config)
        config = config_manager.load_config()
    except ConfigurationError as e:
        setup_logging(level="INFO")
        logger.error(f"❌ {e}")
        return 1

    setup_logging(
        level="DEBUG" if args.debug else config.monitoring.log_level,
        log_dir=config.monitoring.log_dir,
        json_logs=config.monitoring.json_logs,
        log_file=args.log_file
    )

    if not validate_environment(config):
        return 1

    app = JarvisVoiceApp(config_manager)
    await app.run(typed_messages=args.say)
    return 0


def run() -> None:
    """Console script entry point"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
