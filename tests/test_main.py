#!/usr/bin/env python3
"""
Tests for the application entry point

Tests cover:
- Command line parsing
- Environment validation
- The console presenter
- Applying reloaded settings to a running controller
- Early exits from main()
"""

import asyncio
import io
import logging
from unittest.mock import AsyncMock

import pytest
import yaml

from jarvis_voice.config_manager import ConfigManager, EnvironmentType, JarvisConfig
from jarvis_voice.conversation_types import AssistantReply, ConversationState, ReplySource
from jarvis_voice.events import ConversationEvent, ConversationEventType
from jarvis_voice.main import (
    ConsolePresenter, JarvisVoiceApp, main, parse_arguments, validate_environment
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('OPENAI_API_KEY', 'OPENAI_ORG_ID', 'JARVIS_OFFLINE_MODE', 'JARVIS_WAKE_WORD',
                 'JARVIS_SILENCE_TIMEOUT', 'JARVIS_FUNCTION_URL', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def preserve_root_logger():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


def make_manager(tmp_path, data) -> ConfigManager:
    config_path = tmp_path / "jarvis.yaml"
    with open(config_path, 'w') as f:
        yaml.safe_dump(data, f)
    return ConfigManager(config_path=str(config_path), environment=EnvironmentType.DEVELOPMENT)


class StubController:
    def __init__(self, state):
        self.state = state
        self.teardown = AsyncMock()
        self.resume = AsyncMock()


class TestArguments:
    """Test command line parsing"""

    def test_defaults(self):
        args = parse_arguments([])
        assert args.config is None
        assert not args.debug
        assert not args.offline
        assert args.say == []

    def test_repeated_say(self):
        args = parse_arguments(["--offline", "--debug", "--say", "Hello", "--say", "What time is it"])
        assert args.offline
        assert args.debug
        assert args.say == ["Hello", "What time is it"]

    def test_log_file(self):
        assert parse_arguments(["--log-file", "logs/jarvis.log"]).log_file == "logs/jarvis.log"


class TestValidateEnvironment:
    """Test startup validation"""

    def test_missing_function_url_online(self):
        assert not validate_environment(JarvisConfig())

    def test_missing_function_url_offline(self):
        config = JarvisConfig()
        config.voice.offline_mode = True
        assert validate_environment(config)

    def test_function_url_configured(self):
        config = JarvisConfig()
        config.remote.function_url = "https://functions.test/onMessage"
        assert validate_environment(config)


class TestConsolePresenter:
    """Test the console presentation of controller events"""

    def render(self, event_type, **payload) -> str:
        stream = io.StringIO()
        ConsolePresenter(stream=stream).handle(ConversationEvent(type=event_type, payload=payload))
        return stream.getvalue()

    def test_state_change(self):
        output = self.render(
            ConversationEventType.STATE_CHANGED,
            previous=ConversationState.IDLE,
            state=ConversationState.LISTENING_FOR_WAKE_WORD
        )
        assert "Listening for wake word" in output

    def test_reply_with_images(self):
        reply = AssistantReply(text="Here it is, sir.", image_urls=["https://img.test/suit.png"])
        output = self.render(ConversationEventType.REPLY_RECEIVED, reply=reply, turn_id=1)
        assert "JARVIS: Here it is, sir." in output
        assert "https://img.test/suit.png" in output

    def test_apology_reply(self):
        reply = AssistantReply(text="I didn't understand the response format.", source=ReplySource.APOLOGY)
        output = self.render(ConversationEventType.REPLY_RECEIVED, reply=reply, turn_id=1)
        assert output.startswith("⚠️")

    def test_capture_unavailable(self):
        output = self.render(ConversationEventType.CAPTURE_UNAVAILABLE, reason="Permission denied")
        assert "Permission denied" in output

    def test_connectivity(self):
        assert "Offline" in self.render(ConversationEventType.CONNECTIVITY_CHANGED, is_offline=True)
        assert "Online" in self.render(ConversationEventType.CONNECTIVITY_CHANGED, is_offline=False)


class TestJarvisVoiceApp:
    """Test component construction and settings application"""

    def test_build(self, tmp_path):
        manager = make_manager(tmp_path, {
            'voice': {'greeting_cache_path': str(tmp_path / "greeting.mp3"), 'capture_retry_delay': 0.5},
            'remote': {'function_url': 'https://functions.test/onMessage'},
        })
        app = JarvisVoiceApp(manager)

        controller = app.build()

        assert controller.state == ConversationState.IDLE
        assert controller.capture_retry_delay == 0.5
        assert controller.remote.function_url == 'https://functions.test/onMessage'
        assert app.greeting_cache.cache_path == tmp_path / "greeting.mp3"

    @pytest.mark.asyncio
    async def test_disabling_wake_word_tears_down(self, tmp_path):
        app = JarvisVoiceApp(make_manager(tmp_path, {'voice': {'wake_word_enabled': False}}))
        app.controller = StubController(ConversationState.LISTENING_FOR_WAKE_WORD)

        await app.apply_settings()

        app.controller.teardown.assert_awaited_once()
        app.controller.resume.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enabling_wake_word_resumes(self, tmp_path):
        app = JarvisVoiceApp(make_manager(tmp_path, {'voice': {'wake_word_enabled': True}}))
        app.controller = StubController(ConversationState.IDLE)

        await app.apply_settings()

        app.controller.resume.assert_awaited_once()
        app.controller.teardown.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unchanged_settings_do_nothing(self, tmp_path):
        app = JarvisVoiceApp(make_manager(tmp_path, {}))
        app.controller = StubController(ConversationState.SPEAKING)

        await app.apply_settings()

        app.controller.resume.assert_not_awaited()
        app.controller.teardown.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reload_failure_is_logged(self, tmp_path, caplog):
        """A resume failing after a hot reload is reported instead of lost with the task"""
        manager = make_manager(tmp_path, {'voice': {'wake_word_enabled': True}})
        app = JarvisVoiceApp(manager)
        app.controller = StubController(ConversationState.IDLE)
        app.controller.resume.side_effect = RuntimeError("microphone busy")
        app._loop = asyncio.get_running_loop()

        with caplog.at_level(logging.ERROR, logger="jarvis_voice.main"):
            app._on_config_reload(manager.load_config())
            for _ in range(5):
                await asyncio.sleep(0)

        assert app._settings_task is not None and app._settings_task.done()
        assert isinstance(app._settings_task.exception(), RuntimeError)
        assert "Failed to apply reloaded settings: microphone busy" in caplog.text
        app.controller.resume.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reload_applies_settings_on_loop(self, tmp_path, caplog):
        manager = make_manager(tmp_path, {'voice': {'wake_word_enabled': False}})
        app = JarvisVoiceApp(manager)
        app.controller = StubController(ConversationState.LISTENING_FOR_WAKE_WORD)
        app._loop = asyncio.get_running_loop()

        with caplog.at_level(logging.ERROR, logger="jarvis_voice.main"):
            app._on_config_reload(manager.load_config())
            for _ in range(5):
                await asyncio.sleep(0)

        app.controller.teardown.assert_awaited_once()
        assert "Failed to apply reloaded settings" not in caplog.text


class TestMain:
    """Test early exits from main()"""

    @pytest.mark.asyncio
    async def test_invalid_configuration(self, tmp_path, preserve_root_logger):
        make_manager(tmp_path, {'voice': {'silence_timeout': 0}})
        assert await main(["--config", str(tmp_path / "jarvis.yaml")]) == 1

    @pytest.mark.asyncio
    async def test_missing_backend(self, tmp_path, preserve_root_logger):
        make_manager(tmp_path, {'monitoring': {'log_dir': str(tmp_path / "logs")}})
        assert await main(["--config", str(tmp_path / "jarvis.yaml")]) == 1
