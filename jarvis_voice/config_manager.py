"""
JARVIS Voice - Configuration Management System

Provides configuration management with:
- YAML-based configuration files
- Environment profile files (jarvis.<env>.yaml) and variable overrides
- Configuration validation
- Hot-reload so settings changes apply to the next conversation transition
- Read-only settings snapshots for the turn controller

Usage:
    config_manager = ConfigManager("config/jarvis.yaml")
    config = config_manager.load_config()

    settings = config_manager.settings_snapshot()
    timeout = settings.silence_timeout

    config_manager.enable_hot_reload()
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .conversation_types import ConversationSettings
from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)


class EnvironmentType(Enum):
    """Environment types for configuration profiles"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    OFFLINE = "offline"
    TESTING = "testing"


@dataclass
class APIConfig:
    """API credentials"""
    openai_api_key: Optional[str] = None
    openai_org_id: Optional[str] = None


@dataclass
class VoiceConfig:
    """Conversation behaviour settings"""
    wake_word_enabled: bool = True
    wake_token: str = "jarvis"
    silence_timeout: float = 5.0  # seconds after the last transcript update
    offline_mode: bool = False
    voice: str = "alloy"
    use_premium_voice: bool = True  # play backend audio when a reply carries it
    greeting_text: str = "Hello, sir. At your service."
    greeting_cache_path: str = "data/greeting_audio.mp3"
    capture_retry_delay: float = 1.0


@dataclass
class CaptureConfig:
    """Microphone and speech recognition settings"""
    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 1024
    input_device_index: Optional[int] = None
    model: str = "whisper-1"
    language: str = "en"
    partial_interval: float = 1.0  # seconds between partial transcriptions
    max_window_seconds: float = 30.0
    silence_threshold: float = 0.001


@dataclass
class SynthesisConfig:
    """Speech output settings"""
    model: str = "tts-1"
    response_format: str = "mp3"
    speed: float = 1.0
    volume: float = 1.0
    timeout: float = 15.0


@dataclass
class RemoteConfig:
    """Cloud assistant settings"""
    function_url: str = ""
    timeout: float = 30.0
    timezone: Optional[str] = None  # defaults to the local zone
    location: Optional[str] = None


@dataclass
class ConnectivityConfig:
    """Network probing settings"""
    probe_urls: List[str] = field(default_factory=lambda: [
        "https://www.google.com/generate_204",
        "https://1.1.1.1",
    ])
    check_interval: float = 30.0
    probe_timeout: float = 5.0


@dataclass
class OfflineConfig:
    """On-device language model settings"""
    enabled: bool = True
    llama_binary: str = "llama-cli"
    model_path: str = "./data/offline_models/gemma-2-2b-it-Q4_K_M.gguf"
    max_tokens: int = 100
    threads: int = 4
    context_size: int = 2048
    temperature: float = 0.7
    timeout: float = 15.0


@dataclass
class MonitoringConfig:
    """Logging settings"""
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False


@dataclass
class JarvisConfig:
    """Complete JARVIS voice configuration"""
    environment: EnvironmentType = EnvironmentType.DEVELOPMENT
    api: APIConfig = field(default_factory=APIConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    offline: OfflineConfig = field(default_factory=OfflineConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    # Metadata
    version: str = "1.0.0"
    name: str = "JARVIS Voice"

    def settings_snapshot(self) -> ConversationSettings:
        return ConversationSettings(
            wake_word_enabled=self.voice.wake_word_enabled,
            wake_token=self.voice.wake_token.lower(),
            silence_timeout=float(self.voice.silence_timeout),
            offline_mode=self.voice.offline_mode,
            voice=self.voice.voice,
            use_premium_voice=self.voice.use_premium_voice,
        )


_SECTIONS = {
    'api': APIConfig,
    'voice': VoiceConfig,
    'capture': CaptureConfig,
    'synthesis': SynthesisConfig,
    'remote': RemoteConfig,
    'connectivity': ConnectivityConfig,
    'offline': OfflineConfig,
    'monitoring': MonitoringConfig,
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('true', '1', 'yes', 'on')


class ConfigFileWatcher(FileSystemEventHandler):
    """Watches configuration files for changes and triggers reloads"""

    def __init__(self, config_manager: 'ConfigManager'):
        self.config_manager = config_manager

    def on_modified(self, event):
        if event.is_directory:
            return

        if event.src_path.endswith('.yaml') or event.src_path.endswith('.yml'):
            logger.info(f"Configuration file changed: {event.src_path}")
            try:
                self.config_manager.reload_config()
                logger.info("Configuration reloaded successfully")
            except ConfigurationError as e:
                logger.error(f"Failed to reload configuration: {e}")


class ConfigManager:
    """
    Configuration management for the voice assistant

    The turn controller never holds the manager's config object; it asks for a
    fresh ConversationSettings snapshot at every transition.
    """

    def __init__(self, config_path: Optional[str] = None, environment: Optional[EnvironmentType] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.environment = environment or self._detect_environment()

        self._config: Optional[JarvisConfig] = None
        self._last_modified: Optional[float] = None

        # Hot reload
        self._hot_reload_enabled = False
        self._file_observer: Optional[Observer] = None
        self._reload_callbacks: List[Callable[[JarvisConfig], None]] = []

    def _get_default_config_path(self) -> str:
        return os.path.join(os.path.dirname(__file__), '..', 'config', 'jarvis.yaml')

    def _detect_environment(self) -> EnvironmentType:
        env_name = os.getenv('JARVIS_ENV', 'development').lower()

        try:
            return EnvironmentType(env_name)
        except ValueError:
            logger.warning(f"Unknown environment '{env_name}', defaulting to development")
            return EnvironmentType.DEVELOPMENT

    def _load_yaml_config(self, config_path: str) -> Dict[str, Any]:
        if not os.path.exists(config_path):
            logger.warning(f"Configuration file not found: {config_path}")
            return {}

        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        if config_path == self.config_path:
            self._last_modified = os.stat(config_path).st_mtime
        return config_data

    def _apply_environment_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        env_config_path = self.config_path.replace('.yaml', f'.{self.environment.value}.yaml')
        if env_config_path != self.config_path and os.path.exists(env_config_path):
            env_config = self._load_yaml_config(env_config_path)
            config_data = self._deep_merge(config_data, env_config)

        env_overrides = self._get_environment_variable_overrides()
        if env_overrides:
            config_data = self._deep_merge(config_data, env_overrides)

        return config_data

    def _get_environment_variable_overrides(self) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}

        api_overrides = {}
        if openai_key := os.getenv('OPENAI_API_KEY'):
            api_overrides['openai_api_key'] = openai_key
        if openai_org := os.getenv('OPENAI_ORG_ID'):
            api_overrides['openai_org_id'] = openai_org
        if api_overrides:
            overrides['api'] = api_overrides

        voice_overrides: Dict[str, Any] = {}
        if offline := os.getenv('JARVIS_OFFLINE_MODE'):
            voice_overrides['offline_mode'] = _parse_bool(offline)
        if wake_word := os.getenv('JARVIS_WAKE_WORD'):
            voice_overrides['wake_token'] = wake_word
        if timeout := os.getenv('JARVIS_SILENCE_TIMEOUT'):
            try:
                voice_overrides['silence_timeout'] = float(timeout)
            except ValueError:
                raise ConfigurationError(f"JARVIS_SILENCE_TIMEOUT must be a number, got {timeout!r}")
        if voice_overrides:
            overrides['voice'] = voice_overrides

        if function_url := os.getenv('JARVIS_FUNCTION_URL'):
            overrides['remote'] = {'function_url': function_url}

        if log_level := os.getenv('LOG_LEVEL'):
            overrides['monitoring'] = {'log_level': log_level.upper()}

        return overrides

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _create_config_from_dict(self, config_data: Dict[str, Any]) -> JarvisConfig:
        sections = {}
        try:
            for name, section_cls in _SECTIONS.items():
                section_data = config_data.get(name) or {}
                sections[name] = section_cls(**section_data)
        except TypeError as e:
            raise ConfigurationError(f"Failed to create configuration: {e}")

        config = JarvisConfig(environment=self.environment, **sections)

        if 'version' in config_data:
            config.version = str(config_data['version'])
        if 'name' in config_data:
            config.name = config_data['name']

        # The offline profile forces local-only processing
        if self.environment == EnvironmentType.OFFLINE:
            config.voice.offline_mode = True

        return config

    def _validate_config(self, config: JarvisConfig) -> None:
        errors = []

        if config.voice.silence_timeout <= 0:
            errors.append("Silence timeout must be positive")

        if not config.voice.wake_token.strip():
            errors.append("Wake token must not be empty")

        if config.voice.capture_retry_delay < 0:
            errors.append("Capture retry delay must not be negative")

        if config.capture.sample_rate not in [8000, 16000, 22050, 44100, 48000]:
            errors.append(f"Invalid sample rate: {config.capture.sample_rate}")

        if config.capture.channels not in [1, 2]:
            errors.append(f"Invalid channel count: {config.capture.channels}")

        if config.capture.partial_interval <= 0:
            errors.append("Capture partial_interval must be positive")

        if not 0 <= config.synthesis.volume <= 1:
            errors.append("Synthesis volume must be between 0 and 1")

        if config.remote.timeout <= 0:
            errors.append("Remote timeout must be positive")

        if config.connectivity.check_interval <= 0:
            errors.append("Connectivity check_interval must be positive")

        if config.offline.max_tokens <= 0:
            errors.append("Offline max_tokens must be positive")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def _build_config(self) -> JarvisConfig:
        config_data = self._load_yaml_config(self.config_path)
        config_data = self._apply_environment_overrides(config_data)
        config = self._create_config_from_dict(config_data)
        self._validate_config(config)
        return config

    def load_config(self) -> JarvisConfig:
        """Load and validate configuration"""
        logger.info(f"Loading configuration from {self.config_path}")

        config = self._build_config()

        self._config = config
        logger.info(f"Configuration loaded successfully for {self.environment.value} environment")
        return config

    def get_config(self) -> JarvisConfig:
        if self._config is None:
            return self.load_config()
        return self._config

    def settings_snapshot(self) -> ConversationSettings:
        """Fresh read-only settings for the next controller transition"""
        return self.get_config().settings_snapshot()

    def reload_config(self) -> JarvisConfig:
        """Reload configuration from file and notify callbacks"""
        logger.info("Reloading configuration...")

        # Readers on other threads keep seeing the previous config until the
        # new one has validated; a failed reload leaves it in place
        config = self._build_config()
        self._config = config

        for callback in self._reload_callbacks:
            try:
                callback(config)
            except Exception as e:
                logger.error(f"Error in reload callback: {e}")

        return config

    def save_config(self, config: JarvisConfig) -> None:
        """Save configuration to file"""
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        config_dict = {
            'version': config.version,
            'name': config.name,
        }
        for name in _SECTIONS:
            config_dict[name] = asdict(getattr(config, name))

        with open(self.config_path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {self.config_path}")

    def enable_hot_reload(self) -> None:
        """Watch the configuration directory and reload on change"""
        if self._hot_reload_enabled:
            return

        try:
            self._file_observer = Observer()
            event_handler = ConfigFileWatcher(self)

            config_dir = os.path.dirname(os.path.abspath(self.config_path))
            self._file_observer.schedule(event_handler, config_dir, recursive=False)

            self._file_observer.start()
            self._hot_reload_enabled = True

            logger.info("Hot reload enabled for configuration files")

        except OSError as e:
            logger.error(f"Failed to enable hot reload: {e}")

    def disable_hot_reload(self) -> None:
        if not self._hot_reload_enabled:
            return

        if self._file_observer:
            self._file_observer.stop()
            self._file_observer.join()
            self._file_observer = None

        self._hot_reload_enabled = False
        logger.info("Hot reload disabled")

    def add_reload_callback(self, callback: Callable[[JarvisConfig], None]) -> None:
        self._reload_callbacks.append(callback)

    def remove_reload_callback(self, callback: Callable[[JarvisConfig], None]) -> None:
        if callback in self._reload_callbacks:
            self._reload_callbacks.remove(callback)

    def is_config_modified(self) -> bool:
        if not os.path.exists(self.config_path):
            return False
        return os.stat(self.config_path).st_mtime != self._last_modified

    def create_default_config(self) -> None:
        self.save_config(JarvisConfig(environment=self.environment))
        logger.info(f"Created default configuration at {self.config_path}")


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[str] = None) -> ConfigManager:
    """Get the process configuration manager, creating it on first use"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_path=config_path)
    return _config_manager


__all__ = [
    'ConfigManager',
    'JarvisConfig',
    'APIConfig',
    'VoiceConfig',
    'CaptureConfig',
    'SynthesisConfig',
    'RemoteConfig',
    'ConnectivityConfig',
    'OfflineConfig',
    'MonitoringConfig',
    'EnvironmentType',
    'ConfigurationError',
    'get_config_manager',
]
