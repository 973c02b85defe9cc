"""
JARVIS Voice Assistant

A voice conversation turn controller that provides:
- Wake word listening and utterance capture with silence detection
- Remote assistant replies with spoken or pre-synthesized audio
- On-device fallback when the network is unavailable
- Fire-and-forget reply actions (reminders, calendar, notes, music, maps)
"""

__version__ = "1.0.0"

from .conversation_types import (
    ConversationState, CaptureMode, UpdateKind, ReplySource, ActionKind,
    TranscriptUpdate, Transcript, PendingUtterance, AssistantContext,
    AssistantReply, ConversationSettings
)
from .error_handling import (
    ErrorCategory, JarvisError, CaptureUnavailable, RemoteError, RemoteErrorKind,
    SynthesisError, OfflineGenerationError, ConfigurationError
)
from .events import ConversationEventType, ConversationEvent, EventEmitter, Subscription
from .actions import ActionDispatcher, parse_actions, create_default_dispatcher
from .config_manager import ConfigManager, JarvisConfig, EnvironmentType, get_config_manager
from .connectivity import ConnectivityMonitor
from .speech_capture import SpeechCaptureSource, WhisperCaptureSource
from .synthesis import ResponseSynthesizer, OpenAISpeechSynthesizer
from .remote_assistant import RemoteAssistant, CallableFunctionAssistant
from .offline_assistant import OfflineAssistant, LocalLanguageModel, LlamaCppModel, PlaceFinder, Place
from .greeting import GreetingCache
from .conversation import ConversationTurnController
from .structured_logging import setup_logging, turn_logging_context
