"""
Error taxonomy for the JARVIS voice assistant

Every failure in the conversation core is represented by one of these
exceptions and resolved by the turn controller into a state transition:
- CaptureUnavailable: microphone/recognizer cannot start
- RemoteError: cloud assistant call failed (network, bad payload, server)
- SynthesisError: speech output failed, treated as silent completion
- OfflineGenerationError: on-device model failed, masked by an apology
"""

import time
from contextvars import ContextVar
from enum import Enum
from typing import Optional

# Context variables for turn tracking
turn_id_var: ContextVar[str] = ContextVar('turn_id', default='')
operation_var: ContextVar[str] = ContextVar('operation', default='')


class ErrorCategory(Enum):
    """Structured error categories for precise handling"""
    CAPTURE = "capture"          # Microphone or recognizer unavailable
    NETWORK = "network"          # Transport failure reaching the backend
    PROTOCOL = "protocol"        # Backend answered with an unusable payload
    SERVER = "server"            # Backend reported an error
    SYNTHESIS = "synthesis"      # Audio decode or playback failure
    MODEL = "model"              # On-device model failure
    CONFIGURATION = "configuration"


class JarvisError(Exception):
    """Base exception for conversation core failures"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        retryable: bool = False,
        original_exception: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.original_exception = original_exception
        self.user_message = user_message or self._generate_user_message()
        self.timestamp = time.time()

    def _generate_user_message(self) -> str:
        """Generate the in-character message spoken for this failure"""
        if self.category == ErrorCategory.CAPTURE:
            return "Microphone unavailable."
        elif self.category == ErrorCategory.NETWORK:
            return "I apologize, I'm having trouble connecting to my systems."
        elif self.category == ErrorCategory.PROTOCOL:
            return "I didn't understand the response format."
        elif self.category == ErrorCategory.MODEL:
            return OFFLINE_GENERATION_APOLOGY
        else:
            return "I apologize, sir. Something went wrong."


OFFLINE_GENERATION_APOLOGY = (
    "I apologize, sir. I'm having difficulty processing that request offline. "
    "Perhaps you could rephrase it?"
)


class CaptureUnavailable(JarvisError):
    """Raised when speech capture cannot start (permission, busy device, engine)"""

    def __init__(self, reason: str, original_exception: Optional[Exception] = None):
        super().__init__(
            f"Speech capture unavailable: {reason}",
            ErrorCategory.CAPTURE,
            retryable=True,
            original_exception=original_exception,
            user_message=reason
        )
        self.reason = reason


class RemoteErrorKind(Enum):
    """Failure kinds reported by the remote assistant"""
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    SERVER_ERROR = "server_error"


_REMOTE_CATEGORIES = {
    RemoteErrorKind.NETWORK: ErrorCategory.NETWORK,
    RemoteErrorKind.MALFORMED_RESPONSE: ErrorCategory.PROTOCOL,
    RemoteErrorKind.SERVER_ERROR: ErrorCategory.SERVER,
}


class RemoteError(JarvisError):
    """Raised by the remote assistant; never retried internally"""

    def __init__(
        self,
        kind: RemoteErrorKind,
        message: str = "",
        original_exception: Optional[Exception] = None
    ):
        user_message = None
        if kind == RemoteErrorKind.SERVER_ERROR:
            user_message = f"I encountered an error: {message}"
        super().__init__(
            f"Remote assistant {kind.value}: {message}" if message else f"Remote assistant {kind.value}",
            _REMOTE_CATEGORIES[kind],
            retryable=kind == RemoteErrorKind.NETWORK,
            original_exception=original_exception,
            user_message=user_message
        )
        self.kind = kind
        self.message = message


class SynthesisError(JarvisError):
    """Speech synthesis or audio playback failure"""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(
            message,
            ErrorCategory.SYNTHESIS,
            original_exception=original_exception
        )


class OfflineGenerationError(JarvisError):
    """On-device language model failure"""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(
            message,
            ErrorCategory.MODEL,
            original_exception=original_exception
        )


class ConfigurationError(JarvisError):
    """Configuration-related errors"""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CONFIGURATION)


__all__ = [
    'turn_id_var',
    'operation_var',
    'ErrorCategory',
    'JarvisError',
    'CaptureUnavailable',
    'RemoteErrorKind',
    'RemoteError',
    'SynthesisError',
    'OfflineGenerationError',
    'ConfigurationError',
    'OFFLINE_GENERATION_APOLOGY',
]
