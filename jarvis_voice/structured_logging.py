"""
Structured Logging for the JARVIS voice assistant

Module loggers stay plain `logging.getLogger(__name__)`; this module adds:
- JSON-lines file output for post-mortem analysis
- Colored console output
- Turn id stamping on every record through a context variable
- An async context manager that brackets one conversation turn
"""

import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from .error_handling import turn_id_var, operation_var, JarvisError


class TurnContextFilter(logging.Filter):
    """Attach the active turn id and operation to every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn_id = turn_id_var.get()
        record.operation = operation_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.thread,
        }

        turn_id = getattr(record, 'turn_id', '')
        if turn_id:
            log_data["turn_id"] = turn_id
        operation = getattr(record, 'operation', '')
        if operation:
            log_data["operation"] = operation

        # Add structured data if present
        if hasattr(record, 'structured_data'):
            log_data.update(record.structured_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'      # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']

        timestamp = time.strftime('%H:%M:%S', time.localtime(record.created))

        context_info = ""
        turn_id = getattr(record, 'turn_id', '')
        if turn_id:
            context_info += f" [{turn_id[:8]}]"
        if hasattr(record, 'structured_data'):
            data = record.structured_data
            if 'duration_ms' in data:
                context_info += f" ({data['duration_ms']:.1f}ms)"

        message = f"{color}{timestamp}{reset} {record.name.split('.')[-1]}: {record.getMessage()}{context_info}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """Configure the root logger with console output, optional plain log file and JSON-lines files"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear existing handlers to avoid duplicates on reload
    root_logger.handlers.clear()

    context_filter = TurnContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredConsoleFormatter())
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        plain_handler = logging.FileHandler(log_file)
        plain_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        plain_handler.addFilter(context_filter)
        root_logger.addHandler(plain_handler)

    if json_logs and log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path / 'jarvis_voice.jsonl')
        file_handler.setFormatter(StructuredFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

        # Separate error log file
        error_handler = logging.FileHandler(log_path / 'jarvis_voice_errors.jsonl')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        error_handler.addFilter(context_filter)
        root_logger.addHandler(error_handler)


@asynccontextmanager
async def turn_logging_context(logger: logging.Logger, operation: str, text: str = ""):
    """Bracket one conversation turn with start/end records and a fresh turn id"""
    turn_id = str(uuid.uuid4())
    turn_token = turn_id_var.set(turn_id)
    operation_token = operation_var.set(operation)
    start_time = time.time()

    logger.info(
        f"🚀 Turn started: {operation}",
        extra={"structured_data": {"event": "turn_start", "text_length": len(text)}}
    )

    try:
        yield turn_id

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"✅ Turn finished: {operation}",
            extra={"structured_data": {"event": "turn_success", "duration_ms": duration_ms}}
        )

    except Exception as e:
        duration_ms = (time.time() - start_time) * 1000
        category = e.category.value if isinstance(e, JarvisError) else None
        logger.warning(
            f"❌ Turn failed: {operation}: {e}",
            extra={"structured_data": {
                "event": "turn_error",
                "duration_ms": duration_ms,
                "error_type": type(e).__name__,
                "error_category": category,
            }}
        )
        raise

    finally:
        turn_id_var.reset(turn_token)
        operation_var.reset(operation_token)


__all__ = [
    'TurnContextFilter',
    'StructuredFormatter',
    'ColoredConsoleFormatter',
    'setup_logging',
    'turn_logging_context',
]
