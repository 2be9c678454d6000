"""
Analysis backend request logging.

Writes one JSON line per request, response and error to
``<log_dir>/llm/requests.log`` when ``llm_logging_enabled`` is set. Prompt
and response bodies are truncated previews; conversation content is never
logged in full.
"""

import json
import logging
import logging.handlers
import uuid
from datetime import datetime, timezone
from typing import Optional

from retain.analysis.providers.base import LLMResponse
from retain.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

LLM_LOGGER_NAME = "retain.llm"


class LLMRequestLogger:
    """Logger for analysis backend calls, kept in a separate file."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.llm_logger = logging.getLogger(LLM_LOGGER_NAME)
        self.enabled = self.config.llm_logging_enabled

        if self.enabled and self.config.log_file_enabled:
            self._setup_file_handler()

    def _setup_file_handler(self) -> None:
        llm_dir = self.config.log_directory / "llm"
        llm_dir.mkdir(parents=True, exist_ok=True)
        log_path = llm_dir / "requests.log"

        for handler in self.llm_logger.handlers:
            if getattr(handler, "baseFilename", None) == str(log_path):
                return

        handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(
            logging.Formatter(
                fmt="[%(asctime)s] [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        self.llm_logger.addHandler(handler)
        self.llm_logger.setLevel(logging.INFO)
        self.llm_logger.propagate = False

    def log_request(
        self,
        analysis_type: str,
        provider: str,
        model: str,
        queue_ids: list[uuid.UUID],
        prompt: str,
    ) -> str:
        """Log a request and return the id used to correlate its response."""
        if not self.enabled:
            return ""

        request_id = uuid.uuid4().hex[:12]
        entry = {
            "type": "request",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "analysis_type": analysis_type,
            "provider": provider,
            "model": model,
            "queue_ids": [str(q) for q in queue_ids],
            "prompt_preview": prompt[:500] + "..." if len(prompt) > 500 else prompt,
            "prompt_length": len(prompt),
        }
        self.llm_logger.info(f"REQUEST: {json.dumps(entry)}")
        return request_id

    def log_response(self, request_id: str, response: LLMResponse) -> None:
        if not self.enabled:
            return

        content = response.content
        entry = {
            "type": "response",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": response.model,
            "finish_reason": response.finish_reason,
            "content_length": len(content),
            "duration_ms": round(response.duration_ms, 2),
            "tokens": {
                "prompt": response.prompt_tokens,
                "completion": response.completion_tokens,
                "total": response.total_tokens,
            },
        }
        if content:
            entry["content_preview"] = content[:200] + "..." if len(content) > 200 else content
        self.llm_logger.info(f"RESPONSE: {json.dumps(entry)}")

    def log_error(self, request_id: str, error: Exception) -> None:
        if not self.enabled:
            return

        entry = {
            "type": "error",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        self.llm_logger.error(f"ERROR: {json.dumps(entry)}")
