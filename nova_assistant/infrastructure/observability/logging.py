import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "nova-assistant"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    context = structlog.contextvars.get_contextvars()

    # Session and conversation are bound per websocket
    session_id = context.get("session_id")
    if session_id:
        event_dict["session_id"] = session_id

    conversation_id = context.get("conversation_id")
    if conversation_id:
        event_dict["conversation_id"] = conversation_id

    return event_dict


class AssistantLogger:
    """Specialized logger for assistant operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_workflow_transition(
        self,
        workflow_type: str,
        from_state: str,
        to_state: str,
        trigger: str,
        step_index: Optional[int] = None,
        context_entries: Optional[int] = None
    ):
        """Log workflow state transitions"""

        self.logger.info(
            "workflow_transition",
            workflow_type=workflow_type,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            step_index=step_index,
            context_entries=context_entries
        )

    def log_tool_handoff(
        self,
        action: str,
        target: Optional[str],
        source: str,
        available: bool = True
    ):
        """Log hand-offs to external tools"""

        self.logger.info(
            "tool_handoff",
            action=action,
            target=target,
            source=source,
            available=available
        )

    def log_completion_stream(
        self,
        fragments: int,
        characters: int,
        duration_ms: Optional[float] = None,
        stale: bool = False,
        error: Optional[str] = None
    ):
        """Log the outcome of one streamed completion"""

        self.logger.info(
            "completion_stream",
            fragments=fragments,
            characters=characters,
            duration_ms=duration_ms,
            stale=stale,
            success=error is None,
            error=error
        )

    def log_persistence_write(
        self,
        conversation_id: Optional[str],
        message_count: int,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log conversation saves"""

        if success:
            self.logger.debug(
                "persistence_write",
                conversation_id=conversation_id,
                message_count=message_count,
                success=True
            )
        else:
            self.logger.warning(
                "persistence_write",
                conversation_id=conversation_id,
                message_count=message_count,
                success=False,
                error=error
            )


# Global logger instance
assistant_logger = AssistantLogger("assistant")
