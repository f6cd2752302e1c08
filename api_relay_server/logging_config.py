"""
Structured logging configuration with request tracking and rotation.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to all log entries."""
    event_dict["app"] = "api-relay"
    return event_dict


def mask_secret(value: Optional[str]) -> str:
    """Keep only a short prefix of a credential for log output."""
    if not value:
        return "-"
    return f"{value[:8]}..." if len(value) > 8 else "***"


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
) -> None:
    """
    Configure structured logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path
        log_max_bytes: Max log file size before rotation
        log_backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)

        root_logger = logging.getLogger()
        root_logger.addHandler(file_handler)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def log_request_start(
    method: str,
    path: str,
    request_id: str,
    client_ip: str = None,
    **kwargs
) -> None:
    """
    Log incoming API request.

    Args:
        method: HTTP method
        path: Request path
        request_id: Unique request ID
        client_ip: Client IP address
        **kwargs: Additional context
    """
    logger = get_logger("api")
    logger.info(
        "request_start",
        method=method,
        path=path,
        request_id=request_id,
        client_ip=client_ip,
        **kwargs
    )


def log_request_end(
    method: str,
    path: str,
    request_id: str,
    status_code: int,
    duration_ms: float,
    **kwargs
) -> None:
    """
    Log completed API request.

    Args:
        method: HTTP method
        path: Request path
        request_id: Unique request ID
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
        **kwargs: Additional context
    """
    logger = get_logger("api")
    logger.info(
        "request_end",
        method=method,
        path=path,
        request_id=request_id,
        status_code=status_code,
        duration_ms=duration_ms,
        **kwargs
    )


def log_relay_result(
    route_id: str,
    target_url: str,
    status_code: int,
    duration_ms: float,
    username: str = None,
    **kwargs
) -> None:
    """
    Log the outcome of one upstream dispatch.

    2xx responses are logged at info level, anything else as a warning.
    """
    logger = get_logger("relay")
    event = "relay_forwarded" if 200 <= status_code < 300 else "relay_upstream_error"
    log = logger.info if event == "relay_forwarded" else logger.warning
    log(
        event,
        route_id=route_id,
        target_url=target_url,
        status_code=status_code,
        duration_ms=duration_ms,
        username=username,
        **kwargs
    )


def log_transport_failure(
    route_id: str,
    target_url: str,
    error: str,
    duration_ms: float,
    **kwargs
) -> None:
    """
    Log an upstream call that never produced a response.

    Args:
        route_id: Service or legacy route id
        target_url: Upstream URL that was called
        error: Transport error message
        duration_ms: Time spent before the failure
        **kwargs: Additional context
    """
    logger = get_logger("relay")
    logger.error(
        "relay_transport_failure",
        route_id=route_id,
        target_url=target_url,
        error=error,
        duration_ms=duration_ms,
        **kwargs
    )


def log_quota_exceeded(
    service_id: str,
    username: str,
    limit_value: int,
    current_count: int,
    **kwargs
) -> None:
    """
    Log quota exceeded event.

    Args:
        service_id: Service being called
        username: Key owner
        limit_value: Configured service limit
        current_count: Usage counter at rejection time
        **kwargs: Additional context
    """
    logger = get_logger("quota")
    logger.warning(
        "quota_exceeded",
        service_id=service_id,
        username=username,
        limit_value=limit_value,
        current_count=current_count,
        **kwargs
    )


def log_credential_rejected(scheme: str, reason: str, credential: str = None, **kwargs) -> None:
    """Log a rejected admin token, session or API key (credential masked)."""
    logger = get_logger("auth")
    logger.info(
        "credential_rejected",
        scheme=scheme,
        reason=reason,
        credential=mask_secret(credential),
        **kwargs
    )


def log_exception(
    exception: Exception,
    context: Dict[str, Any] = None,
    **kwargs
) -> None:
    """
    Log exception with full context.

    Args:
        exception: Exception instance
        context: Additional context dictionary
        **kwargs: Additional context
    """
    logger = get_logger("exception")

    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        **(context or {}),
        **kwargs
    }

    logger.exception(
        "exception_occurred",
        **log_data
    )
