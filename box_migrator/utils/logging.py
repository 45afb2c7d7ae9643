"""
Logging module for the Box migration tool
"""

import json
import logging
import os
from typing import Any, Dict, Optional

LOGGER_NAME = "box_migrator"

# Module-level flag to track if API debug logging is enabled
_DEBUG_API_ENABLED = False

_SENSITIVE_KEYS = ("token", "auth", "password", "secret", "key")

_STANDARD_RECORD_ATTRS = frozenset(
    (
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "id",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    )
)


class JsonFormatter(logging.Formatter):
    def format(self, record):
        data = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        # Structured context passed through ``extra``
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS:
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class EnhancedFormatter(logging.Formatter):
    """
    Formatter that supports verbose mode (module and line information),
    correlation ids and API debug mode (request/response data)
    """

    def __init__(
        self,
        fmt=None,
        datefmt=None,
        style="%",
        verbose=False,
        include_api_details=False,
    ):
        if verbose:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s"
        elif not fmt:
            fmt = "%(asctime)s - %(levelname)s - %(message)s"

        super().__init__(fmt, datefmt, style)
        self.verbose = verbose
        self.include_api_details = include_api_details

    def format(self, record):
        result = super().format(record)

        correlation_id = getattr(record, "correlation_id", None)
        if self.verbose and correlation_id:
            result += f" [cid={correlation_id}]"

        if self.include_api_details:
            if getattr(record, "api_data", None):
                result += f"\nAPI Data: {record.api_data}"
            if getattr(record, "response", None):
                result += f"\nResponse: {record.response}"

        return result


def _file_formatter(debug_api: bool, json_logs: bool) -> logging.Formatter:
    if json_logs:
        return JsonFormatter()
    return EnhancedFormatter(
        "%(asctime)s - %(levelname)s - %(message)s", include_api_details=debug_api
    )


def setup_main_log_file(
    output_dir: str, debug_api: bool = False, json_logs: bool = False
) -> logging.FileHandler:
    """
    Set up a file handler for the main log file.

    Records tagged with a ``user_id`` still go to the main log as well; the
    per-account files from :func:`setup_account_logger` are an additional
    partitioned view.

    Args:
        output_dir: The output directory path
        debug_api: If True, include request/response data in the file
        json_logs: If True, write one JSON object per line

    Returns:
        The file handler for the main log file
    """
    os.makedirs(output_dir, exist_ok=True)
    log_file = os.path.join(output_dir, "migration.log")

    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(_file_formatter(debug_api, json_logs))

    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(file_handler)

    logger.info(f"Main log file created at: {log_file}")
    return file_handler


def setup_logger(
    verbose: bool = False,
    debug_api: bool = False,
    output_dir: Optional[str] = None,
    json_logs: bool = False,
) -> logging.Logger:
    """
    Set up and return the logger with appropriate formatting.

    Args:
        verbose: If True, set console handler to DEBUG level; otherwise INFO level
        debug_api: If True, enable detailed API request/response logging
        output_dir: Optional output directory for the main log file
        json_logs: If True, log files are written as JSON lines

    Returns:
        Configured logger instance
    """
    global _DEBUG_API_ENABLED
    _DEBUG_API_ENABLED = debug_api

    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to prevent duplicate messages
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        EnhancedFormatter(verbose=verbose, include_api_details=debug_api)
    )
    logger.addHandler(console_handler)

    if output_dir:
        setup_main_log_file(output_dir, debug_api, json_logs)

    if debug_api:
        # requests logs connection-level details through urllib3
        urllib3_logger = logging.getLogger("urllib3")
        urllib3_logger.setLevel(logging.DEBUG)

        if output_dir:
            api_log_file = os.path.join(output_dir, "api_debug.log")
            api_handler = logging.FileHandler(api_log_file, mode="a")
            api_handler.setLevel(logging.DEBUG)
            api_handler.setFormatter(EnhancedFormatter(include_api_details=True))

            # Only records that carry API payloads
            def api_filter(record):
                return bool(
                    getattr(record, "api_data", None)
                    or getattr(record, "response", None)
                )

            api_handler.addFilter(api_filter)
            logger.addHandler(api_handler)
            urllib3_logger.addHandler(api_handler)
            logger.info(f"API debug logging enabled, writing to {api_log_file}")
        else:
            logger.info("API debug logging enabled, writing to console")

    return logger


def setup_account_logger(
    output_dir: str,
    user_login: str,
    user_id: Optional[str] = None,
    verbose: bool = False,
    debug_api: bool = False,
) -> logging.FileHandler:
    """
    Set up a file handler that collects every record logged for one account.

    Records are matched on ``user_login``, or on ``user_id`` once it is known.
    The id is picked up from the first record that carries both, so a run
    that resolves the account part-way through still lands in one file.

    Args:
        output_dir: The output directory path
        user_login: The login the account run is for
        user_id: The Box user id, when already resolved
        verbose: If True, use the verbose record format
        debug_api: If True, include request/response data

    Returns:
        The file handler for the account log; detach it with
        :func:`remove_account_logger` once the account run is over
    """
    logs_dir = os.path.join(output_dir, "account_logs")
    os.makedirs(logs_dir, exist_ok=True)

    safe_name = user_login.replace(os.sep, "_")
    log_file = os.path.join(logs_dir, f"{safe_name}.log")

    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        EnhancedFormatter(verbose=verbose, include_api_details=debug_api)
    )

    class AccountFilter(logging.Filter):
        def __init__(self) -> None:
            super().__init__()
            self.user_id = user_id

        def filter(self, record):
            record_login = getattr(record, "user_login", None)
            record_id = getattr(record, "user_id", None)
            if record_login == user_login:
                if record_id and self.user_id is None:
                    self.user_id = record_id
                return True
            return self.user_id is not None and record_id == self.user_id

    file_handler.addFilter(AccountFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(file_handler)

    logger.debug(
        f"Account log file created at: {log_file}", extra={"user_login": user_login}
    )
    return file_handler


def remove_account_logger(handler: logging.Handler) -> None:
    """Detach and close a handler created by :func:`setup_account_logger`."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.removeHandler(handler)
    handler.close()


def log_with_context(level: int, message: str, **kwargs: Any) -> None:
    """
    Log a message with additional context information.

    Args:
        level: The logging level (e.g., logging.INFO)
        message: The log message
        **kwargs: Additional context to include in the log record
    """
    filtered_kwargs = {k: v for k, v in kwargs.items() if v is not None}

    # ``exc_info`` is a logging keyword, not a record attribute
    exc_info = filtered_kwargs.pop("exc_info", None)

    logger = logging.getLogger(LOGGER_NAME)
    logger.log(level, message, extra=filtered_kwargs, exc_info=exc_info)


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with credential-looking fields masked."""
    redacted = {}
    for key, value in data.items():
        if any(sensitive in key.lower() for sensitive in _SENSITIVE_KEYS):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact(value)
        else:
            redacted[key] = value
    return redacted


def log_api_request(
    method: str, url: str, data: Optional[Dict] = None, **kwargs: Any
) -> None:
    """
    Log an API request when API debug mode is on.

    Args:
        method: HTTP method (GET, POST, etc.)
        url: The API endpoint URL
        data: Optional request data/payload
        **kwargs: Additional context to include in the log record
    """
    if not is_debug_api_enabled():
        return

    log_context = kwargs.copy()
    if data and isinstance(data, dict):
        log_context["api_data"] = json.dumps(redact(data), indent=2)

    log_with_context(logging.DEBUG, f"API Request: {method} {url}", **log_context)


def log_api_response(
    status_code: int, url: str, response_data: Any = None, **kwargs: Any
) -> None:
    """
    Log an API response when API debug mode is on.

    Args:
        status_code: HTTP status code
        url: The API endpoint URL
        response_data: Optional response data
        **kwargs: Additional context to include in the log record
    """
    if not is_debug_api_enabled():
        return

    log_context = kwargs.copy()
    if response_data:
        if isinstance(response_data, (dict, list)):
            response_str = json.dumps(response_data, indent=2)
            if len(response_str) > 2000:
                response_str = response_str[:2000] + "... [truncated]"
        else:
            response_str = str(response_data)
            if len(response_str) > 1000:
                response_str = response_str[:1000] + "... [truncated]"
        log_context["response"] = response_str

    log_with_context(
        logging.DEBUG, f"API Response: {status_code} from {url}", **log_context
    )


def is_debug_api_enabled() -> bool:
    """Check if API debug logging is enabled."""
    return _DEBUG_API_ENABLED


def get_logger():
    """Get the box_migrator logger, creating it with defaults if needed."""
    box_logger = logging.getLogger(LOGGER_NAME)
    if not box_logger.handlers:
        box_logger.setLevel(logging.INFO)
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(EnhancedFormatter())
        box_logger.addHandler(handler)
    return box_logger


# Module logger - will be properly initialized when setup_logger is called
logger = get_logger()
