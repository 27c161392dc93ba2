import logging
import re
import sys
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Keys whose values are replaced wholesale when a dict is logged
SENSITIVE_KEY_PATTERNS = [r"password", r"api_key", r"secret", r"token", r"authorization", r"credential"]

# key=value / key: value / "key": "value" pairs inside free text
_INLINE_SECRET = re.compile(
    r'(?P<key>["\']?(?:password|api_key|secret|token|authorization|bearer)["\']?\s*[:=]\s*["\']?)'
    r'(?P<value>[^"\'\s,}]+)',
    re.IGNORECASE,
)


def mask_sensitive_data(data: Union[Dict, List, str, Any], patterns: Optional[List[str]] = None) -> Any:
    """
    Mask sensitive values in a string, dict or list.

    Args:
        data: Data to mask
        patterns: Regex patterns matched against dict keys

    Returns:
        A masked copy of ``data``; other types are returned unchanged.
    """
    if patterns is None:
        patterns = SENSITIVE_KEY_PATTERNS

    if isinstance(data, dict):
        return {
            k: "********" if isinstance(k, str) and any(re.search(p, k, re.I) for p in patterns)
            else mask_sensitive_data(v, patterns)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item, patterns) for item in data)
    elif isinstance(data, str):
        return _INLINE_SECRET.sub(lambda m: m.group('key') + "********", data)
    return data


class SensitiveDataFilter(logging.Filter):
    """
    A logging filter that masks secrets within log records.

    It applies `mask_sensitive_data` to the log message and its arguments.
    """
    def __init__(self, name: str = 'SensitiveDataFilter'):
        super().__init__(name)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_sensitive_data(record.msg)

        # Only %-style args end up here; f-string messages are covered by record.msg
        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_sensitive_data(record.args)
            else:
                record.args = tuple(mask_sensitive_data(arg) for arg in record.args)

        return True


def setup_logging(level: str = 'INFO', protocol: str = 'stdio', mask_sensitive: bool = True) -> None:
    """
    Configure logging for the forge-mcp server.

    Args:
        level: Logging level (default: 'INFO')
        protocol: Server protocol ('stdio' or 'streamable_http')
        mask_sensitive: Attach a SensitiveDataFilter to the handler
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level.upper())

    formatter = logging.Formatter(DEFAULT_FORMAT)

    # stdout carries protocol frames under stdio, so everything goes to stderr
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    if mask_sensitive:
        stderr_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(stderr_handler)

    if protocol == 'stdio':
        root_logger.info("Logging configured for stdio protocol. All logs will be written to stderr.")
    else:
        root_logger.info(f"Logging configured for {protocol} protocol.")

    loggers = [
        'forge_mcp',
        'forge_mcp.core',
        'forge_mcp.providers',
        'forge_mcp.tools',
        'forge_mcp.client',
    ]
    for logger_name in loggers:
        package_logger = logging.getLogger(logger_name)
        package_logger.setLevel(level.upper())
        package_logger.propagate = True
        package_logger.handlers = []

    # Quieten chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def setup_logging_from_config(logging_config: dict) -> None:
    """
    Set up logging from a ``logging`` config section.
    Supports multiple handlers (StreamHandler, FileHandler) and a custom format.

    Example::

        logging:
          level: DEBUG
          format: "%(asctime)s %(levelname)s %(name)s %(message)s"
          mask_sensitive: true
          handlers:
            - type: StreamHandler
              level: INFO
            - type: FileHandler
              filename: forge_mcp.log
              level: DEBUG
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging_config.get('level', 'INFO').upper())
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(logging_config.get('format', DEFAULT_FORMAT))
    mask = logging_config.get('mask_sensitive', True)

    for handler_cfg in logging_config.get('handlers', []):
        if handler_cfg['type'] == 'StreamHandler':
            # Never stdout: it may be the stdio transport
            handler = logging.StreamHandler(sys.stderr)
        elif handler_cfg['type'] == 'FileHandler':
            handler = logging.FileHandler(handler_cfg['filename'])
        else:
            logger.warning(f"Unknown logging handler type: {handler_cfg['type']}")
            continue
        handler.setLevel(handler_cfg.get('level', 'INFO').upper())
        handler.setFormatter(formatter)
        if mask:
            handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)
