import logging
import sys

import pytest

from forge_mcp.core.logging_config import (
    SensitiveDataFilter,
    mask_sensitive_data,
    setup_logging,
    setup_logging_from_config,
)
from forge_mcp.core.mcp_server import (
    StdioProtocol,
    StreamableHTTPProtocol,
    build_app_from_config,
    create_protocol,
    load_config,
)
from forge_mcp.error_handling.exceptions import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    def write(text):
        path = tmp_path / "config.yaml"
        path.write_text(text)
        return str(path)
    return write


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_load_config_merges_defaults(config_file):
    config = load_config(config_file(
        "name: inventory\n"
        "connection_type: streamable_http\n"
        "http:\n"
        "  port: 9000\n"
        "rate_limit:\n"
        "  max_requests: 5\n"
    ))
    assert config["name"] == "inventory"
    assert config["http"] == {"host": "0.0.0.0", "port": 9000}
    assert config["log_level"] == "INFO"
    assert config["rate_limit"] == {"max_requests": 5}


def test_empty_file_uses_defaults(config_file):
    config = load_config(config_file(""))
    assert config["connection_type"] == "stdio"
    assert config["duplicate_behavior"] == "warn"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(str(tmp_path / "missing.yaml"))
    assert "Configuration file not found" in str(exc_info.value)
    assert exc_info.value.code == -32004


@pytest.mark.parametrize("text", [
    "name: [unclosed\n",
    "- just\n- a list\n",
    "connection_type: carrier_pigeon\n",
    "duplicate_behavior: shrug\n",
    "rate_limit:\n  max_requests: 0\n",
    "rate_limit: 10\n",
    "concurrency_limit: many\n",
    "response_limit:\n  max_size: -1\n",
])
def test_invalid_config(config_file, text):
    with pytest.raises(ConfigurationError):
        load_config(config_file(text))


@pytest.mark.asyncio
async def test_build_app_installs_middleware(config_file):
    config = load_config(config_file(
        "name: limited\n"
        "version: 2.0\n"
        "rate_limit:\n"
        "  max_requests: 1\n"
        "response_limit:\n"
        "  max_size: 20\n"
    ))
    app = build_app_from_config(config)
    assert app.name == "limited"
    assert app.version == "2.0"

    @app.tool()
    def shout(args):
        return "a" * 100

    result = await app.server.handle("tools/call", {"name": "shout"})
    assert result["content"][0]["text"].endswith("... [truncated]")

    blocked = await app.server.handle("tools/call", {"name": "shout"})
    assert blocked["error"]["code"] == -32000


def test_create_protocol(config_file):
    app = build_app_from_config(load_config(config_file("")))
    assert isinstance(create_protocol(app, {"connection_type": "stdio"}), StdioProtocol)
    assert isinstance(create_protocol(app, {"connection_type": "streamable_http", "http": {}}),
                      StreamableHTTPProtocol)


class TestLogging:

    def test_mask_sensitive_data(self):
        assert mask_sensitive_data("login password=hunter2 ok") == "login password=******** ok"
        assert mask_sensitive_data({"api_key": "abc", "user": "bob", "nested": {"token": "t"}}) == {
            "api_key": "********", "user": "bob", "nested": {"token": "********"},
        }
        assert mask_sensitive_data(["secret: s3cr3t"]) == ["secret: ********"]
        assert mask_sensitive_data(42) == 42

    def test_filter_masks_record(self):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "auth %s", ("password=x",), None)
        assert SensitiveDataFilter().filter(record)
        assert record.args == ("password=********",)

    def test_setup_logging_uses_stderr(self, restore_root_logger):
        setup_logging("DEBUG", protocol="stdio")
        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert handler.stream is sys.stderr
        assert any(isinstance(f, SensitiveDataFilter) for f in handler.filters)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_setup_logging_from_config(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "server.log"
        setup_logging_from_config({
            "level": "DEBUG",
            "handlers": [
                {"type": "StreamHandler", "level": "WARNING"},
                {"type": "FileHandler", "filename": str(log_file)},
                {"type": "SyslogHandler"},
            ],
        })
        root = restore_root_logger
        assert len(root.handlers) == 2
        logging.getLogger("forge_mcp.test").info("token=abc123 stored")
        for handler in root.handlers:
            handler.flush()
        assert "token=********" in log_file.read_text()
