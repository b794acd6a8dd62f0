"""Tests for the command-line interface."""

from __future__ import annotations

import logging

import pytest
from typer.testing import CliRunner

from imcache import cli
from imcache.errors import TransportUnavailableError
from imcache.invalidation import InvalidationMessage

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


class TestPublishCommand:
    """Test `imcache publish`."""

    def test_publish_plain(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sent: list[tuple[str, InvalidationMessage]] = []

        async def fake_publish(address: str, message: InvalidationMessage) -> int:
            sent.append((address, message))
            return 3

        monkeypatch.setattr(cli, "_publish", fake_publish)
        result = runner.invoke(cli.app, ["publish", "redis://h:6379/0#users", "user:1"])

        assert result.exit_code == 0, result.output
        assert "Published" in result.output
        assert sent == [("redis://h:6379/0#users", InvalidationMessage.plain("user:1"))]

    def test_publish_pattern(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sent: list[InvalidationMessage] = []

        async def fake_publish(address: str, message: InvalidationMessage) -> int:
            sent.append(message)
            return 0

        monkeypatch.setattr(cli, "_publish", fake_publish)
        result = runner.invoke(cli.app, ["publish", "redis://h", "^user:", "--pattern"])

        assert result.exit_code == 0, result.output
        assert sent == [InvalidationMessage.pattern("^user:")]

    def test_publish_channel_only_address(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A bare #channel address is passed through for REDIS_URL resolution."""
        sent: list[str] = []

        async def fake_publish(address: str, message: InvalidationMessage) -> int:
            sent.append(address)
            return 1

        monkeypatch.setattr(cli, "_publish", fake_publish)
        result = runner.invoke(cli.app, ["publish", "#users", "user:1"])

        assert result.exit_code == 0, result.output
        assert sent == ["#users"]

    def test_invalid_pattern(self) -> None:
        result = runner.invoke(cli.app, ["publish", "redis://h", "(", "--pattern"])
        assert result.exit_code == 2

    def test_transport_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_publish(address: str, message: InvalidationMessage) -> int:
            raise TransportUnavailableError(address, "refused")

        monkeypatch.setattr(cli, "_publish", fake_publish)
        result = runner.invoke(cli.app, ["publish", "redis://h", "k"])
        assert result.exit_code == 1


class TestDecodeCommand:
    """Test `imcache decode`."""

    def test_decode(self) -> None:
        result = runner.invoke(cli.app, ["decode", '{"selectorKind": "plain", "selector": "k"}'])
        assert result.exit_code == 0
        assert "plain: k" in result.output

    def test_decode_malformed(self) -> None:
        result = runner.invoke(cli.app, ["decode", "nope"])
        assert result.exit_code == 1
