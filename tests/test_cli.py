"""
CLI unit tests
"""

import click
import pytest
from click.testing import CliRunner

from eventsource import AsyncEventSource, ErrorEvent, MessageEvent
from eventsource import cli as cli_module
from eventsource.cli import _build_options, _format_error, _format_event, _parse_headers, cli

from .conftest import STREAM_URL, FakeTransport, Reply


# ============================================================================
# Helpers
# ============================================================================


class TestParseHeaders:
    def test_name_value_pairs(self):
        assert _parse_headers(("Authorization: Bearer x", "X-Empty:")) == {
            "Authorization": "Bearer x",
            "X-Empty": "",
        }

    def test_value_may_contain_colons(self):
        assert _parse_headers(("X-Time: 12:30",)) == {"X-Time": "12:30"}

    @pytest.mark.parametrize("raw", ["no-colon", ": value"])
    def test_malformed(self, raw):
        with pytest.raises(click.BadParameter) as exc_info:
            _parse_headers((raw,))
        assert "Name: value" in exc_info.value.format_message()


class TestBuildOptions:
    def test_flags_override_config(self):
        cfg = {
            "default": {"reconnect_interval": "3000", "with_credentials": "true"},
            "headers": {"Authorization": "Bearer from-config", "X-A": "1"},
        }
        options = _build_options(cfg, {"Authorization": "Bearer flag"}, "17", None, False)
        assert options.headers == {"Authorization": "Bearer flag", "X-A": "1", "Last-Event-ID": "17"}
        assert options.reconnect_interval == 3000
        assert options.with_credentials is True
        assert options.transport_options == {}

    def test_defaults(self):
        options = _build_options({}, {}, None, 250, True)
        assert options.headers == {}
        assert options.reconnect_interval == 250
        assert options.with_credentials is False
        assert options.transport_options == {"verify": False}

    @pytest.mark.parametrize("raw", ["soon", "-5", ""])
    def test_bad_config_interval(self, raw):
        with pytest.raises(click.BadParameter) as exc_info:
            _build_options({"default": {"reconnect_interval": raw}}, {}, None, None, False)
        assert "default.reconnect_interval" in exc_info.value.format_message()

    def test_retry_flag_wins_over_bad_config(self):
        options = _build_options({"default": {"reconnect_interval": "soon"}}, {}, None, 10, False)
        assert options.reconnect_interval == 10


class TestFormatting:
    def test_message_text(self):
        event = MessageEvent(type="tick", data="a\nb", last_event_id="5")
        assert _format_event(event, as_json=False) == "[tick] id=5 a\nb"

    def test_message_json(self):
        event = MessageEvent(type="message", data="x", origin="http://h")
        assert _format_event(event, as_json=True) == (
            '{"type": "message", "data": "x", "last_event_id": "", "origin": "http://h"}'
        )

    def test_error(self):
        assert _format_error(ErrorEvent()) == "error"
        assert _format_error(ErrorEvent(status=503, message="Service Unavailable")) == "error: 503: Service Unavailable"


# ============================================================================
# Commands
# ============================================================================


class TestConfigCommands:
    def test_show_without_file(self, config_file):
        result = CliRunner().invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        assert "No config file found" in result.output

    def test_set_then_show(self, config_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["config", "set", "headers.Authorization", "Bearer abc"])
        assert result.exit_code == 0
        assert config_file.exists()

        runner.invoke(cli, ["config", "set", "default.reconnect_interval", "2500"])
        cfg = cli_module._load_config()
        assert cfg == {"headers": {"Authorization": "Bearer abc"}, "default": {"reconnect_interval": "2500"}}

        result = runner.invoke(cli, ["config", "show"])
        assert "Bearer abc" in result.output


class TestListen:
    def test_prints_events_until_server_closes(self, config_file, monkeypatch):
        transport = FakeTransport(
            Reply(chunks=[b"data: hi\n\nevent: tick\ndata: 1\n\nevent: other\ndata: skip\n\n"]),
            Reply(status=404, reason="Not Found"),
        )
        seen_options = []

        def make_source(url, options):
            seen_options.append(options)
            return AsyncEventSource(url, options, transport=transport)

        monkeypatch.setattr(cli_module, "AsyncEventSource", make_source)
        result = CliRunner().invoke(
            cli, ["listen", STREAM_URL, "-e", "tick", "--retry", "0", "-H", "X-Token: t"]
        )

        assert result.exit_code == 1
        assert "[message] hi" in result.output
        assert "[tick] 1" in result.output
        assert "skip" not in result.output
        assert "error: 404: Not Found" in result.output
        assert seen_options[0].headers == {"X-Token": "t"}
        assert transport.urls == [STREAM_URL, STREAM_URL]

    def test_bad_config_interval_is_usage_error(self, config_file):
        runner = CliRunner()
        runner.invoke(cli, ["config", "set", "default.reconnect_interval", "soon"])
        result = runner.invoke(cli, ["listen", STREAM_URL])
        assert result.exit_code == 2
        assert "expected non-negative milliseconds" in result.output

    def test_bad_header_is_usage_error(self, config_file):
        result = CliRunner().invoke(cli, ["listen", STREAM_URL, "-H", "broken"])
        assert result.exit_code == 2
