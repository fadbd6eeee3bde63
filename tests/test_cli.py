"""Tests for the sshproxy CLI"""

from unittest.mock import patch

import yaml
from click.testing import CliRunner

from sshproxy.cli import cli
from sshproxy.errors import BindFailure


def _write_config(tmp_path, data):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestShowConfig:
    def test_defaults(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ["show-config", "--config", str(tmp_path / "missing.yml")])

        assert result.exit_code == 0
        assert "netconf" in result.output
        assert "1800" in result.output
        assert "same as idle_timeout" in result.output
        assert "(none)" in result.output

    def test_values_from_file(self, tmp_path):
        path = _write_config(
            tmp_path,
            {"backend": {"host": "127.0.0.1", "port": 12831}, "users": {"admin": "secret"}},
        )

        runner = CliRunner()
        result = runner.invoke(cli, ["show-config", "--config", str(path)])

        assert result.exit_code == 0
        assert "12831" in result.output
        assert "admin" in result.output
        assert "secret" not in result.output


class TestGenkey:
    def test_creates_key(self, tmp_path):
        key_path = tmp_path / "host_key"

        runner = CliRunner()
        result = runner.invoke(
            cli,
            ["genkey", "--config", str(tmp_path / "missing.yml"), "--path", str(key_path)],
        )

        assert result.exit_code == 0
        assert "Created" in result.output
        assert key_path.exists()
        assert (key_path.stat().st_mode & 0o777) == 0o600

    def test_existing_key_kept(self, tmp_path):
        key_path = tmp_path / "host_key"
        key_path.write_text("existing")

        runner = CliRunner()
        result = runner.invoke(
            cli,
            ["genkey", "--config", str(tmp_path / "missing.yml"), "--path", str(key_path)],
        )

        assert result.exit_code == 0
        assert "already exists" in result.output
        assert key_path.read_text() == "existing"


@patch("sshproxy.cli.get_daemon_logger")
class TestServe:
    def test_invalid_config_exits_2(self, mock_logging, tmp_path):
        path = _write_config(tmp_path, {"idle_timeout": -1})

        runner = CliRunner()
        result = runner.invoke(cli, ["serve", "--config", str(path)])

        assert result.exit_code == 2

    @patch("sshproxy.cli.signal")
    @patch("sshproxy.cli.ProxyServer")
    def test_bind_failure_exits_1(self, mock_server_cls, mock_signal, mock_logging, tmp_path):
        path = _write_config(tmp_path, {"host_key": {"path": str(tmp_path / "host_key")}})
        mock_server_cls.return_value.bind.side_effect = BindFailure("Address already in use")

        runner = CliRunner()
        result = runner.invoke(cli, ["serve", "--config", str(path)])

        assert result.exit_code == 1
        mock_server_cls.return_value.close.assert_called_once()

    @patch("sshproxy.cli.signal")
    @patch("sshproxy.cli.ProxyServer")
    def test_signal_stops_server(self, mock_server_cls, mock_signal, mock_logging, tmp_path):
        path = _write_config(
            tmp_path,
            {"host_key": {"path": str(tmp_path / "host_key")}, "thread_pool": {"workers": 3}},
        )
        # Deliver the signal as soon as the handler is installed
        mock_signal.signal.side_effect = lambda signum, handler: handler(signum, None)

        runner = CliRunner()
        result = runner.invoke(cli, ["serve", "--config", str(path)])

        assert result.exit_code == 0
        server = mock_server_cls.return_value
        server.bind.assert_called_once()
        server.close.assert_called_once()

        executor = mock_server_cls.call_args[0][0]
        assert executor._max_workers == 3
        assert executor._shutdown
