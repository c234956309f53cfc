"""Tests for CLI commands"""

from unittest.mock import Mock, patch

import pytest
from typer.testing import CliRunner

from voice_cli.client.base import VoiceAPIError
from voice_cli.main import app


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


def make_client(**methods) -> Mock:
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    for name, value in methods.items():
        setattr(client, name, value)
    return client


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "Voice Conversion CLI" in result.stdout

    @patch("voice_cli.main.VoiceAPIClient")
    def test_status_success(self, mock_client_class, runner):
        mock_client_class.return_value = make_client(
            health_check=Mock(
                return_value={
                    "ok": True,
                    "version": "1.0.0",
                    "environment": "development",
                    "database": {"connected": True},
                    "backlog": {"pending_conversions": 3, "pending_deliveries": 1},
                    "processors": [
                        {"name": "conversion_processor", "status": "healthy", "total_processed": 7}
                    ],
                }
            )
        )

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Healthy" in result.stdout
        assert "Processors" in result.stdout

    @patch("voice_cli.main.VoiceAPIClient")
    def test_status_failure(self, mock_client_class, runner):
        mock_client_class.return_value = make_client(
            health_check=Mock(side_effect=VoiceAPIError("Connection failed"))
        )

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestWebhookCommands:
    @patch("voice_cli.commands.webhooks.VoiceAPIClient")
    def test_list_warns_about_disabled(self, mock_client_class, runner):
        mock_client_class.return_value = make_client(
            list_subscriptions=Mock(
                return_value=[
                    {
                        "id": "3f0c2a8e-1111-2222-3333-444455556666",
                        "url": "https://hooks.example.com/voice",
                        "events": ["conversion.completed"],
                        "is_active": False,
                        "consecutive_failures": 10,
                    }
                ]
            )
        )

        result = runner.invoke(app, ["webhooks", "list"])

        assert result.exit_code == 0
        assert "3f0c2a8e" in result.stdout
        assert "disabled" in result.stdout

    @patch("voice_cli.commands.webhooks.VoiceAPIClient")
    def test_reactivate_sends_is_active(self, mock_client_class, runner):
        client = make_client(update_subscription=Mock(return_value={"id": "abc"}))
        mock_client_class.return_value = client

        result = runner.invoke(app, ["webhooks", "reactivate", "abc"])

        assert result.exit_code == 0
        client.update_subscription.assert_called_once_with("abc", is_active=True)

    @patch("voice_cli.commands.webhooks.VoiceAPIClient")
    def test_deliveries_error_exits_nonzero(self, mock_client_class, runner):
        mock_client_class.return_value = make_client(
            list_deliveries=Mock(side_effect=VoiceAPIError("API Error 404: not found"))
        )

        result = runner.invoke(app, ["webhooks", "deliveries", "abc"])

        assert result.exit_code == 1


class TestConversionCommands:
    @patch("voice_cli.commands.conversions.VoiceAPIClient")
    def test_show_conversion(self, mock_client_class, runner):
        mock_client_class.return_value = make_client(
            get_conversion=Mock(
                return_value={
                    "id": "c-1",
                    "status": "failed",
                    "pitch_shift": "fifth_up",
                    "use_preview": False,
                    "retry_count": 5,
                    "created_at": "2025-06-01T12:00:00Z",
                    "error_message": "Max retry attempts (5) exceeded",
                }
            )
        )

        result = runner.invoke(app, ["conversions", "show", "c-1"])

        assert result.exit_code == 0
        assert "Max retry attempts" in result.stdout
