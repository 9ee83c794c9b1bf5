"""Unit tests for configuration and settings."""
from roombook.config import Settings, get_settings


class TestSettings:
    def test_get_settings_returns_same_instance(self):
        assert get_settings() is get_settings()

    def test_jwt_configuration(self):
        settings = get_settings()

        assert settings.jwt_secret
        assert settings.jwt_algorithm == "HS256"
        assert settings.access_token_expire_minutes > 0

    def test_booking_policy_defaults(self):
        settings = Settings()

        assert settings.booking_threshold == 3
        assert settings.max_booking_hours == 8
        assert settings.schedule_open_hour < settings.schedule_close_hour
        assert settings.max_failed_logins == 5

    def test_feedback_limits(self):
        settings = Settings()

        assert settings.feedback_daily_limit == 5
        assert settings.feedback_min_interval_seconds == 60
        assert settings.feedback_escalation_hours == 72

    def test_account_token_defaults(self):
        settings = Settings()

        assert settings.require_activation is False
        assert settings.reset_token_expire_minutes < settings.activation_token_expire_minutes

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BOOKING_THRESHOLD", "5")
        monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")

        settings = Settings()

        assert settings.booking_threshold == 5
        assert settings.notifications_enabled is True

    def test_service_ports_configuration(self):
        settings = get_settings()

        assert settings.users_service_port == 8001
        assert settings.rooms_service_port == 8002
        assert settings.bookings_service_port == 8003
        assert settings.feedback_service_port == 8004
        assert settings.announcements_service_port == 8005

    def test_tests_run_without_rate_limits(self):
        assert get_settings().rate_limiting_enabled is False
