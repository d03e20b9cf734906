"""
Feature flags for the match payment service.

Read once from the environment at import time (a local .env is loaded
first). Tests flip them with monkeypatch on the `feature_flags` instance.
"""
import os

from dotenv import load_dotenv

load_dotenv()

TRUTHY = ('true', '1', 'yes', 'on', 'enabled')


def get_bool_env(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).strip().lower() in TRUTHY


class FeatureFlags:
    """Switches for the HTTP surface, the background sweep and the outbound adapters."""

    # /api/match-payments router; when off every endpoint answers 403
    FEATURE_MATCH_PAYMENTS: bool = get_bool_env('FEATURE_MATCH_PAYMENTS', True)

    # Reminder / window-expiry / settlement sweep started by the lifespan
    FEATURE_REMINDER_SWEEP: bool = get_bool_env('FEATURE_REMINDER_SWEEP', True)

    # httpx adapters instead of the in-process ones
    FEATURE_HTTP_PAYMENT_CAPTURE: bool = get_bool_env('FEATURE_HTTP_PAYMENT_CAPTURE', False)
    FEATURE_WEBHOOK_NOTIFICATIONS: bool = get_bool_env('FEATURE_WEBHOOK_NOTIFICATIONS', False)

    def is_enabled(self, flag_name: str) -> bool:
        return bool(getattr(self, flag_name, False))

    def get_all_flags(self) -> dict:
        """Current value of every FEATURE_* flag, including per-instance overrides."""
        return {
            name: self.is_enabled(name)
            for name in dir(type(self))
            if name.startswith('FEATURE_')
        }


feature_flags = FeatureFlags()
