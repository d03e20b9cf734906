from .settings import Settings, settings
from .feature_flags import FeatureFlags, feature_flags

__all__ = ["Settings", "settings", "FeatureFlags", "feature_flags"]
