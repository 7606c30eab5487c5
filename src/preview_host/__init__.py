"""Preview host: local previews and external deployments for submitted web projects."""

__version__ = "0.1.0"
