"""svcguard: service health-monitoring and recovery daemon."""

__version__ = "1.0.0"
