from .tracker import ConnectionHealth, HealthConfig, HealthStatus, HealthTracker

__all__ = ["ConnectionHealth", "HealthConfig", "HealthStatus", "HealthTracker"]
