from .alerts import Alert, AlertLevel, AlertType, WebhookAlerter, WebhookConfig
from .coordinator import (
    AlreadyInFlight,
    AttemptState,
    CoordinatorConfig,
    ExecutionAttempt,
    ExecutionCoordinator,
    ExecutionDisabled,
    ExecutionRejected,
    ExecutionResult,
    IncidentActive,
    InvalidTransition,
)
from .metrics import MetricsRegistry, MetricsServer
from .recovery import (
    FailureCategory,
    FailureClassifier,
    IncidentLatch,
    ReplayProtection,
    RetryPolicy,
)

__all__ = [
    "ExecutionCoordinator",
    "CoordinatorConfig",
    "AttemptState",
    "ExecutionAttempt",
    "ExecutionResult",
    "ExecutionRejected",
    "ExecutionDisabled",
    "IncidentActive",
    "AlreadyInFlight",
    "InvalidTransition",
    "FailureClassifier",
    "FailureCategory",
    "RetryPolicy",
    "ReplayProtection",
    "IncidentLatch",
    "WebhookAlerter",
    "WebhookConfig",
    "Alert",
    "AlertLevel",
    "AlertType",
    "MetricsRegistry",
    "MetricsServer",
]
