"""Infrastructure modules for the P2P desk engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .events import EventBus  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .locks import KeyedLockTable  # noqa: F401
from .metrics import MetricsRecorder, TaskStats  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"EventBus",
	"HealthServer",
	"KeyedLockTable",
	"MetricsRecorder",
	"TaskStats",
	"RateLimiter",
]
