"""Infrastructure modules for clmm-keeper"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .instance_lock import SingleInstanceLock  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"HealthServer",
	"SingleInstanceLock",
]
