"""Infrastructure modules for coinsim"""

from .cache import TTLCache  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"TTLCache",
	"MetricsRecorder",
	"CycleStats",
	"RateLimiter",
	"StateStore",
]
