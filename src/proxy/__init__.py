"""
Market-data proxy core
Rate limiting, coalescing and the fallback chain in front of the providers.
"""

from .config import ProxyConfig, ProviderLimits, RouteConfig, load_config
from .coordinator import RequestCoordinator
from .fallback import FallbackPolicy, ResolutionState, merge_primary_first
from .rate_limiter import Admission, RateLimiter, backoff_delay
from .response import ProxyResponse

__all__ = [
    'Admission',
    'FallbackPolicy',
    'ProviderLimits',
    'ProxyConfig',
    'ProxyResponse',
    'RateLimiter',
    'RequestCoordinator',
    'ResolutionState',
    'RouteConfig',
    'backoff_delay',
    'load_config',
    'merge_primary_first',
]
