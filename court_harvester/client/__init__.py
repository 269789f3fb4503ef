# Search client module
from court_harvester.client.backoff import RetryPolicy
from court_harvester.client.gateway import GatewayStats, RequestGateway
from court_harvester.client.rate_limiter import RateLimiter

__all__ = ["GatewayStats", "RateLimiter", "RequestGateway", "RetryPolicy"]
