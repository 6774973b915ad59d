"""Channel adapters for outbound check-in delivery."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    hash_address,
)
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "hash_address", "EmailAdapter", "SMSAdapter",
    "build_registry",
]


async def build_registry(channel_configs: dict) -> ChannelRegistry:
    """Register the email and SMS adapters and initialize them from config."""
    registry = ChannelRegistry()
    registry.register(EmailAdapter())
    registry.register(SMSAdapter())
    await registry.initialize_all(channel_configs)
    return registry
