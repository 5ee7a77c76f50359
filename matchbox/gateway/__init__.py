"""
Backend gateways for matchbox.
The stores only ever talk to a BaseGateway; which one is chosen by
gateway.type in config.yaml.
"""
from matchbox.gateway.base import BaseGateway, GatewayError, SubscriptionError
from matchbox.gateway.http import HttpGateway
from matchbox.gateway.memory import MemoryGateway

# gateway.type -> gateway class
PROVIDERS: dict[str, type[BaseGateway]] = {
    "http": HttpGateway,
    "memory": MemoryGateway,
}


def make_gateway(cfg: dict) -> BaseGateway:
    """Instantiate the gateway described by the `gateway` config section."""
    gateway_type = cfg.get("type", "memory")
    cls = PROVIDERS.get(gateway_type)
    if cls is None:
        available = ", ".join(PROVIDERS)
        raise ValueError(f"Unknown gateway type: '{gateway_type}'. Available: {available}")
    kwargs = {k: v for k, v in cfg.items() if k != "type"}
    return cls(**kwargs)


__all__ = [
    "BaseGateway",
    "GatewayError",
    "HttpGateway",
    "MemoryGateway",
    "SubscriptionError",
    "make_gateway",
]
