from .contract import (
    REQUIRED_ENTITY_METHODS,
    REQUIRED_GATEWAY_METHODS,
    AdapterGateway,
    EntityStore,
    GatewayError,
    GatewayResponse,
    unwrap,
    verify_entity_store,
    verify_gateway,
)
from .memory import InMemoryAdapterGateway, InMemoryEntityStore
from .retry import NO_RETRY, RetryPolicy, call_with_retry
from .sqlite import SqliteAdapterGateway, SqliteEntityStore

__all__ = [
    "REQUIRED_ENTITY_METHODS",
    "REQUIRED_GATEWAY_METHODS",
    "AdapterGateway",
    "EntityStore",
    "GatewayError",
    "GatewayResponse",
    "InMemoryAdapterGateway",
    "InMemoryEntityStore",
    "NO_RETRY",
    "RetryPolicy",
    "SqliteAdapterGateway",
    "SqliteEntityStore",
    "call_with_retry",
    "unwrap",
    "verify_entity_store",
    "verify_gateway",
]
