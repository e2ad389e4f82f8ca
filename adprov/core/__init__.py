"""Core domain models, settings, logging configuration, and shared utilities."""

from adprov.core.config import ComputeConfig, PollTimings, SubscriptionConfig
from adprov.core.exceptions import (
    AdprovError,
    ConfigError,
    FatalConfigurationError,
    NotFoundError,
    ProvisioningError,
    RemoteCallError,
    ResponseDeliveryError,
    RetriesExhaustedError,
    TransientRemoteError,
)
from adprov.core.logging_config import JsonFormatter, configure_logging
from adprov.core.models import (
    ErrorKind,
    PollOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    RemoteStatus,
    RequestType,
    SubscriptionStatus,
)
from adprov.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Envelope and enumerations
    "RequestType",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ErrorKind",
    "RemoteStatus",
    "PollOutcome",
    "SubscriptionStatus",
    # Configuration
    "Settings",
    "ComputeConfig",
    "PollTimings",
    "SubscriptionConfig",
    # Exceptions
    "AdprovError",
    "ConfigError",
    "FatalConfigurationError",
    "ProvisioningError",
    "RemoteCallError",
    "NotFoundError",
    "TransientRemoteError",
    "RetriesExhaustedError",
    "ResponseDeliveryError",
]
