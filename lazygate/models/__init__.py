from .provider import (
    DEFAULT_PRECISION,
    GlobalConfig,
    LocalQuantizedProvider,
    Provider,
    QuantizationConfig,
    RemoteListingProvider,
    TiebreakStrategy,
)
from .route import ModelRoute, ResolvedConfig

__all__ = [
    "DEFAULT_PRECISION",
    "GlobalConfig",
    "LocalQuantizedProvider",
    "ModelRoute",
    "Provider",
    "QuantizationConfig",
    "RemoteListingProvider",
    "ResolvedConfig",
    "TiebreakStrategy",
]
