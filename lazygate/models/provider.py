from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_PRECISION = "Q6_K"


class TiebreakStrategy(str, Enum):
    """
    How to choose among quantized candidates sharing the maximum score.
    """

    RANDOM = "random"
    POPULAR = "popular"


class QuantizationConfig(BaseModel):
    """
    Preference weights used to score quantized candidates for a local provider.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    precision: str = Field(
        default=DEFAULT_PRECISION,
        description="Target quantization level, e.g. Q4_K_M",
        min_length=1,
    )
    prefer_correct_precision: int = Field(
        default=100, description="Score added when the file matches `precision`", ge=0
    )
    prefer_imatrix: int = Field(
        default=10, description="Score added when the repository ships an imatrix", ge=0
    )
    prefer_same_owner: int = Field(
        default=1,
        description="Score added when the repository owner matches the base model's owner",
        ge=0,
    )
    tiebreak_strategy: TiebreakStrategy = Field(
        default=TiebreakStrategy.RANDOM,
        description="random: uniform among best; popular: most downloaded repository",
    )


class _ProviderBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key: Optional[str] = Field(None, description="API key sent as a Bearer token")
    headers: Dict[str, str] = Field(
        default_factory=dict, description="Extra headers sent with every forwarded request"
    )
    body: Dict[str, Any] = Field(
        default_factory=dict,
        description="Fixed body fields deep-merged over every forwarded request",
    )

    @field_validator("api_base", check_fields=False)
    @classmethod
    def _check_api_base(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_base must be an http(s) URL")
        return value.rstrip("/")


class RemoteListingProvider(_ProviderBase):
    """
    An OpenAI-compatible upstream whose `/models` listing is searched during discovery.
    """

    discovery_type: Literal["remote"]
    api_base: str = Field(..., description="OpenAI-style base URL including the /v1 prefix")


class LocalQuantizedProvider(_ProviderBase):
    """
    A provider that downloads quantized weights from the hub and spawns a
    local inference binary to serve them.
    """

    discovery_type: Literal["local"]
    api_base: Optional[str] = Field(
        None, description="Unused for routing; local backends publish their own address"
    )
    binary_path: str = Field(..., description="Path to the inference server binary", min_length=1)
    args: List[str] = Field(
        default_factory=list,
        description="Fixed flags passed before --port/--model",
    )
    quantization: QuantizationConfig = Field(default_factory=QuantizationConfig)


Provider = Annotated[
    Union[RemoteListingProvider, LocalQuantizedProvider],
    Field(discriminator="discovery_type"),
]


class GlobalConfig(BaseModel):
    """
    Provider name -> provider definition, in declaration order.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    providers: Dict[str, Provider] = Field(default_factory=dict)


__all__ = [
    "DEFAULT_PRECISION",
    "GlobalConfig",
    "LocalQuantizedProvider",
    "Provider",
    "QuantizationConfig",
    "RemoteListingProvider",
    "TiebreakStrategy",
]
