"""Pydantic models validating download configuration files."""

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ServiceEntry(BaseModel):
    """Custom map service added to (or overriding) the built-in registry."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    base_url: str = Field(pattern=r"^https?://")
    kind: Literal["wms", "rest"] = "wms"
    path: str = ""
    display_name: str = ""
    response_delay_seconds: int = Field(default=600, ge=0)
    min_polling_period_seconds: int = Field(default=300, gt=0)
    prefer_current_time: bool = False
    raster_crs: str | None = None
    description: str = ""


class ProductEntry(BaseModel):
    """Product to download."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    legend: bool = True


class DownloadConfiguration(BaseModel):
    """Top level of a download configuration file."""

    model_config = ConfigDict(extra="forbid")

    service: str = Field(min_length=1)
    products: list[Union[str, ProductEntry]] = Field(min_length=1)
    services: list[ServiceEntry] = Field(default_factory=list)
    image_size: int = Field(default=1024, ge=2, le=8192)
    output_dir: str = "output"
    attribution: str | None = None
