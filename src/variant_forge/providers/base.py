from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class PlatformVariant:
    variant_id: str
    title: str
    image_url: str | None
    # Option name -> value, as the platform reports them ("Color" -> "Light Blue").
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MetafieldWrite:
    owner_id: str
    namespace: str
    key: str
    value: str
    type: str = "single_line_text_field"


class CommercePlatform(Protocol):
    name: str

    async def list_product_variants(self, product_id: str) -> list[PlatformVariant]: ...

    async def get_variant(self, variant_id: str) -> PlatformVariant | None: ...

    async def set_metafield(self, write: MetafieldWrite) -> None: ...


class AssetStore(Protocol):
    def upload(self, content: bytes, content_type: str, key: str | None = None) -> str: ...
