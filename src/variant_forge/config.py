from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    data_dir: str = "data"
    log_level: str = "info"

    # Shopify Admin API
    shopify_shop_domain: str | None = None
    shopify_access_token: str | None = None
    shopify_api_version: str = "2024-10"

    # Where a variant gets bound to its template.
    metafield_namespace: str = "custom_designer"
    metafield_key: str = "template_id"

    # Source product (carries the base photographs) -> selling product (customer-facing)
    product_mappings: dict[str, str] = {
        "gid://shopify/Product/9797597331751": "gid://shopify/Product/9852686237991",
    }

    # Pipeline
    batch_size: int = 5
    remote_timeout_seconds: float = 20.0
    image_timeout_seconds: float = 15.0
    auto_process_thumbnails: bool = True
    job_retention_days: int = 7

    # Assets
    asset_base_url: str = "/assets"
    public_dir: str = "public"

    # Rendering
    thumbnail_max_side: int = 512
    render_max_pixels: int = 64_000_000
    font_dirs: list[str] = [
        "assets/fonts",
        "/usr/share/fonts/truetype/dejavu",
        "/usr/share/fonts/truetype",
        "/Library/Fonts",
        "/System/Library/Fonts/Supplemental",
    ]


settings = Settings()
