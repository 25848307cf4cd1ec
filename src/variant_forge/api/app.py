from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, Literal, Union

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from variant_forge.assembly.render import collect_image_urls, fetch_images, render_scene
from variant_forge.config import settings
from variant_forge.errors import (
    InvalidTransition,
    JobNotFound,
    RemoteCallError,
    RenderError,
    TemplateNotFound,
    ValidationError,
)
from variant_forge.jobs import JobStore, JobType
from variant_forge.pipeline import ImageFetcher, VariantPipeline
from variant_forge.providers.asset_store import LocalAssetStore
from variant_forge.providers.base import CommercePlatform
from variant_forge.providers.shopify_provider import ShopifyProvider
from variant_forge.scene.arc import arc_layout, estimate_text_length, move_to_center, resize_radius, toggle_flip
from variant_forge.scene.model import (
    CurvedTextElement,
    apply_text_updates,
    dumps_scene,
    ensure_same_dimensions,
    parse_scene,
)
from variant_forge.scene.palette import Palette
from variant_forge.storage import PaletteStore, Template, TemplateStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="variant_forge")


@lru_cache
def get_templates() -> TemplateStore:
    return TemplateStore()


@lru_cache
def get_palettes() -> PaletteStore:
    return PaletteStore()


@lru_cache
def get_jobs() -> JobStore:
    return JobStore()


@lru_cache
def get_assets() -> LocalAssetStore:
    return LocalAssetStore()


def get_image_fetcher() -> ImageFetcher:
    return fetch_images


def get_platform() -> CommercePlatform:
    if not settings.shopify_shop_domain or not settings.shopify_access_token:
        raise HTTPException(status_code=400, detail="SHOPIFY_SHOP_DOMAIN / SHOPIFY_ACCESS_TOKEN are not set")
    return ShopifyProvider(shop_domain=settings.shopify_shop_domain, access_token=settings.shopify_access_token)


def get_pipeline(
    platform: CommercePlatform = Depends(get_platform),
    templates: TemplateStore = Depends(get_templates),
    palettes: PaletteStore = Depends(get_palettes),
    jobs: JobStore = Depends(get_jobs),
    assets: LocalAssetStore = Depends(get_assets),
    image_fetcher: ImageFetcher = Depends(get_image_fetcher),
) -> VariantPipeline:
    return VariantPipeline(
        platform=platform, templates=templates, palettes=palettes, jobs=jobs, assets=assets, image_fetcher=image_fetcher
    )


def get_shop(x_shop_domain: str = Header(...)) -> str:
    shop = x_shop_domain.strip().lower()
    if not shop:
        raise HTTPException(status_code=400, detail="X-Shop-Domain header is empty")
    return shop


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc) or type(exc).__name__})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(400, exc)


@app.exception_handler(TemplateNotFound)
async def _template_not_found(request: Request, exc: TemplateNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"template {exc} not found"})


@app.exception_handler(JobNotFound)
async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"job {exc} not found"})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return _error(409, exc)


@app.exception_handler(RemoteCallError)
async def _remote_call_error(request: Request, exc: RemoteCallError) -> JSONResponse:
    return _error(502, exc)


@app.exception_handler(RenderError)
async def _render_error(request: Request, exc: RenderError) -> JSONResponse:
    return _error(500, exc)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


SceneInput = Union[str, dict[str, Any]]


class PaletteIn(_Body):
    color1: str
    color2: str
    color3: str
    color4: str | None = None
    color5: str | None = None


class TemplateIn(_Body):
    name: str
    canvas_data: SceneInput
    front_canvas_data: SceneInput | None = None
    back_canvas_data: SceneInput | None = None
    color_variant: str | None = None
    pattern: str = ""
    shopify_product_id: str | None = None
    shopify_variant_id: str | None = None


class CanvasUpdate(_Body):
    side: Literal["default", "front", "back"] = "default"
    canvas_data: SceneInput


class GenerateRequest(_Body):
    regenerate: bool = False
    # Run in the request instead of a background task.
    wait: bool = False


class ArcRequest(_Body):
    text: str = ""
    font_size: float = 20
    radius: float = Field(100, gt=0)
    flipped: bool = False
    top_y: float = 0
    x: float = 0
    # Where a drag left the group origin (the circle centre).
    center_y: float | None = None
    new_radius: float | None = Field(None, gt=0)
    toggle_flip: bool = False


class RenderRequest(_Body):
    canvas_data: SceneInput
    scale: float = Field(1.0, gt=0, le=4)


class SwatchRequest(_Body):
    variant_id: str
    text_updates: dict[str, str] = Field(default_factory=dict)
    side: Literal["front", "back"] = "front"
    scale: float = Field(1.0, gt=0, le=4)


def _require_template(templates: TemplateStore, template_id: str, shop: str) -> Template:
    template = templates.get_template(template_id, shop)
    if template is None:
        raise TemplateNotFound(template_id)
    return template


def _canonical(raw: SceneInput | None) -> str | None:
    if raw is None:
        return None
    return dumps_scene(parse_scene(raw))


@app.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/palettes")
def list_palettes(palettes: PaletteStore = Depends(get_palettes)) -> dict[str, Any]:
    return {"palettes": [p.to_dict() for p in palettes.all().values()]}


@app.put("/palettes/{chip}")
def put_palette(
    chip: str,
    body: PaletteIn,
    palettes: PaletteStore = Depends(get_palettes),
) -> dict[str, Any]:
    # Chip palettes are shared by every shop.
    palette = palettes.upsert(Palette(chip, body.color1, body.color2, body.color3, body.color4, body.color5))
    logger.info("palette %s updated", chip)
    return palette.to_dict()


@app.post("/templates", status_code=201)
def create_template(
    body: TemplateIn,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
) -> dict[str, Any]:
    template = templates.create_template(
        shop,
        body.name,
        _canonical(body.canvas_data),
        front_canvas_data=_canonical(body.front_canvas_data),
        back_canvas_data=_canonical(body.back_canvas_data),
        color_variant=body.color_variant,
        pattern=body.pattern,
        shopify_product_id=body.shopify_product_id,
        shopify_variant_id=body.shopify_variant_id,
    )
    return template.to_public()


@app.get("/templates/{template_id}")
def get_template(
    template_id: str,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
) -> dict[str, Any]:
    return _require_template(templates, template_id, shop).to_public()


@app.put("/templates/{template_id}/canvas")
def update_canvas(
    template_id: str,
    body: CanvasUpdate,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
) -> dict[str, Any]:
    template = _require_template(templates, template_id, shop)
    incoming = parse_scene(body.canvas_data)
    current = template.sides().get(body.side)
    if current:
        ensure_same_dimensions(parse_scene(current), incoming)
    field = {"default": "canvas_data", "front": "front_canvas_data", "back": "back_canvas_data"}[body.side]
    return templates.update_template(template_id, **{field: dumps_scene(incoming)}).to_public()


@app.delete("/templates/{template_id}")
def delete_template(
    template_id: str,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
) -> dict[str, Any]:
    _require_template(templates, template_id, shop)
    return {"deleted": templates.delete_template(template_id)}


@app.get("/templates/{template_id}/variants")
def list_variants(
    template_id: str,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
) -> dict[str, Any]:
    _require_template(templates, template_id, shop)
    return {"variants": [t.to_public() for t in templates.list_variants(template_id)]}


async def _run_generation(pipeline: VariantPipeline, job_id: str) -> None:
    if settings.auto_process_thumbnails:
        await pipeline.run_with_dependents(job_id)
    else:
        await pipeline.run_job(job_id)


@app.post("/templates/{template_id}/generate-variants", status_code=202)
async def generate_variants(
    template_id: str,
    background_tasks: BackgroundTasks,
    body: GenerateRequest | None = None,
    shop: str = Depends(get_shop),
    pipeline: VariantPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    body = body or GenerateRequest()
    job = pipeline.submit_generate_variants(shop, template_id, regenerate=body.regenerate)
    if body.wait:
        await _run_generation(pipeline, job.job_id)
        job = pipeline.jobs.require(job.job_id)
    else:
        background_tasks.add_task(_run_generation, pipeline, job.job_id)
    return {"jobId": job.job_id, "job": job.to_public()}


@app.get("/jobs/{job_id}")
def get_job(job_id: str, shop: str = Depends(get_shop), jobs: JobStore = Depends(get_jobs)) -> dict[str, Any]:
    return jobs.require(job_id, shop).to_public()


@app.get("/jobs")
def recent_jobs(limit: int = 10, shop: str = Depends(get_shop), jobs: JobStore = Depends(get_jobs)) -> dict[str, Any]:
    return {"jobs": [job.to_public() for job in jobs.recent(shop, limit=max(1, min(limit, 100)))]}


@app.post("/jobs/process-thumbnails")
async def process_thumbnails(
    shop: str = Depends(get_shop),
    pipeline: VariantPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    processed = await pipeline.process_pending(shop, JobType.GENERATE_THUMBNAILS.value)
    removed = pipeline.jobs.cleanup()
    return {"processed": [job.to_public() for job in processed], "removedJobs": removed}


@app.post("/scene/arc")
def scene_arc(body: ArcRequest, shop: str = Depends(get_shop)) -> dict[str, Any]:
    element = CurvedTextElement(
        id="arc", text=body.text, font_size=body.font_size, radius=body.radius, flipped=body.flipped, top_y=body.top_y, x=body.x
    )
    if body.center_y is not None:
        element = move_to_center(element, body.x, body.center_y)
    if body.new_radius is not None:
        element = resize_radius(element, body.new_radius)
    if body.toggle_flip:
        element = toggle_flip(element)
    text_length = estimate_text_length(element.text, element.font_size)
    layout = arc_layout(text_length, element.radius, element.flipped, element.top_y)
    return {
        "textLength": text_length,
        "radius": element.radius,
        "topY": element.top_y,
        "flipped": element.flipped,
        "layout": layout.to_dict(),
    }


@app.post("/scene/render")
async def scene_render(
    body: RenderRequest,
    shop: str = Depends(get_shop),
    image_fetcher: ImageFetcher = Depends(get_image_fetcher),
) -> Response:
    doc = parse_scene(body.canvas_data)
    images = await image_fetcher(collect_image_urls(doc))
    png = await asyncio.to_thread(render_scene, doc, images, body.scale)
    return Response(content=png, media_type="image/png")


@app.post("/templates/{template_id}/swatch")
async def variant_swatch(
    template_id: str,
    body: SwatchRequest,
    shop: str = Depends(get_shop),
    templates: TemplateStore = Depends(get_templates),
    image_fetcher: ImageFetcher = Depends(get_image_fetcher),
) -> Response:
    """Preview one variant of a design with the customer's text in place.

    The template bound to the variant is used when there is one, else the master.
    """
    master = _require_template(templates, template_id, shop)
    variant_id = body.variant_id
    if variant_id.isdigit():
        variant_id = f"gid://shopify/ProductVariant/{variant_id}"
    source = templates.find_by_variant(shop, variant_id) or master
    sides = source.sides()
    raw = sides.get("back") if body.side == "back" else sides.get("front") or sides["default"]
    if raw is None:
        raise ValidationError(f"template {source.template_id} has no back side")
    doc = apply_text_updates(parse_scene(raw), body.text_updates)
    images = await image_fetcher(collect_image_urls(doc))
    png = await asyncio.to_thread(render_scene, doc, images, body.scale)
    return Response(content=png, media_type="image/png", headers={"X-Template-Id": source.template_id})


@app.get("/assets/{key:path}")
def get_asset(key: str, assets: LocalAssetStore = Depends(get_assets)) -> FileResponse:
    try:
        path = assets.path_for(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="asset not found")
    if not path.exists():
        raise HTTPException(status_code=404, detail="asset not found")
    return FileResponse(path)
