"""Variant generation, run as jobs.

A generateVariants job does every remote platform call (list combinations,
create variant templates, bind them with metafield writes) and finishes before
any rendering starts. It then leaves a generateThumbnails job behind that
depends on it; that job is picked up by a later worker pass and is the only
place the renderer's global shims get installed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, TypeVar

from variant_forge.assembly.render import collect_image_urls, fetch_images, render_thumbnail
from variant_forge.config import settings
from variant_forge.errors import RemoteCallError, RenderError, TemplateNotFound, ValidationError, VariantForgeError
from variant_forge.jobs import Job, JobStatus, JobStore, JobType
from variant_forge.providers.base import AssetStore, CommercePlatform, MetafieldWrite
from variant_forge.scene.model import dumps_scene, parse_scene, with_base_image
from variant_forge.scene.palette import Palette, require_palette, substitute
from variant_forge.storage import PaletteStore, Template, TemplateStore
from variant_forge.variants import (
    VariantCombination,
    combination_key,
    list_combinations,
    match_variants,
    normalize_option_value,
    selling_product_id,
    variant_pattern,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ImageFetcher = Callable[[list[str]], Awaitable[dict[str, bytes]]]

# Sides that carry the product photograph; the back keeps its own.
PHOTO_SIDES = ("default", "front")


def _chunks(items: list[T], size: int) -> list[list[T]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


class VariantPipeline:
    def __init__(
        self,
        platform: CommercePlatform,
        templates: TemplateStore,
        palettes: PaletteStore,
        jobs: JobStore,
        assets: AssetStore,
        image_fetcher: ImageFetcher | None = None,
        batch_size: int | None = None,
        remote_timeout: float | None = None,
    ) -> None:
        self.platform = platform
        self.templates = templates
        self.palettes = palettes
        self.jobs = jobs
        self.assets = assets
        self.image_fetcher = image_fetcher or fetch_images
        self.batch_size = batch_size or settings.batch_size
        self.remote_timeout = remote_timeout if remote_timeout is not None else settings.remote_timeout_seconds

    def submit_generate_variants(self, shop: str, template_id: str, regenerate: bool = False) -> Job:
        master = self.templates.get_template(template_id, shop)
        if master is None:
            raise TemplateNotFound(template_id)
        if master.is_variant:
            raise ValidationError("variants can only be generated from a master template")
        existing = self.templates.list_variants(template_id)
        if existing and not regenerate:
            raise ValidationError(
                f"template {template_id} already has {len(existing)} variants; pass regenerate to replace them"
            )
        return self.jobs.create(shop, JobType.GENERATE_VARIANTS, {"templateId": template_id, "regenerate": regenerate})

    async def run_job(self, job_id: str) -> Job:
        job = self.jobs.start(job_id)
        handlers = {
            JobType.GENERATE_VARIANTS.value: self._generate_variants,
            JobType.GENERATE_THUMBNAILS.value: self._generate_thumbnails,
        }
        handler = handlers.get(job.type)
        if handler is None:
            return self.jobs.fail(job_id, f"unknown job type {job.type}")
        try:
            result = await handler(job)
        except VariantForgeError as exc:
            return self.jobs.fail(job_id, str(exc))
        except Exception as exc:
            logger.exception("job %s crashed", job_id)
            return self.jobs.fail(job_id, f"internal error: {type(exc).__name__}")
        return self.jobs.complete(job_id, result)

    async def run_with_dependents(self, job_id: str) -> list[Job]:
        """Run a job, then any dependents it made runnable."""
        done = [await self.run_job(job_id)]
        if done[0].status == JobStatus.COMPLETED:
            for dependent in self.jobs.dependents(job_id):
                if dependent.status == JobStatus.PENDING:
                    done.append(await self.run_job(dependent.job_id))
        return done

    async def process_pending(self, shop: str, type: str | None = None) -> list[Job]:
        """Worker entry point: run runnable jobs until none are left."""
        done: list[Job] = []
        while True:
            runnable = self.jobs.list_runnable(shop, type)
            if not runnable:
                return done
            for job in runnable:
                done.append(await self.run_job(job.job_id))

    async def _remote(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remote_timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteCallError(f"{what} timed out after {self.remote_timeout}s") from exc

    # generateVariants

    async def _generate_variants(self, job: Job) -> dict[str, Any]:
        template_id = job.data.get("templateId")
        master = self.templates.get_template(template_id) if template_id else None
        if master is None:
            raise TemplateNotFound(f"master template {template_id} not found")

        # Phase 1: everything that can abort the whole job.
        palettes = self.palettes.all()
        source = require_palette(palettes, master.color_variant)
        sides = {name: parse_scene(raw) for name, raw in master.sides().items()}
        if not master.shopify_product_id:
            raise ValidationError("master template is not linked to a product")
        product_id = master.shopify_product_id
        selling_id = selling_product_id(product_id)
        master_pattern = await self._master_pattern(master)
        combos = await self._remote(list_combinations(self.platform, selling_id), "listing product variants")
        photos = await self._photographs(product_id, selling_id, combos)

        # Old variants go only once nothing above can abort the job.
        if job.data.get("regenerate"):
            removed = self.templates.delete_variants(master.template_id)
            logger.info("job %s: regenerate removed %d variants of %s", job.job_id, removed, master.template_id)

        master_key = combination_key(master.color_variant, master_pattern)
        targets = [c for c in combos if c.key != master_key]
        self.jobs.update_progress(job.job_id, 0, total=2 * len(targets))
        errors: list[dict[str, Any]] = []

        # Phase 2: one template per combination.
        created: list[tuple[Template, VariantCombination]] = []
        for idx, combo in enumerate(targets, start=1):
            try:
                target = palettes.get(normalize_option_value(combo.color))
                if target is None:
                    raise ValidationError(f"Color mapping not found for {combo.color}")
                template = self._create_variant(job.shop, master, sides, source, target, combo, photos.get(combo.key))
                created.append((template, combo))
            except (ValidationError, OSError) as exc:
                logger.warning("variant %s/%s not created: %s", combo.color, combo.pattern, exc)
                errors.append(_item_error(combo, None, "create", exc))
            self.jobs.update_progress(job.job_id, idx)

        # Phase 3: bind every new template to its platform variant.
        synced = 0
        done = len(targets) + (len(targets) - len(created))
        for batch in _chunks(created, self.batch_size):
            outcomes = await asyncio.gather(*(self._bind(template, combo) for template, combo in batch))
            for (template, combo), error in zip(batch, outcomes):
                if error is None:
                    synced += 1
                else:
                    errors.append(_item_error(combo, template.template_id, "bind", error))
            done += len(batch)
            self.jobs.update_progress(job.job_id, done)

        # Phase 4: report, and leave the thumbnails for a separate run.
        variants = [self.templates.get_template(t.template_id) or t for t, _ in created]
        report = match_variants([replace(master, pattern=master_pattern), *variants], combos)
        thumbnails = self.jobs.create(
            job.shop,
            JobType.GENERATE_THUMBNAILS,
            {"masterTemplateId": master.template_id, "templateIds": [t.template_id for t, _ in created]},
            total=len(created),
            depends_on=job.job_id,
        )
        logger.info("job %s: synced %d of %d variants of %s", job.job_id, synced, len(targets), master.template_id)
        return {
            "message": f"Synced {synced} of {len(targets)} variants",
            "masterTemplateId": master.template_id,
            "productId": selling_id,
            "created": len(created),
            "synced": synced,
            "total": len(targets),
            "templateIds": [t.template_id for t, _ in created],
            "errors": errors,
            "unmatchedTemplates": report.summary()["unmatchedTemplates"],
            "uncoveredCombinations": report.summary()["uncoveredCombinations"],
            "thumbnailJobId": thumbnails.job_id,
        }

    async def _master_pattern(self, master: Template) -> str:
        if master.pattern or not master.shopify_variant_id:
            return master.pattern
        try:
            variant = await self._remote(self.platform.get_variant(master.shopify_variant_id), "reading master variant")
        except RemoteCallError as exc:
            logger.warning("master %s: pattern lookup failed, assuming none: %s", master.template_id, exc)
            return ""
        return variant_pattern(variant) if variant is not None else ""

    async def _photographs(
        self, product_id: str, selling_id: str, combos: list[VariantCombination]
    ) -> dict[tuple[str, str], str]:
        """Face photograph per combination; the source product's own photos win."""
        photos = {c.key: c.image_url for c in combos if c.image_url}
        if product_id == selling_id:
            return photos
        try:
            source_combos = await self._remote(list_combinations(self.platform, product_id), "listing source variants")
        except RemoteCallError as exc:
            logger.warning("source product %s photos unavailable: %s", product_id, exc)
            return photos
        photos.update({c.key: c.image_url for c in source_combos if c.image_url})
        return photos

    def _create_variant(
        self,
        shop: str,
        master: Template,
        sides: dict[str, Any],
        source: Palette,
        target: Palette,
        combo: VariantCombination,
        photo: str | None,
    ) -> Template:
        out: dict[str, str] = {}
        for name, doc in sides.items():
            doc = substitute(doc, source, target)
            if name in PHOTO_SIDES and photo:
                doc = with_base_image(doc, photo)
            out[name] = dumps_scene(doc)
        label = combo.color if not combo.pattern else f"{combo.color} / {combo.pattern}"
        return self.templates.create_template(
            shop,
            f"{master.name} ({label})",
            out["default"],
            front_canvas_data=out.get("front"),
            back_canvas_data=out.get("back"),
            master_template_id=master.template_id,
            color_variant=combo.color,
            pattern=combo.pattern,
            shopify_product_id=selling_product_id(master.shopify_product_id or ""),
        )

    async def _bind(self, template: Template, combo: VariantCombination) -> Exception | None:
        write = MetafieldWrite(
            owner_id=combo.variant_id,
            namespace=settings.metafield_namespace,
            key=settings.metafield_key,
            value=template.template_id,
        )
        try:
            await self._remote(self.platform.set_metafield(write), f"binding {combo.variant_id}")
        except RemoteCallError as exc:
            logger.warning("template %s not bound to %s: %s", template.template_id, combo.variant_id, exc)
            return exc
        self.templates.update_template(template.template_id, shopify_variant_id=combo.variant_id)
        return None

    # generateThumbnails

    async def _generate_thumbnails(self, job: Job) -> dict[str, Any]:
        ids = list(job.data.get("templateIds") or [])
        master_id = job.data.get("masterTemplateId")
        master = self.templates.get_template(master_id) if master_id else None
        if master is not None and not master.thumbnail:
            ids.insert(0, master.template_id)
        self.jobs.update_progress(job.job_id, 0, total=len(ids))

        generated = 0
        errors: list[dict[str, Any]] = []
        for start, batch in enumerate(_chunks(ids, self.batch_size)):
            templates: list[Template] = []
            for template_id in batch:
                template = self.templates.get_template(template_id)
                if template is None:
                    errors.append({"templateId": template_id, "error": "template not found"})
                else:
                    templates.append(template)

            docs: dict[str, dict[str, Any]] = {}
            urls: list[str] = []
            for template in templates:
                try:
                    docs[template.template_id] = {k: parse_scene(v) for k, v in template.sides().items()}
                except ValidationError as exc:
                    errors.append({"templateId": template.template_id, "error": str(exc)})
                    continue
                for doc in docs[template.template_id].values():
                    urls.extend(collect_image_urls(doc))
            images = await self.image_fetcher(list(dict.fromkeys(urls)))

            for template in templates:
                if template.template_id not in docs:
                    continue
                try:
                    await self._thumbnail(job.shop, template, docs[template.template_id], images)
                    generated += 1
                except (RenderError, OSError, ValueError) as exc:
                    logger.warning("thumbnail for %s failed: %s", template.template_id, exc)
                    errors.append({"templateId": template.template_id, "error": str(exc)})
            self.jobs.update_progress(job.job_id, min(len(ids), (start + 1) * self.batch_size))

        return {
            "message": f"Generated {generated} of {len(ids)} thumbnails",
            "generated": generated,
            "total": len(ids),
            "errors": errors,
        }

    async def _thumbnail(self, shop: str, template: Template, docs: dict[str, Any], images: dict[str, bytes]) -> None:
        stamp = int(time.time() * 1000)
        front = docs.get("front") or docs["default"]
        png = await asyncio.to_thread(render_thumbnail, front, images)
        changes = {"thumbnail": self.assets.upload(png, "image/png", f"templates/{shop}/{template.template_id}/thumbnail-{stamp}.png")}
        if "back" in docs:
            back_png = await asyncio.to_thread(render_thumbnail, docs["back"], images)
            changes["back_thumbnail"] = self.assets.upload(
                back_png, "image/png", f"templates/{shop}/{template.template_id}/back-thumbnail-{stamp}.png"
            )
        self.templates.update_template(template.template_id, **changes)


def _item_error(combo: VariantCombination, template_id: str | None, stage: str, exc: Exception) -> dict[str, Any]:
    return {
        "color": combo.color,
        "pattern": combo.pattern,
        "variantId": combo.variant_id,
        "templateId": template_id,
        "stage": stage,
        "error": str(exc),
    }
