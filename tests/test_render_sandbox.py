from __future__ import annotations

import types

import pytest
from PIL import Image, ImageFile

from conftest import scene
from variant_forge.assembly import render
from variant_forge.assembly.sandbox import GlobalSandbox
from variant_forge.errors import RenderError
from variant_forge.scene.model import parse_scene


def _module() -> types.ModuleType:
    mod = types.ModuleType("fake_globals")
    mod.window = "host-window"
    return mod


def test_values_restored_after_success():
    mod = _module()
    env = {"document": "host-document"}
    with GlobalSandbox([(mod, "window", "shim"), (env, "document", "shim-doc")]):
        assert mod.window == "shim"
        assert env["document"] == "shim-doc"
    assert mod.window == "host-window"
    assert env == {"document": "host-document"}


def test_absent_keys_are_deleted_again():
    mod = _module()
    env: dict[str, object] = {}
    with GlobalSandbox([(mod, "createCanvas", object()), (env, "navigator", "shim")]):
        assert hasattr(mod, "createCanvas")
        assert "navigator" in env
    assert not hasattr(mod, "createCanvas")
    assert env == {}


def test_values_restored_after_error():
    mod = _module()
    env = {"document": None}
    with pytest.raises(RuntimeError):
        with GlobalSandbox([(mod, "window", "shim"), (env, "document", "shim"), (env, "location", "shim")]):
            raise RuntimeError("render blew up")
    assert mod.window == "host-window"
    assert env == {"document": None}


def test_same_key_shimmed_twice_restores_original():
    env = {"k": 1}
    with GlobalSandbox([(env, "k", 2), (env, "k", 3)]):
        assert env["k"] == 3
    assert env == {"k": 1}


def test_sandbox_is_reentrant_in_one_thread():
    env = {"k": "host"}
    with GlobalSandbox([(env, "k", "outer")]):
        with GlobalSandbox([(env, "k", "inner")]):
            assert env["k"] == "inner"
        assert env["k"] == "outer"
    assert env["k"] == "host"


def _renderer_globals() -> tuple:
    return (
        Image.MAX_IMAGE_PIXELS,
        ImageFile.LOAD_TRUNCATED_IMAGES,
        render.FONT_SEARCH_PATH,
        hasattr(render, "_font_cache"),
    )


def test_render_leaves_pillow_globals_untouched():
    before = _renderer_globals()
    png = render.render_scene(parse_scene(scene()), {})
    assert png.startswith(b"\x89PNG")
    assert _renderer_globals() == before
    assert not hasattr(render, "_font_cache")


def test_failed_render_leaves_globals_untouched(monkeypatch):
    before = _renderer_globals()
    seen = {}

    def explode(self):
        seen["max_pixels"] = Image.MAX_IMAGE_PIXELS
        seen["truncated"] = ImageFile.LOAD_TRUNCATED_IMAGES
        raise OSError("canvas backend missing")

    monkeypatch.setattr(render._Painter, "paint", explode)
    with pytest.raises(RenderError, match="canvas backend missing"):
        render.render_thumbnail(parse_scene(scene()), {})

    # The shims were live during the render ...
    assert seen["truncated"] is True
    # ... and gone afterwards.
    assert _renderer_globals() == before
