from __future__ import annotations


class VariantForgeError(Exception):
    """Base for every error raised by the variant pipeline."""


class ValidationError(VariantForgeError):
    """Malformed scene document or missing palette mapping. Fails the whole request."""


class RemoteCallError(VariantForgeError):
    """A single platform query or mutation failed."""


class RenderError(VariantForgeError):
    """Headless rendering failed for one document."""


class JobNotFound(VariantForgeError):
    pass


class InvalidTransition(VariantForgeError):
    pass


class TemplateNotFound(VariantForgeError):
    pass
