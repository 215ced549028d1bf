"""
Image model registry: supported aspect ratios, quality tiers and pixel
dimensions per model, plus the provider capability table that decides which
request parameters a model accepts.

Model ids are Runware AIR ids (`source:id@version`); the provider is the
`source` prefix.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from storyboard.models.nodes import AspectRatio, Quality


ProviderType = Literal["google", "bfl", "bytedance", "default"]


class ImageDimensions(BaseModel):
    width: int
    height: int


DEFAULT_IMAGE_DIMENSIONS = ImageDimensions(width=1024, height=1024)


# ---------------------------------------------------------------------------
# Provider capabilities
# ---------------------------------------------------------------------------


class ProviderCapabilities(BaseModel):
    supports_image_to_image: bool
    supports_seed_image: bool
    supports_reference_images: bool
    supports_strength: bool
    supports_negative_prompt: bool
    supports_steps: bool
    max_reference_images: int | None = None
    min_strength: float | None = None


_REFERENCE_IMAGE_PROVIDER = dict(
    supports_image_to_image=True,
    supports_seed_image=False,
    supports_reference_images=True,
    supports_strength=False,
    supports_negative_prompt=False,
    supports_steps=False,
)

PROVIDER_CAPABILITIES: dict[ProviderType, ProviderCapabilities] = {
    # Imagen / Gemini image models take a referenceImages array
    "google": ProviderCapabilities(**_REFERENCE_IMAGE_PROVIDER, max_reference_images=14),
    # Flux Kontext
    "bfl": ProviderCapabilities(**_REFERENCE_IMAGE_PROVIDER, max_reference_images=2),
    # Seedream
    "bytedance": ProviderCapabilities(**_REFERENCE_IMAGE_PROVIDER, max_reference_images=14),
    # SDXL-style models: one seed image plus strength
    "default": ProviderCapabilities(
        supports_image_to_image=True,
        supports_seed_image=True,
        supports_reference_images=False,
        supports_strength=True,
        supports_negative_prompt=True,
        supports_steps=True,
    ),
}


def get_model_provider(model_id: str) -> ProviderType:
    """`google:4@2` -> `google`; unknown prefixes fall back to `default`."""
    prefix = model_id.split(":", 1)[0].lower()
    if prefix in ("google", "bfl", "bytedance"):
        return prefix  # type: ignore[return-value]
    return "default"


def get_provider_capabilities(model_id: str) -> ProviderCapabilities:
    return PROVIDER_CAPABILITIES[get_model_provider(model_id)]


# ---------------------------------------------------------------------------
# Model specifications
# ---------------------------------------------------------------------------


class ModelSpec(BaseModel):
    id: str
    name: str
    supported_qualities: list[Quality]
    supported_aspect_ratios: list[AspectRatio]
    dimensions: dict[str, dict[str, ImageDimensions]]
    default_quality: Quality
    default_aspect_ratio: AspectRatio | None = None


def _table(rows: dict[str, tuple[int, int]]) -> dict[str, ImageDimensions]:
    return {ratio: ImageDimensions(width=w, height=h) for ratio, (w, h) in rows.items()}


_FLUX_1K = _table({
    "1:1": (1024, 1024), "3:2": (1248, 832), "2:3": (832, 1248),
    "4:3": (1184, 880), "3:4": (880, 1184), "16:9": (1392, 752),
    "9:16": (752, 1392), "21:9": (1568, 672), "9:21": (672, 1568),
})

_SEEDREAM = {
    "2K": _table({
        "1:1": (2048, 2048), "4:3": (2304, 1728), "3:4": (1728, 2304),
        "16:9": (2560, 1440), "9:16": (1440, 2560), "3:2": (2496, 1664),
        "2:3": (1664, 2496), "21:9": (3024, 1296),
    }),
    "4K": _table({
        "1:1": (4096, 4096), "4:3": (4608, 3456), "3:4": (3456, 4608),
        "16:9": (5120, 2880), "9:16": (2880, 5120), "3:2": (4992, 3328),
        "2:3": (3328, 4992), "21:9": (6048, 2592),
    }),
}

NANO_BANANA = ModelSpec(
    id="google:4@1",
    name="Nano Banana",
    supported_qualities=["1K"],
    supported_aspect_ratios=["1:1", "3:2", "2:3", "4:3", "3:4", "5:4", "4:5", "16:9", "9:16", "21:9"],
    default_quality="1K",
    dimensions={
        "1K": _table({
            "1:1": (1024, 1024), "3:2": (1248, 832), "2:3": (832, 1248),
            "4:3": (1184, 864), "3:4": (864, 1184), "5:4": (1152, 896),
            "4:5": (896, 1152), "16:9": (1344, 768), "9:16": (768, 1344),
            "21:9": (1536, 672),
        }),
    },
)

BANANA_PRO = ModelSpec(
    id="google:4@2",
    name="Banana Pro",
    supported_qualities=["1K", "2K", "4K"],
    supported_aspect_ratios=["1:1", "3:2", "2:3", "4:3", "3:4", "4:5", "5:4", "9:16", "16:9", "21:9"],
    default_quality="1K",
    dimensions={
        "1K": _table({
            "1:1": (1024, 1024), "3:2": (1264, 848), "2:3": (848, 1264),
            "4:3": (1200, 896), "3:4": (896, 1200), "4:5": (928, 1152),
            "5:4": (1152, 928), "9:16": (768, 1376), "16:9": (1376, 768),
            "21:9": (1548, 672),
        }),
        "2K": _table({
            "1:1": (2048, 2048), "3:2": (2528, 1696), "2:3": (1696, 2528),
            "4:3": (2400, 1792), "3:4": (1792, 2400), "4:5": (1856, 2304),
            "5:4": (2304, 1856), "9:16": (1536, 2752), "16:9": (2752, 1536),
            "21:9": (3168, 1344),
        }),
        "4K": _table({
            "1:1": (4096, 4096), "3:2": (5056, 3392), "2:3": (3392, 5056),
            "4:3": (4800, 3584), "3:4": (3584, 4800), "4:5": (3712, 4608),
            "5:4": (4608, 3712), "9:16": (3072, 5504), "16:9": (5504, 3072),
            "21:9": (6336, 2688),
        }),
    },
)

FLUX = ModelSpec(
    id="bfl:3@1",
    name="Flux",
    supported_qualities=["1K"],
    supported_aspect_ratios=["1:1", "3:2", "2:3", "4:3", "3:4", "16:9", "9:16", "21:9", "9:21"],
    default_quality="1K",
    dimensions={"1K": _FLUX_1K},
)

FLUX_MAX = ModelSpec(
    id="bfl:4@1",
    name="Flux Max",
    supported_qualities=["1K"],
    supported_aspect_ratios=["1:1", "3:2", "2:3", "4:3", "3:4", "16:9", "9:16", "21:9", "9:21"],
    default_quality="1K",
    dimensions={"1K": _FLUX_1K},
)

SEEDREAM_4 = ModelSpec(
    id="bytedance:5@0",
    name="Seedream 4",
    supported_qualities=["2K", "4K"],
    supported_aspect_ratios=["1:1", "4:3", "3:4", "16:9", "9:16", "3:2", "2:3", "21:9"],
    default_quality="2K",
    dimensions=_SEEDREAM,
)

SEEDREAM_45 = ModelSpec(
    id="bytedance:seedream@4.5",
    name="Seedream 4.5",
    supported_qualities=["2K", "4K"],
    supported_aspect_ratios=["1:1", "4:3", "3:4", "16:9", "9:16", "3:2", "2:3", "21:9"],
    default_quality="2K",
    dimensions=_SEEDREAM,
)

MODEL_SPECS_LIST: list[ModelSpec] = [
    NANO_BANANA,
    BANANA_PRO,
    FLUX,
    FLUX_MAX,
    SEEDREAM_4,
    SEEDREAM_45,
]
MODEL_SPECS: dict[str, ModelSpec] = {spec.id: spec for spec in MODEL_SPECS_LIST}
DEFAULT_MODEL_SPEC = NANO_BANANA


def get_model_spec(model_id: str) -> ModelSpec | None:
    return MODEL_SPECS.get(model_id)


def get_dimensions(
    model_id: str,
    quality: Quality | None,
    aspect_ratio: AspectRatio | None,
) -> ImageDimensions:
    """
    Resolve output pixel dimensions for a model.

    None quality means the model's default tier; None aspect ratio (Auto)
    means square. Unsupported combinations degrade to the closest thing the
    model does support rather than failing.
    """
    spec = MODEL_SPECS.get(model_id)
    if spec is None:
        return DEFAULT_IMAGE_DIMENSIONS

    effective_quality = quality or spec.default_quality
    effective_ratio = aspect_ratio or "1:1"

    quality_dimensions = spec.dimensions.get(effective_quality)
    if quality_dimensions is None:
        default_dimensions = spec.dimensions.get(spec.default_quality, {})
        return default_dimensions.get(effective_ratio, DEFAULT_IMAGE_DIMENSIONS)

    dimensions = quality_dimensions.get(effective_ratio)
    if dimensions is None:
        first_ratio = spec.supported_aspect_ratios[0]
        return quality_dimensions.get(first_ratio, DEFAULT_IMAGE_DIMENSIONS)

    return dimensions


def is_quality_supported(model_id: str, quality: Quality) -> bool:
    spec = MODEL_SPECS.get(model_id)
    return spec is not None and quality in spec.supported_qualities


def is_aspect_ratio_supported(model_id: str, aspect_ratio: AspectRatio) -> bool:
    spec = MODEL_SPECS.get(model_id)
    return spec is not None and aspect_ratio in spec.supported_aspect_ratios
