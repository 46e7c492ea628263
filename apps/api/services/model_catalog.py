"""Declarative model table: pricing, payload adapters, and result extractors.

Every metered model is described once here. Route handlers and the proxy look
models up instead of carrying their own cost maps or payload shaping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from services.errors import InvalidInput, MissingInput


Payload = Dict[str, Any]
Adapter = Callable[[Mapping[str, Any]], Payload]
Extractor = Callable[[Mapping[str, Any]], List[str]]


@dataclass(frozen=True)
class CostFormula:
    """Flat base price covering ``free_units``, plus a surcharge per extra unit."""

    base: int
    free_units: int
    per_extra_unit: int
    unit_field: str

    def evaluate(self, ui_input: Mapping[str, Any]) -> int:
        raw_units = ui_input.get(self.unit_field)
        if isinstance(raw_units, str):
            # durations may arrive as "8s"
            raw_units = raw_units.strip().rstrip("sS") or None
        try:
            units = float(raw_units) if raw_units is not None else float(self.free_units)
        except (TypeError, ValueError):
            raise InvalidInput(f"Invalid {self.unit_field}")
        extra = max(units - self.free_units, 0)
        return max(1, int(round(self.base + extra * self.per_extra_unit)))


@dataclass(frozen=True)
class ModelSpec:
    model_id: str
    endpoint: str
    tool: str
    media_type: str
    cost: Union[int, CostFormula]
    adapter: Adapter
    extractor: Extractor
    label: str
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def adapt(self, ui_input: Mapping[str, Any]) -> Payload:
        return self.adapter(ui_input or {})

    def describe(self, ui_input: Mapping[str, Any]) -> str:
        prompt = str((ui_input or {}).get("prompt") or "").strip()
        return prompt[:1000] if prompt else self.label


@dataclass(frozen=True)
class ToolSpec:
    name: str
    default_model: str
    models: Tuple[str, ...]


def compute_cost(spec: ModelSpec, ui_input: Optional[Mapping[str, Any]] = None) -> int:
    if isinstance(spec.cost, CostFormula):
        return spec.cost.evaluate(ui_input or {})
    return max(int(spec.cost), 0)


# --- result extraction -----------------------------------------------------


def extract_media_urls(response: Mapping[str, Any]) -> List[str]:
    """Collect output media URLs across the provider's result shapes."""
    if not isinstance(response, Mapping):
        return []
    data = response.get("data") if isinstance(response.get("data"), Mapping) else response
    urls: List[str] = []
    image = data.get("image")
    if isinstance(image, Mapping) and image.get("url"):
        urls.append(str(image["url"]))
    for item in data.get("images") or []:
        if isinstance(item, Mapping) and item.get("url"):
            urls.append(str(item["url"]))
    for key in ("video", "audio", "audio_file"):
        media = data.get(key)
        if isinstance(media, Mapping) and media.get("url"):
            urls.append(str(media["url"]))
    return urls


# --- payload adapters ------------------------------------------------------


def _source_image(ui_input: Mapping[str, Any]) -> str:
    image_urls = ui_input.get("image_urls") or []
    source = ui_input.get("image_url") or ui_input.get("image") or (image_urls[0] if image_urls else None)
    if not source:
        raise MissingInput("No image provided")
    return str(source)


def _number(ui_input: Mapping[str, Any], key: str, default: float) -> float:
    value = ui_input.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {key}")


def adapt_bg_remove(ui_input: Mapping[str, Any]) -> Payload:
    return {"image_url": _source_image(ui_input)}


def adapt_inpainting(ui_input: Mapping[str, Any]) -> Payload:
    if not ui_input.get("image_url") or not ui_input.get("mask_url") or not ui_input.get("prompt"):
        raise MissingInput("Missing requirements. Ensure you have painted a mask and entered a prompt.")
    return {
        "prompt": ui_input["prompt"],
        "image_url": ui_input["image_url"],
        "mask_url": ui_input["mask_url"],
        "num_inference_steps": 28,
        "guidance_scale": 3.5,
        "strength": 1.0,
        "enable_safety_checker": True,
        "output_format": "jpeg",
    }


def adapt_clarity_upscale(ui_input: Mapping[str, Any]) -> Payload:
    return {
        "image_url": _source_image(ui_input),
        "upscale_factor": _number(ui_input, "scale", 2),
        "prompt": "masterpiece, best quality, highres",
        "creativity": _number(ui_input, "creativity", 0.35),
        "resemblance": 0.6,
        "guidance_scale": 4,
        "num_inference_steps": 18,
        "enable_safety_checker": True,
    }


def adapt_topaz_upscale(ui_input: Mapping[str, Any]) -> Payload:
    return {
        "image_url": _source_image(ui_input),
        "model": "Standard V2",
        "upscale_factor": _number(ui_input, "scale", 2),
        "output_format": "jpeg",
        "face_enhancement": True,
    }


def adapt_seedvr_upscale(ui_input: Mapping[str, Any]) -> Payload:
    return {
        "image_url": _source_image(ui_input),
        "upscale_mode": "factor",
        "upscale_factor": _number(ui_input, "scale", 2),
        "output_format": "jpg",
    }


def adapt_skin_retouch(ui_input: Mapping[str, Any]) -> Payload:
    # Retouch endpoints reject anything beyond the source image with a 422.
    return {"image_url": _source_image(ui_input)}


def adapt_angle_change(ui_input: Mapping[str, Any]) -> Payload:
    """Map UI pitch (-90..90), yaw (deg) and zoom (0..100) to the model's ranges."""
    if not ui_input.get("image_url"):
        raise MissingInput("No image provided")
    yaw = _number(ui_input, "yaw", 0)
    pitch = max(min(_number(ui_input, "pitch", 0), 90), -90)
    zoom = max(min(_number(ui_input, "zoom", 0), 100), 0)
    return {
        "image_urls": [ui_input["image_url"]],
        "prompt": "change camera angle",
        "rotate_right_left": yaw,
        "vertical_angle": pitch / 90,
        "move_forward": zoom / 10,
        "num_inference_steps": 28,
        "guidance_scale": 3.5,
    }


def passthrough(ui_input: Mapping[str, Any]) -> Payload:
    return dict(ui_input)


def _describe_angle(ui_input: Mapping[str, Any]) -> str:
    payload = adapt_angle_change(ui_input)
    return (
        f"Angle: Y{payload['rotate_right_left']:g} "
        f"P{payload['vertical_angle']:g} Z{payload['move_forward']:g}"
    )


# --- the table -------------------------------------------------------------


def _image_tool(model_id: str, endpoint: str, tool: str, cost: int, adapter: Adapter, label: str) -> ModelSpec:
    return ModelSpec(
        model_id=model_id,
        endpoint=endpoint,
        tool=tool,
        media_type="image",
        cost=cost,
        adapter=adapter,
        extractor=extract_media_urls,
        label=label,
        capabilities=frozenset({"image_input"}),
    )


def _proxied(
    model_id: str,
    cost: Union[int, CostFormula],
    *,
    media_type: str = "image",
    label: str = "Image Generation",
    capabilities: FrozenSet[str] = frozenset({"prompt"}),
) -> ModelSpec:
    return ModelSpec(
        model_id=model_id,
        endpoint=model_id,
        tool="proxy",
        media_type=media_type,
        cost=cost,
        adapter=passthrough,
        extractor=extract_media_urls,
        label=label,
        capabilities=capabilities,
    )


_MODELS: Tuple[ModelSpec, ...] = (
    # Single-purpose tools
    _image_tool("fal-ai/bria/background/remove", "fal-ai/bria/background/remove", "bg-remove", 2,
                adapt_bg_remove, "Background Removal"),
    ModelSpec(
        model_id="fal-ai/flux-lora/inpainting",
        endpoint="fal-ai/flux-lora/inpainting",
        tool="inpainting",
        media_type="image",
        cost=8,
        adapter=adapt_inpainting,
        extractor=extract_media_urls,
        label="Inpainting",
        capabilities=frozenset({"image_input", "mask_input", "prompt"}),
    ),
    _image_tool("fal-ai/clarity-upscaler", "fal-ai/clarity-upscaler", "upscale", 2,
                adapt_clarity_upscale, "Upscale"),
    _image_tool("fal-ai/topaz/upscale/image", "fal-ai/topaz/upscale/image", "upscale", 2,
                adapt_topaz_upscale, "Upscale"),
    _image_tool("fal-ai/seedvr/upscale/image", "fal-ai/seedvr/upscale/image", "upscale", 2,
                adapt_seedvr_upscale, "Upscale"),
    _image_tool("skin-realism", "fal-ai/image-editing/realism", "skin-enhancer", 2,
                adapt_skin_retouch, "Skin Enhancement (Realism)"),
    _image_tool("skin-face-enhancement", "fal-ai/image-editing/face-enhancement", "skin-enhancer", 2,
                adapt_skin_retouch, "Skin Enhancement (Face)"),
    _image_tool("skin-retoucher", "fal-ai/image-editing/retouch", "skin-enhancer", 2,
                adapt_skin_retouch, "Skin Enhancement (Retoucher)"),
    ModelSpec(
        model_id="fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles",
        endpoint="fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles",
        tool="angle-change",
        media_type="image",
        cost=2,
        adapter=adapt_angle_change,
        extractor=extract_media_urls,
        label="Angle Change",
        capabilities=frozenset({"image_input", "camera_angle"}),
    ),
    # Proxied image models
    _proxied("fal-ai/gpt-image-1.5", 2),
    _proxied("fal-ai/gpt-image-1.5/edit", 3, capabilities=frozenset({"prompt", "image_input"})),
    _proxied("fal-ai/bytedance/seedream/v4/text-to-image", 3),
    _proxied("fal-ai/flux/dev", 7),
    _proxied("fal-ai/recraft/v3/text-to-image", 4),
    _proxied("fal-ai/minimax/image-01", 1),
    _proxied("fal-ai/ideogram/v3", 8),
    _proxied("fal-ai/luma-photon", 2),
    # Proxied video models
    _proxied("fal-ai/veo2", CostFormula(base=220, free_units=5, per_extra_unit=44, unit_field="duration"),
             media_type="video", label="Video Generation",
             capabilities=frozenset({"prompt", "aspect_ratio", "duration"})),
    _proxied("fal-ai/kling-video/v2.1/standard/text-to-video",
             CostFormula(base=123, free_units=5, per_extra_unit=25, unit_field="duration"),
             media_type="video", label="Video Generation",
             capabilities=frozenset({"prompt", "aspect_ratio", "duration"})),
    _proxied("fal-ai/minimax/video-01", 44, media_type="video", label="Video Generation"),
    _proxied("fal-ai/hunyuan-video", 35, media_type="video", label="Video Generation"),
    _proxied("fal-ai/luma-dream-machine", 50, media_type="video", label="Video Generation"),
    _proxied("fal-ai/kling-video", 45, media_type="video", label="Video Generation"),
    # Proxied voice models
    _proxied("fal-ai/wills-voice", 10, media_type="audio", label="Voice Generation"),
)

MODELS: Dict[str, ModelSpec] = {spec.model_id: spec for spec in _MODELS}

TOOLS: Dict[str, ToolSpec] = {
    "bg-remove": ToolSpec("bg-remove", "fal-ai/bria/background/remove", ("fal-ai/bria/background/remove",)),
    "inpainting": ToolSpec("inpainting", "fal-ai/flux-lora/inpainting", ("fal-ai/flux-lora/inpainting",)),
    "upscale": ToolSpec(
        "upscale",
        "fal-ai/clarity-upscaler",
        ("fal-ai/clarity-upscaler", "fal-ai/topaz/upscale/image", "fal-ai/seedvr/upscale/image"),
    ),
    "skin-enhancer": ToolSpec(
        "skin-enhancer",
        "skin-realism",
        ("skin-realism", "skin-face-enhancement", "skin-retoucher"),
    ),
    "angle-change": ToolSpec(
        "angle-change",
        "fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles",
        ("fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles",),
    ),
}

_DESCRIBERS: Dict[str, Callable[[Mapping[str, Any]], str]] = {
    "fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles": _describe_angle,
    "fal-ai/clarity-upscaler": lambda ui: f"Upscale ({_number(ui, 'scale', 2):g}x)",
    "fal-ai/topaz/upscale/image": lambda ui: f"Upscale ({_number(ui, 'scale', 2):g}x)",
    "fal-ai/seedvr/upscale/image": lambda ui: f"Upscale ({_number(ui, 'scale', 2):g}x)",
}


def get_model_spec(model_id: Optional[str]) -> Optional[ModelSpec]:
    if not model_id:
        return None
    return MODELS.get(model_id)


def get_model_cost(model_id: Optional[str]) -> int:
    """Flat cost for ``model_id``; unknown models resolve to 0."""
    spec = get_model_spec(model_id)
    if spec is None:
        return 0
    if isinstance(spec.cost, CostFormula):
        return spec.cost.base
    return int(spec.cost)


def describe_generation(spec: ModelSpec, ui_input: Mapping[str, Any]) -> str:
    describer = _DESCRIBERS.get(spec.model_id)
    if describer is not None:
        return describer(ui_input or {})
    return spec.describe(ui_input)


def resolve_tool_model(tool: str, model_id: Optional[str]) -> ModelSpec:
    tool_spec = TOOLS.get(tool)
    if tool_spec is None:
        raise InvalidInput(f"Unknown tool: {tool}")
    selected = model_id or tool_spec.default_model
    if selected not in tool_spec.models:
        raise InvalidInput("Invalid Model ID")
    return MODELS[selected]


def resolve_model_for_target_url(target_url: str) -> Optional[ModelSpec]:
    """Find the model whose endpoint is the longest suffix of the URL path."""
    path = urlparse(target_url or "").path.rstrip("/")
    best: Optional[ModelSpec] = None
    for spec in _MODELS:
        endpoint = spec.endpoint.rstrip("/")
        if path == f"/{endpoint}" or path.endswith(f"/{endpoint}"):
            if best is None or len(endpoint) > len(best.endpoint):
                best = spec
    return best


def public_cost_table() -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for spec in _MODELS:
        row: Dict[str, Any] = {
            "model_id": spec.model_id,
            "tool": spec.tool,
            "media_type": spec.media_type,
            "capabilities": sorted(spec.capabilities),
        }
        if isinstance(spec.cost, CostFormula):
            row["cost"] = spec.cost.base
            row["cost_formula"] = {
                "base": spec.cost.base,
                "free_units": spec.cost.free_units,
                "per_extra_unit": spec.cost.per_extra_unit,
                "unit_field": spec.cost.unit_field,
            }
        else:
            row["cost"] = int(spec.cost)
        rows.append(row)
    return rows
