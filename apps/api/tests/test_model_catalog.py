import pytest

from services.errors import InvalidInput, MissingInput
from services.model_catalog import (
    MODELS,
    TOOLS,
    adapt_angle_change,
    adapt_inpainting,
    adapt_skin_retouch,
    compute_cost,
    describe_generation,
    extract_media_urls,
    get_model_cost,
    get_model_spec,
    public_cost_table,
    resolve_model_for_target_url,
    resolve_tool_model,
)


def test_tool_costs_match_price_list():
    assert get_model_cost("fal-ai/bria/background/remove") == 2
    assert get_model_cost("fal-ai/flux-lora/inpainting") == 8
    assert get_model_cost("fal-ai/clarity-upscaler") == 2
    assert get_model_cost("skin-retoucher") == 2
    assert get_model_cost("fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles") == 2
    assert get_model_cost("fal-ai/flux/dev") == 7
    assert get_model_cost("fal-ai/gpt-image-1.5/edit") == 3


def test_unknown_model_costs_zero():
    assert get_model_cost("fal-ai/not-a-model") == 0
    assert get_model_cost(None) == 0
    assert get_model_spec("") is None


def test_video_duration_formula():
    veo = get_model_spec("fal-ai/veo2")
    kling = get_model_spec("fal-ai/kling-video/v2.1/standard/text-to-video")

    assert compute_cost(veo, {}) == 220
    assert compute_cost(veo, {"duration": "5s"}) == 220
    assert compute_cost(veo, {"duration": "8s"}) == 220 + 3 * 44
    assert compute_cost(kling, {"duration": 10}) == 123 + 5 * 25
    assert get_model_cost("fal-ai/veo2") == 220

    with pytest.raises(InvalidInput):
        compute_cost(veo, {"duration": "long"})


def test_every_tool_default_is_a_known_model():
    for tool in TOOLS.values():
        assert tool.default_model in tool.models
        for model_id in tool.models:
            assert MODELS[model_id].tool == tool.name
            assert get_model_cost(model_id) > 0


def test_resolve_tool_model_rejects_foreign_models():
    assert resolve_tool_model("upscale", None).model_id == "fal-ai/clarity-upscaler"
    assert resolve_tool_model("upscale", "fal-ai/topaz/upscale/image").endpoint == "fal-ai/topaz/upscale/image"

    with pytest.raises(InvalidInput) as exc:
        resolve_tool_model("upscale", "fal-ai/flux/dev")
    assert exc.value.message == "Invalid Model ID"

    with pytest.raises(InvalidInput):
        resolve_tool_model("colorize", None)


def test_skin_tool_ids_map_to_editing_endpoints():
    assert resolve_tool_model("skin-enhancer", "skin-realism").endpoint == "fal-ai/image-editing/realism"
    assert resolve_tool_model("skin-enhancer", "skin-face-enhancement").endpoint == "fal-ai/image-editing/face-enhancement"
    assert resolve_tool_model("skin-enhancer", None).model_id == "skin-realism"


def test_inpainting_requires_image_mask_and_prompt():
    with pytest.raises(MissingInput):
        adapt_inpainting({"image_url": "https://x/img.png", "prompt": "a hat"})

    payload = adapt_inpainting({"image_url": "https://x/img.png", "mask_url": "https://x/mask.png", "prompt": "a hat"})
    assert payload["mask_url"] == "https://x/mask.png"
    assert payload["prompt"] == "a hat"


def test_skin_retouch_sends_only_the_source_image():
    assert adapt_skin_retouch({"image_urls": ["https://x/a.png"], "strength": 3}) == {"image_url": "https://x/a.png"}
    with pytest.raises(MissingInput):
        adapt_skin_retouch({})


def test_angle_change_maps_ui_ranges():
    payload = adapt_angle_change({"image_url": "https://x/a.png", "yaw": 45, "pitch": 45, "zoom": 50})

    assert payload["image_urls"] == ["https://x/a.png"]
    assert payload["rotate_right_left"] == 45
    assert payload["vertical_angle"] == 0.5
    assert payload["move_forward"] == 5

    spec = get_model_spec("fal-ai/qwen-image-edit-plus-lora-gallery/multiple-angles")
    assert describe_generation(spec, {"image_url": "https://x/a.png", "yaw": 45, "pitch": 45, "zoom": 50}) == (
        "Angle: Y45 P0.5 Z5"
    )


def test_extract_media_urls_handles_every_shape():
    assert extract_media_urls({"image": {"url": "https://a"}}) == ["https://a"]
    assert extract_media_urls({"images": [{"url": "https://a"}, {"url": "https://b"}]}) == ["https://a", "https://b"]
    assert extract_media_urls({"data": {"video": {"url": "https://v"}}}) == ["https://v"]
    assert extract_media_urls({"audio_file": {"url": "https://s"}}) == ["https://s"]
    assert extract_media_urls({"status": "IN_QUEUE"}) == []


def test_target_url_resolution_prefers_longest_endpoint():
    assert resolve_model_for_target_url("https://queue.fal.run/fal-ai/flux/dev").model_id == "fal-ai/flux/dev"
    assert (
        resolve_model_for_target_url("https://fal.run/fal-ai/gpt-image-1.5/edit").model_id
        == "fal-ai/gpt-image-1.5/edit"
    )
    assert (
        resolve_model_for_target_url("https://queue.fal.run/fal-ai/kling-video/v2.1/standard/text-to-video").model_id
        == "fal-ai/kling-video/v2.1/standard/text-to-video"
    )
    assert resolve_model_for_target_url("https://queue.fal.run/fal-ai/unknown-model") is None


def test_public_cost_table_lists_formulas():
    rows = {row["model_id"]: row for row in public_cost_table()}
    assert rows["fal-ai/flux/dev"]["cost"] == 7
    assert rows["fal-ai/veo2"]["cost_formula"]["per_extra_unit"] == 44
