"""Video models served from the network volume: WAN 2.2, WAN Animate, upscaler."""

from typing import Any, Dict, List

from app.jobs.models import JobType
from app.models.base import (
    UPSCALE_LAYOUT,
    VIDEO_LAYOUT,
    GenerationModel,
    MediaSlot,
    MediaTransport,
    ModelSpec,
    compact,
    to_bool,
    to_json,
)

LORA_VOLUME_PREFIX = "/runpod-volume/loras/"
MAX_LORA_PAIRS = 4


def _lora_param_types() -> Dict[str, Any]:
    types: Dict[str, Any] = {}
    for i in range(1, MAX_LORA_PAIRS + 1):
        types[f"lora_high_{i}"] = str
        types[f"lora_low_{i}"] = str
        types[f"lora_high_{i}_weight"] = float
        types[f"lora_low_{i}_weight"] = float
    return types


def build_lora_pairs(params: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Collect lora_high_N / lora_low_N params into the worker's lora_pairs list.

    A pair is only emitted when both halves are present.
    """
    pairs = []
    for i in range(1, MAX_LORA_PAIRS + 1):
        high = params.get(f"lora_high_{i}")
        low = params.get(f"lora_low_{i}")
        if not (high and low):
            continue
        pairs.append({
            "high": high.replace(LORA_VOLUME_PREFIX, "", 1) if high.startswith(LORA_VOLUME_PREFIX) else high,
            "low": low.replace(LORA_VOLUME_PREFIX, "", 1) if low.startswith(LORA_VOLUME_PREFIX) else low,
            "high_weight": params.get(f"lora_high_{i}_weight", 1.0),
            "low_weight": params.get(f"lora_low_{i}_weight", 1.0),
        })
    return pairs


class Wan22(GenerationModel):
    _spec = ModelSpec(
        model_id="wan22",
        name="WAN 2.2",
        job_type=JobType.VIDEO,
        result_prefix="wan22_result",
        result_extension="mp4",
        output=VIDEO_LAYOUT,
        cost=2,
        default_timeout=3600,
        required_params=["width", "height"],
        param_types={
            "width": int,
            "height": int,
            "seed": int,
            "cfg": float,
            "length": int,
            "steps": int,
            "context_overlap": int,
            **_lora_param_types(),
        },
        media=[
            MediaSlot("image", "image", required=True),
            MediaSlot("end_image", "image"),
        ],
        media_transport=MediaTransport.VOLUME,
        description="Image-to-video with optional end frame and LoRA pairs",
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        data = compact({
            "prompt": prompt,
            "image_path": media["image"],
            "width": params["width"],
            "height": params["height"],
            "seed": params.get("seed"),
            "cfg": params.get("cfg"),
            "length": params.get("length"),
            "steps": params.get("steps"),
            "context_overlap": params.get("context_overlap"),
            "end_image_path": media.get("end_image"),
        })
        pairs = build_lora_pairs(params)
        if pairs:
            data["lora_pairs"] = pairs
        return data


class WanAnimate(GenerationModel):
    _spec = ModelSpec(
        model_id="wan-animate",
        name="WAN Animate",
        job_type=JobType.VIDEO,
        result_prefix="wan_animate_result",
        result_extension="mp4",
        output=VIDEO_LAYOUT,
        cost=3,
        default_timeout=3600,
        required_params=["width", "height"],
        param_types={
            "width": int,
            "height": int,
            "seed": int,
            "cfg": float,
            "steps": int,
            "fps": int,
            "mode": str,
            "positive_prompt": str,
            "points_store": to_json,
            "coordinates": to_json,
            "neg_coordinates": to_json,
        },
        media=[
            MediaSlot("image", "image", required=True),
            MediaSlot("video", "video"),
        ],
        media_transport=MediaTransport.VOLUME,
        description="Character animation driven by a reference video",
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        return compact({
            "prompt": prompt,
            "positive_prompt": params.get("positive_prompt") or prompt,
            "seed": params.get("seed"),
            "cfg": params.get("cfg"),
            "steps": params.get("steps"),
            "width": params["width"],
            "height": params["height"],
            "fps": params.get("fps"),
            "mode": params.get("mode"),
            "points_store": params.get("points_store"),
            "coordinates": params.get("coordinates"),
            "neg_coordinates": params.get("neg_coordinates"),
            "image_path": media.get("image"),
            "video_path": media.get("video"),
        })


class VideoUpscale(GenerationModel):
    _spec = ModelSpec(
        model_id="video-upscale",
        name="Video Upscale",
        job_type=JobType.VIDEO,
        result_prefix="upscale_result",
        result_extension="mp4",
        output=UPSCALE_LAYOUT,
        cost=1,
        default_timeout=3600,
        requires_prompt=False,
        param_types={"task_type": str, "interpolation": to_bool},
        media=[MediaSlot("video", "video", required=True)],
        media_transport=MediaTransport.VOLUME,
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        task_type = params.get("task_type")
        if not task_type:
            task_type = "upscale_and_interpolation" if params.get("interpolation") else "upscale"
        return {
            "video_path": media["video"],
            "task_type": task_type,
            "network_volume": True,
        }
