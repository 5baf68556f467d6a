"""Image models: FLUX Krea / Kontext, Qwen image edit, Z-Image."""

from typing import Any, Dict

from app.jobs.models import JobType
from app.models.base import (
    IMAGE_LAYOUT,
    GenerationModel,
    MediaSlot,
    ModelSpec,
    compact,
    to_bool,
    to_json,
)

_SIZE_TYPES = {"width": int, "height": int, "seed": int}


def _seed(params: Dict[str, Any], default: int) -> int:
    seed = params.get("seed")
    return default if seed is None or seed == -1 else seed


class FluxKrea(GenerationModel):
    _spec = ModelSpec(
        model_id="flux-krea",
        name="FLUX Krea",
        job_type=JobType.IMAGE,
        result_prefix="result",
        result_extension="png",
        output=IMAGE_LAYOUT,
        cost=1,
        default_timeout=1800,
        required_params=["width", "height"],
        param_types={
            **_SIZE_TYPES,
            "guidance": float,
            "model": str,
            "lora": str,
            "lora_weight": float,
        },
        description="Text-to-image with optional single LoRA",
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        data = {
            "prompt": prompt,
            "width": params["width"],
            "height": params["height"],
            "seed": params.get("seed"),
            "guidance": params.get("guidance"),
            "model": params.get("model"),
        }
        if params.get("lora"):
            # worker expects [["file.safetensors", weight]]
            data["lora"] = [[params["lora"], params.get("lora_weight", 1.0)]]
        return compact(data)


class FluxKontext(GenerationModel):
    _spec = ModelSpec(
        model_id="flux-kontext",
        name="FLUX Kontext",
        job_type=JobType.IMAGE,
        result_prefix="result",
        result_extension="png",
        output=IMAGE_LAYOUT,
        cost=1,
        default_timeout=3600,
        required_params=["width", "height"],
        param_types={**_SIZE_TYPES, "guidance": float, "cfg": float},
        media=[MediaSlot("image", "image", required=True)],
        description="Instruction-based image editing",
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        return compact({
            "prompt": prompt,
            "image_path": media["image"],
            "width": params["width"],
            "height": params["height"],
            "seed": _seed(params, 42),
            "guidance": params.get("guidance", params.get("cfg")),
        })


class QwenImageEdit(GenerationModel):
    _spec = ModelSpec(
        model_id="qwen-image-edit",
        name="Qwen Image Edit",
        job_type=JobType.IMAGE,
        result_prefix="result",
        result_extension="png",
        output=IMAGE_LAYOUT,
        cost=1,
        default_timeout=3600,
        required_params=["width", "height"],
        param_types={
            **_SIZE_TYPES,
            "steps": int,
            "guidance": float,
            "guidance_scale": float,
        },
        media=[
            MediaSlot("image", "image", required=True),
            MediaSlot("image_2", "image"),
        ],
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        return compact({
            "prompt": prompt,
            "image_path": media["image"],
            "image_path_2": media.get("image_2"),
            "seed": _seed(params, 42),
            "width": params["width"],
            "height": params["height"],
            "steps": params.get("steps"),
            "guidance_scale": params.get("guidance_scale", params.get("guidance")),
        })


class ZImage(GenerationModel):
    _spec = ModelSpec(
        model_id="z-image",
        name="Z-Image",
        job_type=JobType.IMAGE,
        result_prefix="result",
        result_extension="png",
        output=IMAGE_LAYOUT,
        cost=1,
        default_timeout=1800,
        required_params=["width", "height"],
        param_types={
            **_SIZE_TYPES,
            "steps": int,
            "cfg": float,
            "negative_prompt": str,
            "use_controlnet": to_bool,
            "lora": to_json,
        },
        media=[MediaSlot("condition_image", "image")],
        description="Text-to-image with optional ControlNet conditioning",
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        data = compact({
            "prompt": prompt,
            "seed": params.get("seed"),
            "width": params["width"],
            "height": params["height"],
            "steps": params.get("steps"),
            "cfg": params.get("cfg"),
            "negativePrompt": params.get("negative_prompt"),
            "condition_image": media.get("condition_image"),
        })
        if "use_controlnet" in params:
            data["use_controlnet"] = params["use_controlnet"]
        lora = params.get("lora")
        if isinstance(lora, list) and lora:
            # [["/my_volume/loras/style.safetensors", 0.8], ...]
            data["lora"] = lora
        return data
