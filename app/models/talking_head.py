"""Talking-head video models driven by one or two audio tracks."""

from app.errors import ValidationError
from app.jobs.models import JobType
from app.models.base import (
    VIDEO_LAYOUT,
    GenerationModel,
    MediaSlot,
    MediaTransport,
    ModelSpec,
    OutputLayout,
    compact,
    to_bool,
)

# MultiTalk answers with video_base64 as its primary field
MULTITALK_LAYOUT = OutputLayout(
    inline_keys=("video_base64",),
    legacy_inline_keys=("video",),
    url_keys=("video_url", "output_url"),
    path_keys=("video_path", "file_path"),
    min_inline_length=100,
)


class MultiTalk(GenerationModel):
    _spec = ModelSpec(
        model_id="multitalk",
        name="MultiTalk",
        job_type=JobType.VIDEO,
        result_prefix="multitalk_result",
        result_extension="mp4",
        output=MULTITALK_LAYOUT,
        cost=2,
        default_timeout=3600,
        requires_prompt=False,
        param_types={"dual_audio": to_bool},
        media=[
            MediaSlot("image", "image", required=True),
            MediaSlot("audio", "audio", required=True),
            MediaSlot("audio_2", "audio"),
        ],
        media_transport=MediaTransport.VOLUME,
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def build_input(self, prompt, params, media):
        audio_paths = {"person1": media["audio"]}
        data = {
            "prompt": prompt or "a man talking",
            "image_path": media["image"],
            "audio_paths": audio_paths,
        }
        if media.get("audio_2") and params.get("dual_audio", True):
            audio_paths["person2"] = media["audio_2"]
            data["audio_type"] = "para"
        return data


class InfiniteTalk(GenerationModel):
    _spec = ModelSpec(
        model_id="infinite-talk",
        name="Infinite Talk",
        job_type=JobType.VIDEO,
        result_prefix="infinitetalk_result",
        result_extension="mp4",
        output=VIDEO_LAYOUT,
        cost=2,
        default_timeout=3600,
        required_params=["width", "height"],
        param_types={
            "width": int,
            "height": int,
            "input_type": str,
            "person_count": str,
        },
        media=[
            MediaSlot("image", "image"),
            MediaSlot("video", "video"),
            MediaSlot("audio", "audio", required=True),
            MediaSlot("audio_2", "audio"),
        ],
        media_transport=MediaTransport.VOLUME,
    )

    def spec(self) -> ModelSpec:
        return self._spec

    def validate(self, prompt, params, media_names):
        super().validate(prompt, params, media_names)
        if "image" not in media_names and "video" not in media_names:
            raise ValidationError("Missing required fields: image or video")

    def build_input(self, prompt, params, media):
        input_type = params.get("input_type") or ("video" if media.get("video") else "image")
        return compact({
            "prompt": prompt,
            "input_type": input_type,
            "person_count": params.get("person_count") or ("multi" if media.get("audio_2") else "single"),
            "image_path": media.get("image"),
            "video_path": media.get("video"),
            "wav_path": media["audio"],
            "wav_path_2": media.get("audio_2"),
            "width": params["width"],
            "height": params["height"],
            "network_volume": True,
        })
