"""Base generation-model interface and data types for the model registry."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.errors import ValidationError
from app.jobs.models import JobType


class MediaTransport(str, Enum):
    """How input media reaches the worker."""
    BASE64 = "base64"   # inlined into the request body
    VOLUME = "volume"   # uploaded to the network volume, referenced by path


@dataclass(frozen=True)
class MediaSlot:
    """A named media input accepted by a model (form field name)."""
    name: str
    kind: str  # "image" | "video" | "audio"
    required: bool = False


@dataclass(frozen=True)
class OutputLayout:
    """Where a model family puts its result inside the backend ``output`` map.

    Keys are listed in precedence order within each group.
    """
    inline_keys: Tuple[str, ...]
    legacy_inline_keys: Tuple[str, ...] = ()
    url_keys: Tuple[str, ...] = ()
    path_keys: Tuple[str, ...] = ()
    # Inline payloads must be strictly longer than this to count as base64
    min_inline_length: int = 0
    # Values under this prefix in an inline or path key are network-volume paths
    volume_prefix: Optional[str] = None


IMAGE_LAYOUT = OutputLayout(
    inline_keys=("image",),
    legacy_inline_keys=("image_base64",),
    url_keys=("image_url", "output_url"),
)

VIDEO_LAYOUT = OutputLayout(
    inline_keys=("video", "mp4", "result"),
    legacy_inline_keys=("video_base64",),
    url_keys=("video_url", "output_url"),
    path_keys=("video_path", "file_path"),
    min_inline_length=100,
)

# Upscale workers may write the result to the volume and return its path in an inline key
UPSCALE_LAYOUT = OutputLayout(
    inline_keys=VIDEO_LAYOUT.inline_keys,
    legacy_inline_keys=VIDEO_LAYOUT.legacy_inline_keys,
    url_keys=VIDEO_LAYOUT.url_keys,
    path_keys=VIDEO_LAYOUT.path_keys,
    min_inline_length=VIDEO_LAYOUT.min_inline_length,
    volume_prefix="/runpod-volume/",
)


@dataclass
class ModelSpec:
    """Metadata describing a registered generation model."""
    model_id: str
    name: str
    job_type: JobType
    result_prefix: str
    result_extension: str
    output: OutputLayout
    cost: int = 1
    default_timeout: int = 3600
    requires_prompt: bool = True
    required_params: List[str] = field(default_factory=list)
    param_types: Dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    media: List[MediaSlot] = field(default_factory=list)
    media_transport: MediaTransport = MediaTransport.BASE64
    description: str = ""

    @property
    def missing_output_marker(self) -> str:
        return "no_image_data" if self.job_type == JobType.IMAGE else "no_output"


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def to_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None or an empty string."""
    return {k: v for k, v in values.items() if v is not None and v != ""}


class GenerationModel(ABC):
    """Abstract base class for every model served by a RunPod endpoint.

    To register a new model:
    1. Create (or extend) a module in app/models/
    2. Subclass GenerationModel
    3. Implement spec() and build_input()
    4. The registry auto-discovers it at startup
    """

    @abstractmethod
    def spec(self) -> ModelSpec:
        """Return model metadata."""
        ...

    @abstractmethod
    def build_input(
        self,
        prompt: str,
        params: Dict[str, Any],
        media: Dict[str, str],
    ) -> Dict[str, Any]:
        """Build the ``input`` object of the RunPod request.

        ``media`` maps slot name to what the worker expects for it: a base64
        string or a network-volume path, depending on ``media_transport``.
        """
        ...

    def build_payload(
        self,
        prompt: str,
        params: Dict[str, Any],
        media: Dict[str, str],
    ) -> Dict[str, Any]:
        return {"input": self.build_input(prompt, params, media)}

    def coerce_params(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Convert form strings to the declared parameter types."""
        spec = self.spec()
        params: Dict[str, Any] = {}
        for key, value in raw.items():
            if value is None or value == "":
                continue
            convert = spec.param_types.get(key)
            if convert is None:
                params[key] = value
                continue
            try:
                params[key] = convert(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid value for '{key}': {value!r}") from exc
        return params

    def apply_defaults(
        self,
        params: Dict[str, Any],
        image_size: Optional[Tuple[int, int]] = None,
    ) -> Dict[str, Any]:
        """Fill width/height from the input image when the client left them out."""
        if image_size and "width" in self.spec().param_types:
            params.setdefault("width", image_size[0])
            params.setdefault("height", image_size[1])
        return params

    def validate(self, prompt: str, params: Dict[str, Any], media_names: List[str]) -> None:
        spec = self.spec()
        missing: List[str] = []
        if spec.requires_prompt and not (prompt or "").strip():
            missing.append("prompt")
        missing.extend(p for p in spec.required_params if params.get(p) in (None, ""))
        missing.extend(
            slot.name for slot in spec.media if slot.required and slot.name not in media_names
        )
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
