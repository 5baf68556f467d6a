"""Model registry with auto-discovery of generation models."""

import importlib
import inspect
import logging
import pkgutil
from typing import Dict, List, Optional

from app.errors import ValidationError
from app.jobs.models import JobType
from app.models.base import GenerationModel, ModelSpec

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Discovers and serves generation models.

    - Auto-discovers GenerationModel subclasses in app/models/
    - Looks models up by their RunPod-facing model id
    """

    def __init__(self):
        self._models: Dict[str, GenerationModel] = {}

    def discover(self) -> None:
        """Scan app.models package for GenerationModel subclasses and register them."""
        import app.models as models_pkg

        for importer, modname, ispkg in pkgutil.walk_packages(
            models_pkg.__path__, prefix="app.models."
        ):
            if ispkg:
                continue
            if modname in ("app.models.base", "app.models.registry"):
                continue
            try:
                mod = importlib.import_module(modname)
            except Exception:
                logger.exception("Failed to import model module %s", modname)
                continue

            for name, obj in inspect.getmembers(mod, inspect.isclass):
                if (
                    issubclass(obj, GenerationModel)
                    and obj is not GenerationModel
                    and not inspect.isabstract(obj)
                    and obj.__module__ == modname
                ):
                    self.register(obj())

    def register(self, model: GenerationModel) -> None:
        spec = model.spec()
        self._models[spec.model_id] = model
        logger.info("Registered model: %s (%s)", spec.model_id, spec.name)

    def list_models(self, job_type: Optional[JobType] = None) -> List[ModelSpec]:
        """List registered models, optionally filtered by output type."""
        specs = [m.spec() for m in self._models.values()]
        if job_type:
            specs = [s for s in specs if s.job_type == job_type]
        return sorted(specs, key=lambda s: s.model_id)

    def get(self, model_id: str) -> Optional[GenerationModel]:
        """Get a model by ID."""
        return self._models.get(model_id)

    def require(self, model_id: str) -> GenerationModel:
        model = self._models.get(model_id)
        if model is None:
            raise ValidationError(f"Unknown model '{model_id}'")
        return model

    def __len__(self) -> int:
        return len(self._models)


# Global registry instance
registry = ModelRegistry()
