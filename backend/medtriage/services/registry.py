from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from medtriage.core.errors import ConfigurationError, InvalidImageError, UnknownModelType
from medtriage.models.model_config import MODEL_CONFIGS, ModelConfig
from medtriage.schemas.prediction import ModelType
from medtriage.services.backends import BackendName, BackendOutput, ClassificationContext, ClassifierBackend

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


def parse_model_type(value: ModelType | str) -> ModelType:
    try:
        return ModelType(value)
    except ValueError:
        raise UnknownModelType(value) from None


class ClassifierRegistry:
    """Owns the model configurations and dispatches images to a backend."""

    def __init__(
        self,
        backends: Mapping[str, ClassifierBackend],
        configs: Mapping[ModelType, ModelConfig] = MODEL_CONFIGS,
        max_image_bytes: int = MAX_IMAGE_BYTES,
    ) -> None:
        self._backends = {BackendName(name).value: backend for name, backend in backends.items()}
        self._configs = dict(configs)
        self._max_image_bytes = max_image_bytes

    @property
    def configs(self) -> Mapping[ModelType, ModelConfig]:
        return self._configs

    def get_config(self, model_type: ModelType | str) -> ModelConfig:
        model_type = parse_model_type(model_type)
        try:
            return self._configs[model_type]
        except KeyError:
            raise UnknownModelType(model_type.value) from None

    def get_backend(self, backend: str) -> ClassifierBackend:
        try:
            return self._backends[BackendName(backend).value]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Classifier backend '{backend}' is not configured") from None

    def validate_image(self, image_bytes: Optional[bytes]) -> None:
        if not image_bytes:
            raise InvalidImageError("Image data cannot be empty")
        if len(image_bytes) > self._max_image_bytes:
            limit_mb = self._max_image_bytes // (1024 * 1024)
            raise InvalidImageError(f"Image file too large (max {limit_mb}MB)")

    def classify(
        self,
        image_bytes: bytes,
        model_type: ModelType | str,
        backend: str,
        context: Optional[ClassificationContext] = None,
    ) -> BackendOutput:
        self.validate_image(image_bytes)
        model_type = parse_model_type(model_type)
        self.get_config(model_type)
        adapter = self.get_backend(backend)

        logger.info("Classifying %d bytes with %s/%s", len(image_bytes), adapter.name, model_type.value)
        return adapter.classify(image_bytes, model_type, context)

    def describe(self, backend: Optional[str] = None) -> List[Dict[str, Any]]:
        """Model information for every configured model type."""
        adapter = self.get_backend(backend) if backend else None
        loaded = set(adapter.loaded_model_types()) if adapter else set()

        info: List[Dict[str, Any]] = []
        for model_type, config in self._configs.items():
            info.append(
                {
                    "modelType": model_type.value,
                    "title": config.title,
                    "inputShape": list(config.input_shape),
                    "classes": list(config.classes),
                    "threshold": config.threshold,
                    "backend": adapter.name if adapter else None,
                    "isLoaded": model_type in loaded,
                }
            )
        return info
