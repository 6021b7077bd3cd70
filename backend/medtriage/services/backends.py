"""Classification backends.

Every backend turns raw image bytes into a probability vector ordered like
``ModelConfig.classes``. The backends differ in where the model comes from and
in what they do when it is missing:

* ``PrimaryBackend`` loads local torchvision checkpoints and fails hard with
  ``ModelLoadError`` when an artifact is missing or corrupt.
* ``AlternateBackend`` fetches TorchScript artifacts over HTTP. When a fetch or
  load fails it follows its ``MockSubstitutionPolicy``: substitute a random
  mock classifier (outputs are flagged ``substituted``) or fail like primary.
* ``DemoBackend`` has no model at all and derives a deterministic vector from
  the upload. It is chosen by configuration, never as a fallback.
"""

from __future__ import annotations

import hashlib
import logging
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

import httpx
import torch

from medtriage.core.errors import ModelLoadError
from medtriage.models.classifier_network import ClassifierArtifacts, load_classifier_checkpoint
from medtriage.models.model_config import ModelConfig
from medtriage.schemas.prediction import ModelType, PatientInfo
from medtriage.services.imaging import preprocess_image
from medtriage.services.selector import CONTEXT_KEYWORDS, matches_group

logger = logging.getLogger(__name__)

_DEVICE = torch.device("cuda" if torch.cuda.is_available() else "cpu")

T = TypeVar("T")


class BackendName(str, Enum):
    PRIMARY = "primary"
    ALTERNATE = "alternate"
    DEMO = "demo"


class MockSubstitutionPolicy(str, Enum):
    SUBSTITUTE = "substitute"
    FAIL = "fail"


@dataclass(frozen=True)
class ClassificationContext:
    filename: str = ""
    patient_info: Optional[PatientInfo] = None


@dataclass(frozen=True)
class BackendOutput:
    probabilities: List[float]
    backend: str
    substituted: bool = False


class LazyModelCache(Generic[T]):
    """Per-model-type memoized loader.

    Each model type has its own lock, so concurrent first requests for one type
    trigger a single load while other types load independently. A load that
    raises is not memoized and will be attempted again by the next caller.
    """

    def __init__(self, loader: Callable[[ModelType], T]) -> None:
        self._loader = loader
        self._entries: Dict[ModelType, T] = {}
        self._locks: Dict[ModelType, threading.Lock] = {model_type: threading.Lock() for model_type in ModelType}

    def get(self, model_type: ModelType) -> T:
        entry = self._entries.get(model_type)
        if entry is not None:
            return entry

        with self._locks[model_type]:
            entry = self._entries.get(model_type)
            if entry is None:
                entry = self._loader(model_type)
                self._entries[model_type] = entry
        return entry

    def loaded(self) -> List[ModelType]:
        return [model_type for model_type in ModelType if model_type in self._entries]


def _softmax_inference(model: Callable[[torch.Tensor], torch.Tensor], tensor: torch.Tensor) -> List[float]:
    logits = None
    probs = None
    try:
        with torch.no_grad():
            logits = model(tensor)
            probs = torch.softmax(logits, dim=1).squeeze(0)
            return [float(p) for p in probs.cpu().tolist()]
    finally:
        del logits, probs


class ClassifierBackend(ABC):
    name: str

    def __init__(self, configs: Mapping[ModelType, ModelConfig]) -> None:
        self._configs = configs

    @abstractmethod
    def classify(
        self,
        image_bytes: bytes,
        model_type: ModelType,
        context: Optional[ClassificationContext] = None,
    ) -> BackendOutput:
        """Return the class-probability vector for one image."""

    def loaded_model_types(self) -> List[ModelType]:
        return []


class PrimaryBackend(ClassifierBackend):
    """Locally stored checkpoints, one directory per model type."""

    name = BackendName.PRIMARY.value

    def __init__(
        self,
        configs: Mapping[ModelType, ModelConfig],
        model_dir: Path | str,
        device: torch.device | str = _DEVICE,
        loader: Callable[[Path, torch.device | str], ClassifierArtifacts] = load_classifier_checkpoint,
    ) -> None:
        super().__init__(configs)
        self._model_dir = Path(model_dir)
        self._device = device
        self._loader = loader
        self._cache: LazyModelCache[ClassifierArtifacts] = LazyModelCache(self._load)

    def _load(self, model_type: ModelType) -> ClassifierArtifacts:
        path = self._model_dir / model_type.value
        logger.info("Loading %s classifier from %s", model_type.value, path)
        try:
            artifacts = self._loader(path, self._device)
        except FileNotFoundError as exc:
            raise ModelLoadError(f"Model artifact for {model_type.value} not found at {path}") from exc
        except Exception as exc:
            raise ModelLoadError(f"Failed to load {model_type.value} model: {exc}") from exc

        expected = list(self._configs[model_type].classes)
        if list(artifacts.classes) != expected:
            raise ModelLoadError(
                f"Checkpoint classes {artifacts.classes} do not match configured classes {expected} "
                f"for {model_type.value}"
            )
        logger.info("Loaded %s classifier (%d classes)", model_type.value, len(expected))
        return artifacts

    def classify(
        self,
        image_bytes: bytes,
        model_type: ModelType,
        context: Optional[ClassificationContext] = None,
    ) -> BackendOutput:
        artifacts = self._cache.get(model_type)
        tensor = preprocess_image(image_bytes, self._configs[model_type].input_shape).to(self._device)
        try:
            probabilities = _softmax_inference(artifacts.model, tensor)
        finally:
            del tensor
        return BackendOutput(probabilities=probabilities, backend=self.name)

    def loaded_model_types(self) -> List[ModelType]:
        return self._cache.loaded()


class MockClassifier:
    """Stand-in for a model whose artifact could not be loaded."""

    def __init__(self, num_classes: int, rng: Optional[random.Random] = None) -> None:
        self._num_classes = num_classes
        self._rng = rng or random.Random()

    def predict(self) -> List[float]:
        raw = [self._rng.random() + 1e-6 for _ in range(self._num_classes)]
        total = sum(raw)
        return [value / total for value in raw]


@dataclass
class _LoadedModel:
    model: Any
    substituted: bool = False
    error: Optional[str] = field(default=None)


class AlternateBackend(ClassifierBackend):
    """TorchScript artifacts fetched from ``{artifact_base_url}/{modelType}/model.pt``."""

    name = BackendName.ALTERNATE.value

    def __init__(
        self,
        configs: Mapping[ModelType, ModelConfig],
        artifact_base_url: str,
        policy: MockSubstitutionPolicy = MockSubstitutionPolicy.SUBSTITUTE,
        device: torch.device | str = _DEVICE,
        fetcher: Optional[Callable[[str], bytes]] = None,
        fetch_timeout: float = 30.0,
    ) -> None:
        super().__init__(configs)
        self._base_url = artifact_base_url.rstrip("/")
        self._policy = MockSubstitutionPolicy(policy)
        self._device = device
        self._fetch_timeout = fetch_timeout
        self._fetcher = fetcher or self._fetch
        self._cache: LazyModelCache[_LoadedModel] = LazyModelCache(self._load)

    def artifact_url(self, model_type: ModelType) -> str:
        return f"{self._base_url}/{model_type.value}/model.pt"

    def _fetch(self, url: str) -> bytes:
        response = httpx.get(url, timeout=self._fetch_timeout, follow_redirects=True)
        response.raise_for_status()
        return response.content

    def _load(self, model_type: ModelType) -> _LoadedModel:
        url = self.artifact_url(model_type)
        logger.info("Fetching %s model artifact from %s", model_type.value, url)
        try:
            data = self._fetcher(url)
            with BytesIO(data) as buf:
                module = torch.jit.load(buf, map_location=self._device)
            module.eval()
            logger.info("Loaded %s TorchScript model", model_type.value)
            return _LoadedModel(model=module)
        except Exception as exc:
            if self._policy is MockSubstitutionPolicy.FAIL:
                raise ModelLoadError(f"Failed to load {model_type.value} model from {url}: {exc}") from exc
            logger.warning(
                "Model %s unavailable (%s); substituting a mock classifier. Results will be flagged.",
                model_type.value,
                exc,
            )
            num_classes = len(self._configs[model_type].classes)
            return _LoadedModel(model=MockClassifier(num_classes), substituted=True, error=str(exc))

    def classify(
        self,
        image_bytes: bytes,
        model_type: ModelType,
        context: Optional[ClassificationContext] = None,
    ) -> BackendOutput:
        entry = self._cache.get(model_type)
        # Decode even for the mock so that corrupt uploads are still rejected.
        tensor = preprocess_image(image_bytes, self._configs[model_type].input_shape).to(self._device)
        try:
            if entry.substituted:
                logger.warning("Mock prediction for %s (real model unavailable)", model_type.value)
                probabilities = entry.model.predict()
            else:
                probabilities = _softmax_inference(entry.model, tensor)
        finally:
            del tensor
        return BackendOutput(probabilities=probabilities, backend=self.name, substituted=entry.substituted)

    def loaded_model_types(self) -> List[ModelType]:
        return self._cache.loaded()


class DemoBackend(ClassifierBackend):
    """Deterministic simulation used when real inference is disabled.

    The vector is seeded from the image bytes and model type. It leans toward a
    class whose label appears in the filename, otherwise toward an abnormal
    class when the patient context matches the model's symptom keywords, and
    otherwise toward the normal class.
    """

    name = BackendName.DEMO.value

    def classify(
        self,
        image_bytes: bytes,
        model_type: ModelType,
        context: Optional[ClassificationContext] = None,
    ) -> BackendOutput:
        config = self._configs[model_type]
        classes = list(config.classes)
        digest = hashlib.sha256(model_type.value.encode("utf-8") + image_bytes).digest()
        rng = random.Random(int.from_bytes(digest[:8], "big"))

        weights = [rng.uniform(0.1, 0.4) for _ in classes]
        filename = (context.filename if context else "").lower()
        patient_text = context.patient_info.context_text if context and context.patient_info else ""

        named = [label for label in classes if label.lower() in filename]
        if named:
            weights[classes.index(named[0])] += 0.6
        elif config.abnormal_classes and matches_group(patient_text, CONTEXT_KEYWORDS[model_type]):
            weights[classes.index(rng.choice(config.abnormal_classes))] += 0.5
        elif config.normal_classes:
            weights[classes.index(sorted(config.normal_classes)[0])] += 0.3

        total = sum(weights)
        return BackendOutput(probabilities=[w / total for w in weights], backend=self.name)
