from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from medtriage.schemas.prediction import ModelType


@dataclass(frozen=True)
class ModelConfig:
    """Static description of one classification task.

    ``classes`` is in the order the backend emits probabilities.
    ``normal_classes`` names the labels that mean "no finding"; it does not
    affect ``isPositive`` (threshold only) but decides whether disease
    information is worth generating.
    """

    input_shape: Tuple[int, int, int]
    classes: Tuple[str, ...]
    threshold: float
    normal_classes: FrozenSet[str]
    title: str

    def __post_init__(self) -> None:
        if len(self.input_shape) != 3 or any(dim <= 0 for dim in self.input_shape):
            raise ValueError(f"input_shape must be three positive dimensions, got {self.input_shape}")
        if not self.classes:
            raise ValueError("classes must not be empty")
        if len(set(self.classes)) != len(self.classes):
            raise ValueError(f"classes must be unique, got {self.classes}")
        if not 0.0 < self.threshold < 1.0:
            raise ValueError(f"threshold must be in (0, 1), got {self.threshold}")
        if not self.normal_classes <= set(self.classes):
            raise ValueError("normal_classes must be a subset of classes")

    @property
    def abnormal_classes(self) -> Tuple[str, ...]:
        return tuple(c for c in self.classes if c not in self.normal_classes)


MODEL_CONFIGS: Dict[ModelType, ModelConfig] = {
    ModelType.PNEUMONIA: ModelConfig(
        input_shape=(224, 224, 3),
        classes=("Normal", "Pneumonia"),
        threshold=0.5,
        normal_classes=frozenset({"Normal"}),
        title="Chest X-ray pneumonia screening",
    ),
    ModelType.BRAIN_TUMOR: ModelConfig(
        input_shape=(224, 224, 3),
        classes=("glioma", "meningioma", "notumor"),
        threshold=0.25,
        normal_classes=frozenset({"notumor"}),
        title="Brain MRI/CT tumor classification",
    ),
    ModelType.TUBERCULOSIS: ModelConfig(
        input_shape=(224, 224, 3),
        classes=("Normal", "Tuberculosis"),
        threshold=0.5,
        normal_classes=frozenset({"Normal"}),
        title="Chest X-ray tuberculosis screening",
    ),
}
