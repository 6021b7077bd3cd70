from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from medtriage.core.errors import ShapeMismatchError
from medtriage.models.model_config import ModelConfig
from medtriage.schemas.prediction import ClassProbability, ModelType, PredictionResult

# Keyed by exact class string; "{confidence}" is the rounded percentage.
INTERPRETATION_TEMPLATES: Dict[ModelType, Dict[str, str]] = {
    ModelType.PNEUMONIA: {
        "Normal": "Normal chest X-ray. No signs of pneumonia detected ({confidence}% confidence).",
        "Pneumonia": (
            "Pneumonia detected in chest X-ray ({confidence}% confidence). "
            "Recommend medical consultation."
        ),
    },
    ModelType.BRAIN_TUMOR: {
        "glioma": (
            "Glioma type brain tumor detected ({confidence}% confidence). "
            "Immediate medical attention required."
        ),
        "meningioma": (
            "Meningioma type brain tumor detected ({confidence}% confidence). "
            "Medical consultation recommended."
        ),
        "notumor": "No brain tumor detected in scan ({confidence}% confidence).",
    },
    ModelType.TUBERCULOSIS: {
        "Normal": "Normal chest X-ray. No signs of tuberculosis detected ({confidence}% confidence).",
        "Tuberculosis": (
            "Tuberculosis detected in chest X-ray ({confidence}% confidence). "
            "Immediate medical attention required."
        ),
    },
}

GENERIC_TEMPLATE = "{label} detected with {confidence}% confidence."


def to_percent(value: float) -> int:
    """Round half up, so 0.125 -> 13 rather than banker's rounding."""
    return int(math.floor(value * 100 + 0.5))


def interpretation_for(model_type: ModelType, label: str, confidence: int) -> str:
    template = INTERPRETATION_TEMPLATES.get(model_type, {}).get(label)
    if template is None:
        return GENERIC_TEMPLATE.format(label=label, confidence=confidence)
    return template.format(confidence=confidence)


def normalize(
    raw_probabilities: Sequence[float],
    config: ModelConfig,
    model_type: ModelType,
    timestamp: Optional[datetime] = None,
) -> PredictionResult:
    """Turn a raw probability vector into the canonical ``PredictionResult``."""
    if len(raw_probabilities) != len(config.classes):
        raise ShapeMismatchError(
            f"{model_type.value} backend returned {len(raw_probabilities)} probabilities "
            f"for {len(config.classes)} configured classes"
        )

    entries: List[ClassProbability] = []
    for label, raw in zip(config.classes, raw_probabilities):
        value = float(raw)
        if not math.isfinite(value):
            raise ShapeMismatchError(f"{model_type.value} backend returned a non-finite probability for {label}")
        value = min(max(value, 0.0), 1.0)
        entries.append(ClassProbability(label=label, probability=value, confidence=to_percent(value)))

    # sorted() is stable with reverse=True, so ties keep the configured order.
    ranked = sorted(entries, key=lambda entry: entry.probability, reverse=True)
    primary = ranked[0]

    return PredictionResult(
        model_type=model_type,
        prediction=primary.label,
        confidence=primary.confidence,
        probability=primary.probability,
        is_positive=primary.probability >= config.threshold,
        threshold=to_percent(config.threshold),
        all_classes=ranked,
        medical_interpretation=interpretation_for(model_type, primary.label, primary.confidence),
        timestamp=timestamp or datetime.now(timezone.utc),
    )
