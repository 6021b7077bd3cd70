"""Heuristic model-type selection for uploads without an explicit model type.

Each model type owns one filename keyword group and one symptom/history
keyword group (English and Turkish terms). A group contributes its weight
once if any of its keywords occurs as a case-insensitive substring.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from medtriage.schemas.prediction import ModelType, PatientInfo

logger = logging.getLogger(__name__)

FILENAME_WEIGHT = 3
CONTEXT_WEIGHT = 2

# Ties at the top score resolve to the earliest entry.
SELECTION_PRIORITY: Tuple[ModelType, ...] = (
    ModelType.PNEUMONIA,
    ModelType.BRAIN_TUMOR,
    ModelType.TUBERCULOSIS,
)
DEFAULT_MODEL_TYPE = ModelType.PNEUMONIA

FILENAME_KEYWORDS: Dict[ModelType, Tuple[str, ...]] = {
    ModelType.PNEUMONIA: ("xray", "chest", "lung", "thorax", "pneumonia", "pneu"),
    ModelType.BRAIN_TUMOR: (
        "brain",
        "mri",
        "ct",
        "head",
        "tumor",
        "glioma",
        "meningioma",
        "cranial",
    ),
    ModelType.TUBERCULOSIS: ("tb", "tuberculosis", "tbc", "koch", "mycobacterium"),
}

CONTEXT_KEYWORDS: Dict[ModelType, Tuple[str, ...]] = {
    ModelType.PNEUMONIA: (
        "cough",
        "fever",
        "chest pain",
        "breathing",
        "öksürük",
        "ateş",
        "göğüs ağrısı",
        "nefes",
    ),
    ModelType.BRAIN_TUMOR: (
        "headache",
        "seizure",
        "vision",
        "memory",
        "baş ağrısı",
        "nöbet",
        "görme",
        "hafıza",
    ),
    ModelType.TUBERCULOSIS: (
        "night sweat",
        "weight loss",
        "fatigue",
        "blood cough",
        "gece terlemesi",
        "kilo kaybı",
        "yorgunluk",
        "kanlı öksürük",
    ),
}


def matches_group(text: str, keywords: Tuple[str, ...]) -> bool:
    text = text.lower()
    return any(keyword in text for keyword in keywords)


def score_models(filename: str, patient_info: Optional[PatientInfo] = None) -> Dict[ModelType, int]:
    """Return the keyword score of every model type, in priority order."""
    name = (filename or "").lower()
    context = patient_info.context_text if patient_info is not None else ""

    scores: Dict[ModelType, int] = {}
    for model_type in SELECTION_PRIORITY:
        score = 0
        if matches_group(name, FILENAME_KEYWORDS[model_type]):
            score += FILENAME_WEIGHT
        if context.strip() and matches_group(context, CONTEXT_KEYWORDS[model_type]):
            score += CONTEXT_WEIGHT
        scores[model_type] = score
    return scores


def select_model(filename: str, patient_info: Optional[PatientInfo] = None) -> ModelType:
    scores = score_models(filename, patient_info)
    best = max(scores.values())
    if best == 0:
        logger.info("No model indicators in %r, defaulting to %s", filename, DEFAULT_MODEL_TYPE.value)
        return DEFAULT_MODEL_TYPE

    selected = next(model_type for model_type in SELECTION_PRIORITY if scores[model_type] == best)
    logger.info(
        "Auto-selected %s (score %d) for %r; scores=%s",
        selected.value,
        best,
        filename,
        {m.value: s for m, s in scores.items()},
    )
    return selected
