from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class ModelType(str, Enum):
    PNEUMONIA = "pneumonia"
    BRAIN_TUMOR = "brainTumor"
    TUBERCULOSIS = "tuberculosis"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class PredictionStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PatientInfo(CamelModel):
    """Patient metadata attached to a prediction request."""

    patient_id: Optional[str] = Field(None, description="External patient key.")
    patient_name: Optional[str] = Field(None, min_length=2, max_length=100)
    age: Optional[int] = Field(None, ge=0, le=150)
    weight: Optional[float] = Field(None, gt=0, le=500, description="Weight in kg.")
    gender: Optional[Gender] = None
    symptoms: Optional[str] = Field(None, max_length=1000)
    medical_history: Optional[str] = Field(None, max_length=2000)

    @property
    def context_text(self) -> str:
        """Symptoms and history as one lower-cased string for keyword matching."""
        return f"{self.symptoms or ''} {self.medical_history or ''}".lower()


class ClassProbability(CamelModel):
    label: str = Field(..., alias="class", description="Class label as configured for the model.")
    probability: float = Field(..., ge=0.0, le=1.0)
    confidence: int = Field(..., ge=0, le=100, description="round(probability * 100).")


class PredictionResult(CamelModel):
    """Canonical classification output.

    The first block of fields is produced once by the normalizer; the optional
    block is only ever added by copy during enrichment and orchestration.
    """

    model_type: ModelType
    prediction: str = Field(..., description="Class with the largest probability.")
    confidence: int = Field(..., ge=0, le=100)
    probability: float = Field(..., ge=0.0, le=1.0)
    is_positive: bool
    threshold: int = Field(..., ge=0, le=100)
    all_classes: List[ClassProbability]
    medical_interpretation: str
    timestamp: datetime

    gemini_interpretation: Optional[str] = None
    interpretation_fallback: Optional[bool] = None
    disease_info: Optional[str] = None
    processing_time: Optional[int] = Field(None, description="Classification time in ms.")
    backend: Optional[str] = None
    substituted_model: Optional[bool] = Field(
        None,
        description="True when a mock model stood in for a missing artifact.",
    )


class PredictionData(CamelModel):
    prediction: PredictionResult
    patient_info: PatientInfo
    prediction_id: Optional[str] = None
    image_url: Optional[str] = None


class PredictionResponse(CamelModel):
    success: bool = True
    message: str = "Prediction completed successfully"
    data: PredictionData
    disclaimer: str = Field(
        "Research prototype only. Results are produced by unvalidated machine-learning "
        "models and are not a medical diagnosis.",
        description="Reminder that the output is non-diagnostic.",
    )


class RecommendationRequest(CamelModel):
    patient_data: Dict[str, Any] = Field(..., min_length=1)
