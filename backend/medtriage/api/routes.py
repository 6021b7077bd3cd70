from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi import status as http_status
from pydantic import ValidationError as SchemaValidationError

from medtriage.api.deps import get_current_identity, get_services
from medtriage.core.errors import InvalidImageError, MissingImageError, UnknownModelType, ValidationError
from medtriage.schemas.prediction import (
    ModelType,
    PatientInfo,
    PredictionData,
    PredictionResponse,
    RecommendationRequest,
)
from medtriage.services.container import ServiceContainer
from medtriage.services.identity import Identity
from medtriage.services.orchestrator import AUTO_MODEL_TYPE, UploadedImage

router = APIRouter(prefix="/prediction", tags=["prediction"])

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".bmp", ".tiff", ".dcm", ".nii"}
ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "application/dicom",
    "application/octet-stream",
}
_MODEL_TYPE_CHOICES = {model_type.value for model_type in ModelType} | {AUTO_MODEL_TYPE}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


async def _read_upload(file: Optional[UploadFile], max_bytes: int) -> UploadedImage:
    if file is None or not file.filename:
        raise MissingImageError()

    extension = Path(file.filename).suffix.lower()
    content_type = (file.content_type or "application/octet-stream").lower()
    if extension not in ALLOWED_EXTENSIONS or content_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidImageError("Invalid file type. Please upload a valid medical image file.")

    # Read one byte past the limit so oversized uploads are rejected without buffering them whole.
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise InvalidImageError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")
    if not content:
        raise MissingImageError()
    return UploadedImage(content=content, filename=file.filename, content_type=content_type)


@router.post(
    "/predict",
    response_model=PredictionResponse,
    status_code=http_status.HTTP_201_CREATED,
    summary="Classify a medical image and interpret the result",
)
async def predict(
    file: Optional[UploadFile] = File(None, description="Medical image (X-ray, MRI/CT, DICOM, NIfTI)."),
    patient_id: Optional[str] = Form(None, alias="patientId"),
    patient_name: Optional[str] = Form(None, alias="patientName"),
    age: Optional[int] = Form(None),
    weight: Optional[float] = Form(None),
    gender: Optional[str] = Form(None),
    symptoms: Optional[str] = Form(None),
    medical_history: Optional[str] = Form(None, alias="medicalHistory"),
    model_type: Optional[str] = Form(None, alias="modelType"),
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> PredictionResponse:
    """Run the prediction pipeline for one uploaded image.

    ``modelType`` may name a model or be ``auto`` (or omitted) to let the
    selector pick one from the file name and patient context.
    """
    requested = _blank_to_none(model_type)
    if requested is not None and requested not in _MODEL_TYPE_CHOICES:
        raise UnknownModelType(requested)

    try:
        patient_info = PatientInfo(
            patient_id=_blank_to_none(patient_id),
            patient_name=_blank_to_none(patient_name),
            age=age,
            weight=weight,
            gender=_blank_to_none(gender),
            symptoms=_blank_to_none(symptoms),
            medical_history=_blank_to_none(medical_history),
        )
    except SchemaValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise ValidationError(f"Validation failed: {fields}") from exc

    image = await _read_upload(file, services.settings.max_image_bytes)
    outcome = await services.orchestrator.handle_prediction(
        image,
        patient_info,
        user_id=identity.user_id,
        requested_model_type=requested,
    )
    return PredictionResponse(
        data=PredictionData(
            prediction=outcome.result,
            patient_info=outcome.patient_info,
            prediction_id=outcome.prediction_id,
            image_url=outcome.image_url,
        )
    )


@router.get("/history")
async def prediction_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    model_type: Optional[str] = Query(None, alias="modelType"),
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    data = await services.history.list_predictions(
        identity.user_id,
        page=page,
        limit=limit,
        patient_id=patient_id,
        model_type=model_type,
    )
    return {"success": True, "data": data}


@router.get("/stats")
async def prediction_stats(
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "data": await services.history.stats(identity.user_id)}


@router.get("/model-info")
async def model_info(
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    language_health = await services.enricher.health_check()
    return {
        "success": True,
        "data": {
            "backend": services.backend,
            "models": services.registry.describe(services.backend),
            "interpretation": {"enabled": services.enricher.enabled, **language_health},
        },
    }


@router.post("/recommendations")
async def health_recommendations(
    request: RecommendationRequest,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    outcome = await services.enricher.recommend(request.patient_data)
    return {
        "success": outcome.success,
        "data": {
            "recommendations": outcome.recommendations,
            "message": outcome.message,
            "model": outcome.model,
            "generatedFor": identity.user_id,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.get("/{prediction_id}")
async def get_prediction(
    prediction_id: str,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    record = await services.history.get_prediction(identity.user_id, prediction_id)
    return {"success": True, "data": {"prediction": record}}


@router.delete("/{prediction_id}")
async def delete_prediction(
    prediction_id: str,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.history.delete_prediction(identity.user_id, prediction_id)
    return {"success": True, "message": "Prediction deleted successfully"}
