from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi import status as http_status

from medtriage.api.deps import get_current_identity, get_services
from medtriage.schemas.patient import PatientRequest
from medtriage.services.container import ServiceContainer
from medtriage.services.identity import Identity

router = APIRouter(prefix="/patients", tags=["patients"])


@router.get("")
async def list_patients(
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "data": await services.patients.list_patients(identity.user_id)}


@router.post("", status_code=http_status.HTTP_201_CREATED)
async def create_patient(
    request: PatientRequest,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    patient = await services.patients.create_patient(identity.user_id, request)
    return {"success": True, "message": "Patient created successfully", "data": patient}


@router.get("/{patient_id}")
async def get_patient(
    patient_id: str,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "data": await services.patients.get_patient(identity.user_id, patient_id)}


@router.put("/{patient_id}")
async def update_patient(
    patient_id: str,
    request: PatientRequest,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    patient = await services.patients.update_patient(identity.user_id, patient_id, request)
    return {"success": True, "message": "Patient updated successfully", "data": patient}


@router.delete("/{patient_id}")
async def delete_patient(
    patient_id: str,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    await services.patients.delete_patient(identity.user_id, patient_id)
    return {"success": True, "message": "Patient deleted successfully"}


@router.get("/{patient_id}/predictions")
async def patient_predictions(
    patient_id: str,
    identity: Identity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Prediction records of one patient, newest first."""
    predictions = await services.patients.patient_predictions(identity.user_id, patient_id)
    return {"success": True, "data": predictions}
