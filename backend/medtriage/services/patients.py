from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from medtriage.core.errors import AccessDeniedError, NotFoundError
from medtriage.schemas.patient import PatientRequest
from medtriage.services.orchestrator import PATIENTS, PREDICTIONS
from medtriage.services.storage import DocumentStore

logger = logging.getLogger(__name__)


class PatientService:
    """Patient records owned by the user who created them.

    Records created implicitly by a prediction carry the same ``userId``
    owner field, so they are managed here too.
    """

    def __init__(self, documents: DocumentStore) -> None:
        self._documents = documents

    async def list_patients(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._documents.query(
            PATIENTS, [("userId", "==", user_id)], order_by="createdAt", descending=True
        )

    async def _owned(self, user_id: str, patient_id: str) -> Dict[str, Any]:
        patient = await self._documents.get(PATIENTS, patient_id)
        if patient is None:
            raise NotFoundError("Patient not found")
        if patient.get("userId") != user_id:
            logger.warning("User %s denied access to patient %s", user_id, patient_id)
            raise AccessDeniedError()
        return patient

    async def get_patient(self, user_id: str, patient_id: str) -> Dict[str, Any]:
        return await self._owned(user_id, patient_id)

    async def create_patient(
        self, user_id: str, request: PatientRequest, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        doc = request.model_dump(by_alias=True, mode="json", exclude_none=True)
        doc.update({"userId": user_id, "createdAt": now, "updatedAt": now})
        patient_id = await self._documents.create(PATIENTS, doc)
        logger.info("Created patient %s for user %s", patient_id, user_id)
        return await self._owned(user_id, patient_id)

    async def update_patient(
        self, user_id: str, patient_id: str, request: PatientRequest, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Merge the fields present in ``request`` into the stored record."""
        await self._owned(user_id, patient_id)
        patch = request.model_dump(by_alias=True, mode="json", exclude_unset=True)
        patch["updatedAt"] = now or datetime.now(timezone.utc)
        await self._documents.update(PATIENTS, patient_id, patch)
        return await self._owned(user_id, patient_id)

    async def delete_patient(self, user_id: str, patient_id: str) -> None:
        await self._owned(user_id, patient_id)
        await self._documents.delete(PATIENTS, patient_id)
        logger.info("Deleted patient %s", patient_id)

    async def patient_predictions(self, user_id: str, patient_id: str) -> List[Dict[str, Any]]:
        await self._owned(user_id, patient_id)
        return await self._documents.query(
            PREDICTIONS,
            [("patientId", "==", patient_id), ("userId", "==", user_id)],
            order_by="createdAt",
            descending=True,
        )
