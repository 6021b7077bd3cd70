"""Request-level prediction pipeline.

Only classification is allowed to fail a request. Image upload, record
persistence, enrichment and the patient summary are best effort: each one
logs its own failure and the pipeline carries on without its output.

Record completion waits for enrichment for up to ``record_update_wait``
seconds. If enrichment is slower, the record is completed with the plain
classification result first and updated again once the enriched result is
available.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from medtriage.core.errors import MissingImageError, PredictionFailedError, UnknownModelType
from medtriage.schemas.prediction import ModelType, PatientInfo, PredictionResult, PredictionStatus
from medtriage.services.backends import ClassificationContext
from medtriage.services.enricher import InterpretationEnricher
from medtriage.services.normalizer import normalize
from medtriage.services.registry import ClassifierRegistry, parse_model_type
from medtriage.services.selector import select_model
from medtriage.services.storage import BlobStore, DocumentStore, StoredBlob, safe_blob_name

logger = logging.getLogger(__name__)

PREDICTIONS = "predictions"
PATIENTS = "patients"
MODEL_VERSION = "1.0"
AUTO_MODEL_TYPE = "auto"


@dataclass(frozen=True)
class UploadedImage:
    content: bytes
    filename: str = ""
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class PredictionOutcome:
    result: PredictionResult
    patient_info: PatientInfo
    prediction_id: Optional[str]
    image_url: Optional[str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PredictionOrchestrator:
    def __init__(
        self,
        registry: ClassifierRegistry,
        enricher: InterpretationEnricher,
        documents: Optional[DocumentStore],
        blobs: Optional[BlobStore],
        backend: str,
        classification_timeout: float = 60.0,
        record_update_wait: float = 45.0,
    ) -> None:
        self._registry = registry
        self._enricher = enricher
        self._documents = documents
        self._blobs = blobs
        self._backend = backend
        self._classification_timeout = classification_timeout
        self._record_update_wait = record_update_wait

    # ------------------------------------------------------------------
    # Best-effort side effects
    # ------------------------------------------------------------------

    async def _upload_image(self, image: UploadedImage, user_id: str) -> Optional[StoredBlob]:
        if self._blobs is None:
            return None
        name = safe_blob_name(image.filename)
        try:
            return await self._blobs.upload(image.content, name, image.content_type)
        except Exception:
            logger.exception("Image upload failed for user %s; continuing without image URL", user_id)
            return None

    async def _create_record(self, image: UploadedImage, patient_info: PatientInfo, user_id: str) -> Optional[str]:
        if self._documents is None:
            return None
        record = {
            "userId": user_id,
            "patientId": patient_info.patient_id,
            "patientInfo": patient_info.model_dump(by_alias=True, mode="json"),
            "imageInfo": {
                "originalName": image.filename,
                "size": len(image.content),
                "contentType": image.content_type,
                "url": None,
                "blobName": None,
            },
            "status": PredictionStatus.PROCESSING.value,
            "createdAt": _now(),
            "modelVersion": MODEL_VERSION,
        }
        try:
            record_id = await self._documents.create(PREDICTIONS, record)
        except Exception:
            logger.exception("Could not create prediction record for user %s; continuing unsaved", user_id)
            return None
        logger.info("Created prediction record %s", record_id)
        return record_id

    async def _update_record(self, record_id: Optional[str], patch: Dict[str, Any]) -> None:
        if record_id is None or self._documents is None:
            return
        try:
            await self._documents.update(PREDICTIONS, record_id, patch)
        except Exception:
            logger.exception("Could not update prediction record %s", record_id)

    @staticmethod
    def _image_patch(blob: Optional[StoredBlob]) -> Dict[str, Any]:
        if blob is None:
            return {}
        return {"imageInfo.url": blob.url, "imageInfo.blobName": blob.name}

    async def _touch_patient(self, patient_info: PatientInfo, user_id: str) -> None:
        patient_id = patient_info.patient_id
        if not patient_id or self._documents is None:
            return
        now = _now()
        try:
            existing = await self._documents.get(PATIENTS, patient_id)
            if existing is None:
                await self._documents.create(
                    PATIENTS,
                    {
                        "patientId": patient_id,
                        "name": patient_info.patient_name,
                        "age": patient_info.age,
                        "weight": patient_info.weight,
                        "gender": patient_info.gender.value if patient_info.gender else None,
                        "medicalHistory": [patient_info.medical_history] if patient_info.medical_history else [],
                        "createdAt": now,
                        "userId": user_id,
                        "createdBy": user_id,
                        "lastPrediction": now,
                    },
                    doc_id=patient_id,
                )
            else:
                await self._documents.update(PATIENTS, patient_id, {"lastPrediction": now, "updatedAt": now})
        except Exception:
            logger.exception("Patient summary update failed for %s", patient_id)

    async def _disease_info(self, result: PredictionResult, patient_info: PatientInfo) -> Optional[str]:
        config = self._registry.get_config(result.model_type)
        if not result.is_positive or result.prediction in config.normal_classes:
            return None
        try:
            return await self._enricher.describe_disease(result.prediction, patient_info)
        except Exception:
            logger.exception("Disease information failed for %s; keeping the interpretation", result.prediction)
            return None

    async def _enrich(self, result: PredictionResult, patient_info: PatientInfo) -> PredictionResult:
        try:
            interpretation = await self._enricher.enrich(result, patient_info)
        except Exception:
            logger.exception("Enrichment failed; returning the plain classification result")
            return result
        disease_info = await self._disease_info(result, patient_info)
        return result.model_copy(
            update={
                "gemini_interpretation": interpretation.text,
                "interpretation_fallback": interpretation.used_fallback,
                "disease_info": disease_info,
            }
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def resolve_model_type(
        self,
        requested: Optional[str],
        filename: str,
        patient_info: Optional[PatientInfo],
    ) -> ModelType:
        if requested and requested != AUTO_MODEL_TYPE:
            try:
                return parse_model_type(requested)
            except UnknownModelType:
                logger.warning("Ignoring unknown model type %r, auto-selecting instead", requested)
        return select_model(filename, patient_info)

    async def _classify(self, image: UploadedImage, model_type: ModelType, patient_info: PatientInfo) -> PredictionResult:
        context = ClassificationContext(filename=image.filename, patient_info=patient_info)
        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(
                asyncio.to_thread(self._registry.classify, image.content, model_type, self._backend, context),
                timeout=self._classification_timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Classification timed out after {self._classification_timeout:g} seconds") from None
        result = normalize(output.probabilities, self._registry.get_config(model_type), model_type)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return result.model_copy(
            update={
                "processing_time": elapsed_ms,
                "backend": output.backend,
                "substituted_model": output.substituted,
            }
        )

    async def _complete_record(
        self,
        record_id: Optional[str],
        base: PredictionResult,
        enrichment: "asyncio.Task[PredictionResult]",
        blob: Optional[StoredBlob],
    ) -> PredictionResult:
        def completion(result: PredictionResult) -> Dict[str, Any]:
            return {
                "status": PredictionStatus.COMPLETED.value,
                "result": result.model_dump(by_alias=True, mode="json"),
                "completedAt": _now(),
                "processingTime": result.processing_time,
                **self._image_patch(blob),
            }

        if record_id is None:
            return await enrichment

        try:
            final = await asyncio.wait_for(asyncio.shield(enrichment), timeout=self._record_update_wait)
        except asyncio.TimeoutError:
            logger.info("Enrichment still running after %gs; completing record %s early", self._record_update_wait, record_id)
            await self._update_record(record_id, completion(base))
            final = await enrichment

        await self._update_record(record_id, completion(final))
        return final

    async def handle_prediction(
        self,
        image: Optional[UploadedImage],
        patient_info: Optional[PatientInfo],
        user_id: str,
        requested_model_type: Optional[str] = None,
    ) -> PredictionOutcome:
        if image is None or not image.content:
            raise MissingImageError()
        patient_info = patient_info or PatientInfo()

        blob, record_id = await asyncio.gather(
            self._upload_image(image, user_id),
            self._create_record(image, patient_info, user_id),
        )

        model_type = self.resolve_model_type(requested_model_type, image.filename, patient_info)
        logger.info("Running %s prediction for user %s", model_type.value, user_id)

        try:
            result = await self._classify(image, model_type, patient_info)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Classification failed for %s", model_type.value)
            await self._update_record(
                record_id,
                {
                    "status": PredictionStatus.FAILED.value,
                    "errorMessage": message,
                    "failedAt": _now(),
                    **self._image_patch(blob),
                },
            )
            raise PredictionFailedError(f"Prediction failed: {message}", cause=exc) from exc

        enrichment = asyncio.create_task(self._enrich(result, patient_info))
        patient_update = asyncio.create_task(self._touch_patient(patient_info, user_id))
        final = await self._complete_record(record_id, result, enrichment, blob)
        await patient_update

        return PredictionOutcome(
            result=final,
            patient_info=patient_info,
            prediction_id=record_id,
            image_url=blob.url if blob else None,
        )
