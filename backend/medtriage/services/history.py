from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from medtriage.core.errors import AccessDeniedError, NotFoundError, ValidationError
from medtriage.services.orchestrator import PREDICTIONS
from medtriage.services.storage import BlobStore, DocumentStore, Filter

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(days=30)
RECENT_ACTIVITY = 5
MAX_PAGE_SIZE = 100


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class PredictionHistoryService:
    """Read side of the prediction records: listing, lookup, deletion and stats."""

    def __init__(self, documents: DocumentStore, blobs: Optional[BlobStore] = None) -> None:
        self._documents = documents
        self._blobs = blobs

    async def list_predictions(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        patient_id: Optional[str] = None,
        model_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")

        filters: List[Filter] = [("userId", "==", user_id)]
        if patient_id:
            filters.append(("patientId", "==", patient_id))
        if model_type:
            filters.append(("result.modelType", "==", model_type))

        records = await self._documents.query(PREDICTIONS, filters, order_by="createdAt", descending=True)
        total = len(records)
        total_pages = math.ceil(total / limit)
        start = (page - 1) * limit
        return {
            "predictions": records[start : start + limit],
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalPredictions": total,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }

    async def _owned(self, user_id: str, prediction_id: str) -> Dict[str, Any]:
        record = await self._documents.get(PREDICTIONS, prediction_id)
        if record is None:
            raise NotFoundError("Prediction not found")
        if record.get("userId") != user_id:
            logger.warning("User %s denied access to prediction %s", user_id, prediction_id)
            raise AccessDeniedError()
        return record

    async def get_prediction(self, user_id: str, prediction_id: str) -> Dict[str, Any]:
        return await self._owned(user_id, prediction_id)

    async def delete_prediction(self, user_id: str, prediction_id: str) -> None:
        record = await self._owned(user_id, prediction_id)
        blob_name = (record.get("imageInfo") or {}).get("blobName")
        if blob_name and self._blobs is not None:
            try:
                await self._blobs.delete(blob_name)
            except Exception:
                logger.exception("Could not delete image %s for prediction %s", blob_name, prediction_id)
        await self._documents.delete(PREDICTIONS, prediction_id)
        logger.info("Deleted prediction %s", prediction_id)

    async def stats(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summary of the caller's predictions created in the last 30 days."""
        end = now or datetime.now(timezone.utc)
        start = end - STATS_WINDOW

        records = await self._documents.query(
            PREDICTIONS, [("userId", "==", user_id)], order_by="createdAt", descending=True
        )
        recent = []
        for record in records:
            created = _as_datetime(record.get("createdAt"))
            if created is not None and start <= created <= end:
                recent.append(record)

        distribution: Dict[str, int] = {}
        confidence_total = 0
        processing_total = 0
        scored = 0
        positives = 0
        for record in recent:
            result = record.get("result")
            if not result:
                continue
            model_type = result.get("modelType") or "unknown"
            distribution[model_type] = distribution.get(model_type, 0) + 1
            if result.get("confidence"):
                confidence_total += result["confidence"]
                scored += 1
            if result.get("isPositive"):
                positives += 1
            if record.get("processingTime"):
                processing_total += record["processingTime"]

        return {
            "stats": {
                "totalPredictions": len(recent),
                "completedPredictions": sum(1 for r in recent if r.get("status") == "completed"),
                "failedPredictions": sum(1 for r in recent if r.get("status") == "failed"),
                "modelDistribution": distribution,
                "averageConfidence": round(confidence_total / scored) if scored else 0,
                "positiveResults": positives,
                "averageProcessingTime": round(processing_total / scored) if scored else 0,
                "recentActivity": recent[:RECENT_ACTIVITY],
            },
            "dateRange": {"startDate": start, "endDate": end},
        }
