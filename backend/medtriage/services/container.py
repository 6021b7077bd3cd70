from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

from medtriage.core.config import Settings
from medtriage.core.errors import ConfigurationError
from medtriage.models.model_config import MODEL_CONFIGS
from medtriage.services.backends import (
    AlternateBackend,
    BackendName,
    ClassifierBackend,
    DemoBackend,
    MockSubstitutionPolicy,
    PrimaryBackend,
)
from medtriage.services.enricher import InterpretationEnricher
from medtriage.services.history import PredictionHistoryService
from medtriage.services.identity import JwtIdentityProvider
from medtriage.services.language import GeminiClient
from medtriage.services.orchestrator import PredictionOrchestrator
from medtriage.services.patients import PatientService
from medtriage.services.registry import ClassifierRegistry
from medtriage.services.storage import BlobStore, DocumentStore, InMemoryDocumentStore, LocalBlobStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the HTTP layer needs, built once per application."""

    settings: Settings
    registry: ClassifierRegistry
    enricher: InterpretationEnricher
    documents: DocumentStore
    blobs: BlobStore
    identity: JwtIdentityProvider
    orchestrator: PredictionOrchestrator
    history: PredictionHistoryService
    patients: PatientService

    @property
    def backend(self) -> str:
        return self.settings.classifier_backend


def _build_backend(settings: Settings) -> Dict[str, ClassifierBackend]:
    try:
        name = BackendName(settings.classifier_backend)
    except ValueError:
        raise ConfigurationError(f"Unknown classifier backend '{settings.classifier_backend}'") from None

    if name is BackendName.PRIMARY:
        backend: ClassifierBackend = PrimaryBackend(MODEL_CONFIGS, settings.model_dir)
    elif name is BackendName.ALTERNATE:
        try:
            policy = MockSubstitutionPolicy(settings.mock_substitution)
        except ValueError:
            raise ConfigurationError(f"Unknown mock substitution policy '{settings.mock_substitution}'") from None
        backend = AlternateBackend(MODEL_CONFIGS, settings.artifact_base_url, policy=policy)
    else:
        backend = DemoBackend(MODEL_CONFIGS)
    return {name.value: backend}


def build_services(settings: Settings) -> ServiceContainer:
    registry = ClassifierRegistry(_build_backend(settings), MODEL_CONFIGS, settings.max_image_bytes)

    generator = None
    if settings.gemini_api_key:
        generator = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.enrichment_attempt_timeout,
        )
    else:
        logger.warning("GEMINI_API_KEY not set; interpretations will use the static templates")

    enricher = InterpretationEnricher(
        generator,
        max_attempts=settings.enrichment_attempts,
        base_delay=settings.enrichment_base_delay,
        attempt_timeout=settings.enrichment_attempt_timeout,
    )
    documents = InMemoryDocumentStore()
    blobs = LocalBlobStore(settings.blob_dir, settings.blob_public_url)

    orchestrator = PredictionOrchestrator(
        registry,
        enricher,
        documents,
        blobs,
        backend=settings.classifier_backend,
        classification_timeout=settings.classification_timeout_seconds,
        record_update_wait=settings.record_update_wait_seconds,
    )
    logger.info("Services ready (backend=%s, enrichment=%s)", settings.classifier_backend, enricher.enabled)
    return ServiceContainer(
        settings=settings,
        registry=registry,
        enricher=enricher,
        documents=documents,
        blobs=blobs,
        identity=JwtIdentityProvider(settings.jwt_secret_key, settings.jwt_algorithm),
        orchestrator=orchestrator,
        history=PredictionHistoryService(documents, blobs),
        patients=PatientService(documents),
    )
