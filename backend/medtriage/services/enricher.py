from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from medtriage.schemas.prediction import ModelType, PatientInfo, PredictionResult
from medtriage.services.language import (
    EmptyResponse,
    GenerationError,
    GenerationTimeout,
    LanguageGenerator,
    TransientGenerationError,
)
from medtriage.services.normalizer import interpretation_for

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "fallback"
MAX_DISEASE_INFO_WORDS = 500


@dataclass(frozen=True)
class Interpretation:
    text: str
    used_fallback: bool
    attempts: int
    model: str
    message: Optional[str] = None


@dataclass(frozen=True)
class RecommendationOutcome:
    success: bool
    recommendations: Optional[str] = None
    message: Optional[str] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class _ClinicalContext:
    specialty: str
    title: str
    result_label: str
    positive_meaning: str
    negative_meaning: str
    positive_urgency: str
    positive_advice: str
    negative_advice: str


_CONTEXTS: Dict[ModelType, _ClinicalContext] = {
    ModelType.PNEUMONIA: _ClinicalContext(
        specialty="pulmonology",
        title="CHEST X-RAY",
        result_label="PNEUMONIA FINDING",
        positive_meaning="Signs of lung infection are present. Treatment is needed.",
        negative_meaning="Lung appearance is normal. No sign of pneumonia.",
        positive_urgency="Moderate urgency. See a doctor within 24 hours.",
        positive_advice="Antibiotic treatment and rest may be required.",
        negative_advice="Maintain the current state of health.",
    ),
    ModelType.BRAIN_TUMOR: _ClinicalContext(
        specialty="neurosurgery",
        title="BRAIN MRI/CT",
        result_label="BRAIN TUMOR FINDING",
        positive_meaning="An abnormal structure was found in brain tissue. Detailed examination is needed.",
        negative_meaning="Brain imaging is normal. No sign of a tumor.",
        positive_urgency="HIGH URGENCY. Immediate neurology/neurosurgery consultation.",
        positive_advice="Advanced imaging and biopsy evaluation are needed.",
        negative_advice="Continue regular health check-ups.",
    ),
    ModelType.TUBERCULOSIS: _ClinicalContext(
        specialty="infectious diseases",
        title="TUBERCULOSIS SCREENING",
        result_label="TUBERCULOSIS FINDING",
        positive_meaning="Signs of tuberculosis are present. Treatment should start promptly.",
        negative_meaning="No sign of tuberculosis. Lungs look healthy.",
        positive_urgency="HIGH URGENCY. Contagious disease; isolation is required.",
        positive_advice="Start anti-TB treatment and contact tracing.",
        negative_advice="Keep up preventive measures.",
    ),
}


def build_interpretation_prompt(result: PredictionResult, patient_info: Optional[PatientInfo]) -> str:
    context = _CONTEXTS.get(result.model_type, _CONTEXTS[ModelType.PNEUMONIA])
    positive = result.is_positive
    status = "POSITIVE (finding present)" if positive else "NEGATIVE (normal/healthy)"

    patient_lines = []
    if patient_info is not None:
        if patient_info.age is not None:
            patient_lines.append(f"- Age: {patient_info.age}")
        if patient_info.gender is not None:
            patient_lines.append(f"- Gender: {patient_info.gender.value}")
        if patient_info.weight is not None:
            patient_lines.append(f"- Weight: {patient_info.weight} kg")
        if patient_info.symptoms:
            patient_lines.append(f"- Symptoms: {patient_info.symptoms}")
        if patient_info.medical_history:
            patient_lines.append(f"- Medical history: {patient_info.medical_history}")
    class_lines = [f"- {entry.label}: {entry.confidence}%" for entry in result.all_classes]

    return "\n".join(
        [
            f"You are a {context.specialty} specialist. Write a SHORT medical assessment, at most 200 words.",
            "",
            "TERMS:",
            '- "notumor" / "No tumor" = no tumor, NORMAL',
            '- "Normal" = no disease, HEALTHY',
            '- "Pneumonia" = lung infection present',
            '- "Tuberculosis" = tuberculosis present',
            "",
            f"{context.title} ANALYSIS:",
            f"- Result: {result.prediction} ({result.confidence}% confidence)",
            f"- Status: {status}",
            *patient_lines,
            "",
            "ALL CLASSES:",
            *class_lines,
            "",
            f"1. {context.result_label}: {result.prediction} "
            f"{'detected' if positive else 'not detected (normal)'} ({result.confidence}% confidence).",
            f"2. CLINICAL MEANING: {context.positive_meaning if positive else context.negative_meaning}",
            f"3. URGENCY: {context.positive_urgency if positive else 'Routine follow-up is sufficient.'}",
            f"4. ADVICE: {context.positive_advice if positive else context.negative_advice}",
            f"5. WARNING: This is an AI analysis. A {context.specialty} consultation is required.",
            "",
            "Answer briefly, interpret the terms correctly, and state that this is not a diagnosis.",
        ]
    )


def build_disease_prompt(disease_name: str, patient_info: Optional[PatientInfo]) -> str:
    age = patient_info.age if patient_info and patient_info.age is not None else "unknown"
    gender = patient_info.gender.value if patient_info and patient_info.gender else "unspecified"
    return (
        f'You are a medical expert. Give information about "{disease_name}". '
        f"NEVER exceed {MAX_DISEASE_INFO_WORDS} words.\n\n"
        f"Patient: {age} years old, gender {gender}.\n\n"
        "Cover, in about 100 words each: 1. the disease (definition, causes, typical symptoms), "
        "2. treatment, 3. lifestyle recommendations, 4. follow-up and warning signs, 5. prognosis.\n\n"
        "Plain text only, no headings."
    )


def build_recommendation_prompt(patient_data: Mapping[str, Any]) -> str:
    return (
        "You are a family physician's assistant. Prepare personalised health recommendations "
        "for the following patient data:\n\n"
        f"{json.dumps(patient_data, indent=2, default=str, ensure_ascii=False)}\n\n"
        "Cover: 1. general health advice, 2. nutrition, 3. exercise, 4. lifestyle "
        "(sleep, stress, harmful habits), 5. follow-up schedule and age-appropriate screening."
    )


def clean_disease_info(text: str) -> str:
    text = text.replace("**", "")
    text = re.sub(r"\n{3,}", "\n\n", text)
    words = text.split()
    if len(words) > MAX_DISEASE_INFO_WORDS:
        return " ".join(words[:MAX_DISEASE_INFO_WORDS]) + "..."
    return text.strip()


class InterpretationEnricher:
    """Adds language-model interpretations to a prediction result.

    ``enrich`` never raises. Transient generator failures are retried with
    exponential backoff (``base_delay * 2 ** (attempt - 1)`` between attempts);
    permanent or unexpected failures stop at once. Both end in the static
    interpretation template with ``used_fallback=True``.
    """

    def __init__(
        self,
        generator: Optional[LanguageGenerator],
        max_attempts: int = 3,
        base_delay: float = 2.0,
        attempt_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._generator = generator
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._attempt_timeout = attempt_timeout
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self._generator is not None

    def fallback_text(self, result: PredictionResult) -> str:
        return interpretation_for(result.model_type, result.prediction, result.confidence)

    async def _generate_once(self, prompt: str) -> str:
        assert self._generator is not None
        try:
            text = await asyncio.wait_for(self._generator.generate(prompt), timeout=self._attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeout(f"Generation timeout after {self._attempt_timeout:g} seconds") from exc
        if not text or not text.strip():
            raise EmptyResponse("Empty response from language model")
        return text

    async def enrich(self, result: PredictionResult, patient_info: Optional[PatientInfo] = None) -> Interpretation:
        if self._generator is None:
            return Interpretation(
                text=self.fallback_text(result),
                used_fallback=True,
                attempts=0,
                model=FALLBACK_MODEL,
                message="Language generation is not configured",
            )

        prompt = build_interpretation_prompt(result, patient_info)
        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < self._max_attempts:
            attempt += 1
            logger.info("Interpretation attempt %d/%d", attempt, self._max_attempts)
            try:
                text = await self._generate_once(prompt)
            except TransientGenerationError as exc:
                last_error = exc
                logger.warning("Interpretation attempt %d failed (transient): %s", attempt, exc)
                if attempt < self._max_attempts:
                    delay = self._base_delay * 2 ** (attempt - 1)
                    logger.info("Retrying interpretation in %.1fs", delay)
                    await self._sleep(delay)
                continue
            except Exception as exc:
                last_error = exc
                logger.warning("Interpretation attempt %d failed (not retryable): %s", attempt, exc)
                break

            logger.info("Interpretation generated (%d characters)", len(text))
            return Interpretation(
                text=text,
                used_fallback=False,
                attempts=attempt,
                model=self._generator.model_name,
            )

        logger.error("All interpretation attempts failed, using fallback template")
        return Interpretation(
            text=self.fallback_text(result),
            used_fallback=True,
            attempts=attempt,
            model=FALLBACK_MODEL,
            message=str(last_error) if last_error else None,
        )

    async def describe_disease(self, disease_name: str, patient_info: Optional[PatientInfo] = None) -> Optional[str]:
        """Single-attempt disease overview; ``None`` when unavailable."""
        if self._generator is None:
            return None
        try:
            text = await self._generate_once(build_disease_prompt(disease_name, patient_info))
        except (GenerationError, OSError, ValueError) as exc:
            logger.warning("Disease information for %s unavailable: %s", disease_name, exc)
            return None
        return clean_disease_info(text)

    async def recommend(self, patient_data: Mapping[str, Any]) -> RecommendationOutcome:
        if self._generator is None:
            return RecommendationOutcome(success=False, message="Language generation is not configured")
        try:
            text = await self._generate_once(build_recommendation_prompt(patient_data))
        except (GenerationError, OSError, ValueError) as exc:
            logger.warning("Health recommendations unavailable: %s", exc)
            return RecommendationOutcome(success=False, message=str(exc))
        return RecommendationOutcome(success=True, recommendations=text, model=self._generator.model_name)

    async def health_check(self) -> Dict[str, str]:
        if self._generator is None:
            return {"status": "disabled", "message": "Language generation not configured"}
        try:
            await self._generate_once("Hello, this is a connectivity test.")
        except (GenerationError, OSError, ValueError) as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "healthy", "message": "Language generation service is working"}
