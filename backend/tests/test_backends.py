import threading
import time
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

import pytest
import torch
from torch import nn

from medtriage.core.errors import InvalidImageError, ModelLoadError
from medtriage.models.classifier_network import ClassifierArtifacts, create_classifier, save_classifier_checkpoint
from medtriage.models.model_config import MODEL_CONFIGS
from medtriage.schemas.prediction import ModelType, PatientInfo
from medtriage.services.backends import (
    AlternateBackend,
    ClassificationContext,
    DemoBackend,
    LazyModelCache,
    MockSubstitutionPolicy,
    PrimaryBackend,
)


def _tiny_network(num_classes: int) -> nn.Module:
    return nn.Sequential(nn.AdaptiveAvgPool2d(1), nn.Flatten(), nn.Linear(3, num_classes)).eval()


class TestLazyModelCache:
    def test_concurrent_first_requests_load_once(self):
        calls = []
        lock = threading.Lock()

        def loader(model_type):
            with lock:
                calls.append(model_type)
            time.sleep(0.05)
            return object()

        cache = LazyModelCache(loader)
        with ThreadPoolExecutor(max_workers=8) as pool:
            handles = list(pool.map(lambda _: cache.get(ModelType.PNEUMONIA), range(8)))

        assert calls == [ModelType.PNEUMONIA]
        assert all(handle is handles[0] for handle in handles)
        assert cache.loaded() == [ModelType.PNEUMONIA]

    def test_failed_load_is_retried(self):
        attempts = []

        def loader(model_type):
            attempts.append(model_type)
            if len(attempts) == 1:
                raise RuntimeError("disk not ready")
            return "model"

        cache = LazyModelCache(loader)
        with pytest.raises(RuntimeError):
            cache.get(ModelType.TUBERCULOSIS)
        assert cache.loaded() == []
        assert cache.get(ModelType.TUBERCULOSIS) == "model"
        assert len(attempts) == 2


class TestPrimaryBackend:
    def test_classifies_with_injected_loader(self, png_bytes):
        loads = []

        def loader(path, device):
            loads.append(path)
            return ClassifierArtifacts(model=_tiny_network(2), classes=["Normal", "Pneumonia"], config={})

        backend = PrimaryBackend(MODEL_CONFIGS, "models", device="cpu", loader=loader)
        first = backend.classify(png_bytes, ModelType.PNEUMONIA)
        backend.classify(png_bytes, ModelType.PNEUMONIA)

        assert len(first.probabilities) == 2
        assert sum(first.probabilities) == pytest.approx(1.0)
        assert first.backend == "primary" and first.substituted is False
        assert [p.name for p in loads] == ["pneumonia"]
        assert backend.loaded_model_types() == [ModelType.PNEUMONIA]

    def test_missing_artifact_fails_hard(self, tmp_path, png_bytes):
        backend = PrimaryBackend(MODEL_CONFIGS, tmp_path, device="cpu")
        with pytest.raises(ModelLoadError):
            backend.classify(png_bytes, ModelType.PNEUMONIA)

    def test_class_mismatch_is_rejected(self, png_bytes):
        def loader(path, device):
            return ClassifierArtifacts(model=_tiny_network(2), classes=["Pneumonia", "Normal"], config={})

        backend = PrimaryBackend(MODEL_CONFIGS, "models", device="cpu", loader=loader)
        with pytest.raises(ModelLoadError, match="do not match"):
            backend.classify(png_bytes, ModelType.PNEUMONIA)

    def test_loads_saved_checkpoint(self, tmp_path, png_bytes):
        config = {"architecture": "mobilenet_v3_small", "dropout": 0.1}
        classes = list(MODEL_CONFIGS[ModelType.BRAIN_TUMOR].classes)
        model = create_classifier(len(classes), architecture="mobilenet_v3_small")
        save_classifier_checkpoint(tmp_path / "brainTumor", model, classes, config)

        backend = PrimaryBackend(MODEL_CONFIGS, tmp_path, device="cpu")
        output = backend.classify(png_bytes, ModelType.BRAIN_TUMOR)

        assert len(output.probabilities) == 3
        assert sum(output.probabilities) == pytest.approx(1.0, abs=1e-5)

    def test_undecodable_image_is_invalid(self):
        def loader(path, device):
            return ClassifierArtifacts(model=_tiny_network(2), classes=["Normal", "Pneumonia"], config={})

        backend = PrimaryBackend(MODEL_CONFIGS, "models", device="cpu", loader=loader)
        with pytest.raises(InvalidImageError):
            backend.classify(b"definitely not an image", ModelType.PNEUMONIA)


class TestAlternateBackend:
    def test_artifact_url(self):
        backend = AlternateBackend(MODEL_CONFIGS, "http://models.local/", device="cpu")
        assert backend.artifact_url(ModelType.BRAIN_TUMOR) == "http://models.local/brainTumor/model.pt"

    def test_loads_torchscript_artifact(self, png_bytes):
        buf = BytesIO()
        torch.jit.save(torch.jit.script(_tiny_network(3)), buf)
        fetched = []

        def fetcher(url):
            fetched.append(url)
            return buf.getvalue()

        backend = AlternateBackend(MODEL_CONFIGS, "http://models.local", device="cpu", fetcher=fetcher)
        output = backend.classify(png_bytes, ModelType.BRAIN_TUMOR)

        assert fetched == ["http://models.local/brainTumor/model.pt"]
        assert len(output.probabilities) == 3
        assert output.substituted is False

    def test_substitutes_flagged_mock_when_artifact_is_unavailable(self, png_bytes):
        fetched = []

        def fetcher(url):
            fetched.append(url)
            raise OSError("connection refused")

        backend = AlternateBackend(MODEL_CONFIGS, "http://models.local", device="cpu", fetcher=fetcher)
        first = backend.classify(png_bytes, ModelType.PNEUMONIA)
        second = backend.classify(png_bytes, ModelType.PNEUMONIA)

        assert first.substituted and second.substituted
        assert first.backend == "alternate"
        assert sum(first.probabilities) == pytest.approx(1.0)
        assert len(fetched) == 1

    def test_fail_policy_raises(self, png_bytes):
        def fetcher(url):
            raise OSError("connection refused")

        backend = AlternateBackend(
            MODEL_CONFIGS,
            "http://models.local",
            policy=MockSubstitutionPolicy.FAIL,
            device="cpu",
            fetcher=fetcher,
        )
        with pytest.raises(ModelLoadError):
            backend.classify(png_bytes, ModelType.PNEUMONIA)

    def test_mock_still_rejects_corrupt_uploads(self):
        def fetcher(url):
            raise OSError("connection refused")

        backend = AlternateBackend(MODEL_CONFIGS, "http://models.local", device="cpu", fetcher=fetcher)
        with pytest.raises(InvalidImageError):
            backend.classify(b"garbage", ModelType.PNEUMONIA)


class TestDemoBackend:
    def _top(self, output, model_type):
        classes = MODEL_CONFIGS[model_type].classes
        return max(zip(classes, output.probabilities), key=lambda pair: pair[1])[0]

    def test_is_deterministic(self):
        backend = DemoBackend(MODEL_CONFIGS)
        context = ClassificationContext(filename="scan.png")
        first = backend.classify(b"same bytes", ModelType.BRAIN_TUMOR, context)
        second = backend.classify(b"same bytes", ModelType.BRAIN_TUMOR, context)

        assert first.probabilities == second.probabilities
        assert sum(first.probabilities) == pytest.approx(1.0)
        assert first.backend == "demo"

    def test_filename_label_wins(self):
        backend = DemoBackend(MODEL_CONFIGS)
        output = backend.classify(b"bytes", ModelType.BRAIN_TUMOR, ClassificationContext(filename="Glioma_01.png"))
        assert self._top(output, ModelType.BRAIN_TUMOR) == "glioma"

    def test_symptoms_skew_toward_abnormal_class(self):
        backend = DemoBackend(MODEL_CONFIGS)
        context = ClassificationContext(filename="scan.png", patient_info=PatientInfo(symptoms="severe headache"))
        output = backend.classify(b"bytes", ModelType.BRAIN_TUMOR, context)
        assert self._top(output, ModelType.BRAIN_TUMOR) in {"glioma", "meningioma"}

    def test_no_hints_skew_toward_normal_class(self):
        backend = DemoBackend(MODEL_CONFIGS)
        output = backend.classify(b"bytes", ModelType.TUBERCULOSIS, ClassificationContext(filename="scan.png"))
        assert self._top(output, ModelType.TUBERCULOSIS) == "Normal"
