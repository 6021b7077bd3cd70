"""HTTP-level tests for the prediction API (demo backend, no language model)."""

from fastapi import status
from fastapi.testclient import TestClient

from medtriage.main import create_app
from medtriage.services.container import build_services
from medtriage.services.enricher import InterpretationEnricher
from medtriage.services.language import RateLimited

from fakes import FakeGenerator


def _predict(client, headers, png_bytes, filename="chest_xray.png", content_type="image/png", **form):
    return client.post(
        "/api/prediction/predict",
        headers=headers,
        files={"file": (filename, png_bytes, content_type)},
        data=form,
    )


def test_health_check_is_public(client):
    response = client.get("/")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ok"


def test_prediction_requires_a_token(client, png_bytes):
    response = _predict(client, {}, png_bytes)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "No token provided"


def test_bad_token_is_rejected(client, png_bytes):
    response = _predict(client, {"Authorization": "Bearer not-a-jwt"}, png_bytes)
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_predict_returns_envelope(client, auth_headers, png_bytes):
    response = _predict(
        client,
        auth_headers,
        png_bytes,
        patientId="P-9",
        patientName="John Smith",
        age="47",
        gender="male",
        symptoms="cough and fever",
    )

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["success"] is True
    assert "not a medical diagnosis" in body["disclaimer"]

    data = body["data"]
    prediction = data["prediction"]
    assert prediction["modelType"] == "pneumonia"
    assert prediction["backend"] == "demo"
    assert prediction["interpretationFallback"] is True
    assert {entry["class"] for entry in prediction["allClasses"]} == {"Normal", "Pneumonia"}
    assert data["patientInfo"]["patientName"] == "John Smith"
    assert data["patientInfo"]["age"] == 47
    assert data["predictionId"]
    assert data["imageUrl"].startswith("http://testserver/uploads/medical-images/")


def test_explicit_model_type(client, auth_headers, png_bytes):
    response = _predict(client, auth_headers, png_bytes, filename="upload.png", modelType="brainTumor")
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["data"]["prediction"]["modelType"] == "brainTumor"


def test_unknown_model_type_is_rejected(client, auth_headers, png_bytes):
    response = _predict(client, auth_headers, png_bytes, modelType="kidney")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "Unknown model type: kidney"


def test_out_of_range_patient_fields_are_rejected(client, auth_headers, png_bytes):
    response = _predict(client, auth_headers, png_bytes, age="200")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "age" in response.json()["message"]


def test_non_numeric_form_field_is_a_validation_error(client, auth_headers, png_bytes):
    response = _predict(client, auth_headers, png_bytes, weight="heavy")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["errors"]


def test_missing_file(client, auth_headers):
    response = client.post("/api/prediction/predict", headers=auth_headers, data={"patientName": "John"})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "Medical image file is required"


def test_disallowed_file_type(client, auth_headers, png_bytes):
    response = _predict(client, auth_headers, png_bytes, filename="notes.txt", content_type="text/plain")
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Invalid file type" in response.json()["message"]


def test_oversized_upload(settings, png_bytes):
    small = settings.model_copy(update={"max_image_bytes": 16})
    services = build_services(small)
    client = TestClient(create_app(settings=small, services=services))
    headers = {"Authorization": f"Bearer {services.identity.issue('user-1')}"}

    response = _predict(client, headers, png_bytes)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "too large" in response.json()["message"]


def test_history_get_stats_and_delete(client, auth_headers, png_bytes):
    prediction_id = _predict(client, auth_headers, png_bytes).json()["data"]["predictionId"]

    history = client.get("/api/prediction/history", headers=auth_headers).json()
    assert history["data"]["pagination"]["totalPredictions"] == 1
    assert history["data"]["predictions"][0]["id"] == prediction_id

    record = client.get(f"/api/prediction/{prediction_id}", headers=auth_headers).json()
    assert record["data"]["prediction"]["status"] == "completed"

    stats = client.get("/api/prediction/stats", headers=auth_headers).json()
    assert stats["data"]["stats"]["totalPredictions"] == 1
    assert stats["data"]["stats"]["modelDistribution"] == {"pneumonia": 1}

    deleted = client.delete(f"/api/prediction/{prediction_id}", headers=auth_headers)
    assert deleted.json() == {"success": True, "message": "Prediction deleted successfully"}

    missing = client.get(f"/api/prediction/{prediction_id}", headers=auth_headers)
    assert missing.status_code == status.HTTP_404_NOT_FOUND


def test_other_users_cannot_read_a_prediction(client, services, auth_headers, png_bytes):
    prediction_id = _predict(client, auth_headers, png_bytes).json()["data"]["predictionId"]
    intruder = {"Authorization": f"Bearer {services.identity.issue('user-2')}"}

    response = client.get(f"/api/prediction/{prediction_id}", headers=intruder)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["message"] == "Access denied"


def test_model_info(client, auth_headers):
    data = client.get("/api/prediction/model-info", headers=auth_headers).json()["data"]

    assert data["backend"] == "demo"
    assert {model["modelType"] for model in data["models"]} == {"pneumonia", "brainTumor", "tuberculosis"}
    assert data["interpretation"] == {
        "enabled": False,
        "status": "disabled",
        "message": "Language generation not configured",
    }


def test_model_info_reports_language_service_health(settings, services, auth_headers):
    services.enricher = InterpretationEnricher(FakeGenerator([RateLimited("quota exceeded")]))
    client = TestClient(create_app(settings=settings, services=services))

    data = client.get("/api/prediction/model-info", headers=auth_headers).json()["data"]

    assert data["interpretation"] == {"enabled": True, "status": "error", "message": "quota exceeded"}


def test_recommendations(client, auth_headers):
    response = client.post(
        "/api/prediction/recommendations",
        headers=auth_headers,
        json={"patientData": {"age": 40, "conditions": ["asthma"]}},
    )
    body = response.json()
    assert response.status_code == status.HTTP_200_OK
    assert body["success"] is False
    assert body["data"]["generatedFor"] == "user-1"

    empty = client.post("/api/prediction/recommendations", headers=auth_headers, json={"patientData": {}})
    assert empty.status_code == status.HTTP_400_BAD_REQUEST


def test_error_detail_is_hidden_outside_development(settings, services, png_bytes):
    production = settings.model_copy(update={"environment": "production"})
    client = TestClient(create_app(settings=production, services=services))

    response = _predict(client, {}, png_bytes)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert "error" not in response.json()
