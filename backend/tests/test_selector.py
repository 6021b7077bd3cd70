import pytest

from medtriage.schemas.prediction import ModelType, PatientInfo
from medtriage.services.selector import DEFAULT_MODEL_TYPE, score_models, select_model


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("chest_xray_001.png", ModelType.PNEUMONIA),
        ("brain_mri_scan.jpg", ModelType.BRAIN_TUMOR),
        ("tb_case_17.png", ModelType.TUBERCULOSIS),
        ("CHEST.PNG", ModelType.PNEUMONIA),
    ],
)
def test_filename_keywords_select_model(filename, expected):
    assert select_model(filename) == expected


def test_no_indicators_defaults_to_pneumonia():
    assert select_model("image001.png") == DEFAULT_MODEL_TYPE == ModelType.PNEUMONIA


def test_symptoms_select_model_when_filename_is_silent():
    patient = PatientInfo(symptoms="Persistent headache and a seizure last week")
    assert select_model("scan.png", patient) == ModelType.BRAIN_TUMOR


def test_turkish_history_keywords_are_recognised():
    patient = PatientInfo(medical_history="gece terlemesi ve kilo kaybı")
    assert select_model("upload.png", patient) == ModelType.TUBERCULOSIS


def test_filename_outweighs_symptoms():
    patient = PatientInfo(symptoms="headache")
    assert select_model("chest.png", patient) == ModelType.PNEUMONIA


def test_ties_resolve_in_priority_order():
    scores = score_models("xray_tb.png")
    assert scores[ModelType.PNEUMONIA] == scores[ModelType.TUBERCULOSIS] == 3
    assert select_model("xray_tb.png") == ModelType.PNEUMONIA


def test_keyword_group_counts_once():
    scores = score_models("chest_lung_xray_thorax.png", PatientInfo(symptoms="cough, fever and chest pain"))
    assert scores == {
        ModelType.PNEUMONIA: 5,
        ModelType.BRAIN_TUMOR: 0,
        ModelType.TUBERCULOSIS: 0,
    }
