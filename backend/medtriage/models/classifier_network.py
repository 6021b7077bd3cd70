from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List

import torch
from torch import nn
from torchvision import models

CHECKPOINT_NAME = "classifier.pt"
CLASSES_NAME = "classes.json"
DEFAULT_ARCHITECTURE = "resnet18"


@dataclass(frozen=True)
class ClassifierArtifacts:
    """Container returned by the loader for convenient access."""

    model: nn.Module
    classes: List[str]
    config: Dict[str, object]


def _resnet18(num_classes: int, dropout: float) -> nn.Module:
    model = models.resnet18(weights=None)
    in_features = model.fc.in_features
    model.fc = nn.Sequential(nn.Dropout(dropout), nn.Linear(in_features, num_classes))
    return model


def _mobilenet_v3_small(num_classes: int, dropout: float) -> nn.Module:
    model = models.mobilenet_v3_small(weights=None, dropout=dropout)
    in_features = model.classifier[-1].in_features
    model.classifier[-1] = nn.Linear(in_features, num_classes)
    return model


def _vit_b_16(num_classes: int, dropout: float) -> nn.Module:
    model = models.vit_b_16(weights=None)
    in_features = model.heads.head.in_features
    head_layers = [nn.LayerNorm(in_features)]
    if dropout > 0:
        head_layers.append(nn.Dropout(dropout))
    head_layers.append(nn.Linear(in_features, num_classes))
    model.heads = nn.Sequential(*head_layers)
    return model


ARCHITECTURES: Dict[str, Callable[[int, float], nn.Module]] = {
    "resnet18": _resnet18,
    "mobilenet_v3_small": _mobilenet_v3_small,
    "vit_b_16": _vit_b_16,
}


def create_classifier(
    num_classes: int,
    architecture: str = DEFAULT_ARCHITECTURE,
    dropout: float = 0.1,
) -> nn.Module:
    """Build a torchvision backbone with a classification head sized for the model type."""
    try:
        factory = ARCHITECTURES[architecture]
    except KeyError:
        raise ValueError(f"Unsupported architecture '{architecture}'") from None
    return factory(num_classes, dropout)


def save_classifier_checkpoint(
    output_dir: Path,
    model: nn.Module,
    classes: List[str],
    config: Dict[str, object],
) -> None:
    """Persist model weights plus the metadata needed for inference.

    ``classes`` is stored in output order; the inference side checks it
    against the configured class list of the model type.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    torch.save({"model_state": model.state_dict(), "config": config}, output_dir / CHECKPOINT_NAME)
    (output_dir / CLASSES_NAME).write_text(
        json.dumps({label: idx for idx, label in enumerate(classes)}, indent=2)
    )


def load_classifier_checkpoint(
    model_dir: Path,
    device: torch.device | str = "cpu",
) -> ClassifierArtifacts:
    """Load a trained classifier checkpoint from disk for inference."""
    model_dir = Path(model_dir)

    ckpt_path = model_dir / CHECKPOINT_NAME
    classes_path = model_dir / CLASSES_NAME
    if not (ckpt_path.exists() and classes_path.exists()):
        raise FileNotFoundError(
            f"Missing classifier checkpoint files in {model_dir}. "
            f"Expected {CHECKPOINT_NAME} and {CLASSES_NAME}."
        )

    class_to_idx = json.loads(classes_path.read_text())
    classes = [""] * len(class_to_idx)
    for label, idx in class_to_idx.items():
        classes[int(idx)] = label

    ckpt = torch.load(ckpt_path, map_location=device)
    config = ckpt.get("config", {})

    model = create_classifier(
        num_classes=len(classes),
        architecture=str(config.get("architecture", DEFAULT_ARCHITECTURE)),
        dropout=float(config.get("dropout", 0.1)),
    )
    model.load_state_dict(ckpt["model_state"])
    model.to(device)
    model.eval()

    return ClassifierArtifacts(model=model, classes=classes, config=config)
