"""
Donor compatibility model — pluggable scoring capability.

Contract (every implementation):
  - input: a FeatureVector (10 components, fixed order)
  - output: probability in [0, 1]
  - deterministic for the same input and model version
  - never raises from predict(): inference failure logs and returns 0.0,
    so one bad candidate cannot abort a matching run

Artifacts are joblib files holding either a fitted scikit-learn classifier
or a dict of dense-network arrays {"weights": [...], "biases": [...]}.
When no usable artifact exists an untrained network with the trained
network's shape is built instead: same interface, lower score quality.
"""
from __future__ import annotations

import os
from typing import Any, Optional, Protocol, Sequence

import joblib
import numpy as np
import structlog

from bloodmatch.scoring.features import FEATURE_COUNT, FeatureVector

logger = structlog.get_logger()

# 10 -> 64 -> 32 -> 16 -> 1, relu hidden layers, sigmoid output
DENSE_LAYER_SIZES = (FEATURE_COUNT, 64, 32, 16, 1)


class ScoringModel(Protocol):
    version: str

    def predict(self, vector: FeatureVector) -> float: ...


def _as_input(vector: FeatureVector) -> np.ndarray:
    values = np.asarray(vector.as_list(), dtype=np.float64).reshape(1, -1)
    if values.shape[1] != FEATURE_COUNT:
        raise ValueError(f"expected {FEATURE_COUNT} features, got {values.shape[1]}")
    return values


def _bounded(score: float) -> float:
    if not np.isfinite(score):
        raise ValueError(f"non-finite model output: {score}")
    return float(min(1.0, max(0.0, score)))


# ═══════════════════════════════════════════════════════════════
# Dense network (numpy forward pass)
# ═══════════════════════════════════════════════════════════════

class DenseScoringModel:

    def __init__(self, weights: Sequence[np.ndarray], biases: Sequence[np.ndarray], version: str = "1.0"):
        if len(weights) != len(biases) or not weights:
            raise ValueError("weights and biases must be non-empty and of equal length")
        self.weights = [np.asarray(w, dtype=np.float64) for w in weights]
        self.biases = [np.asarray(b, dtype=np.float64) for b in biases]
        self.version = version
        if self.weights[0].shape[0] != FEATURE_COUNT or self.weights[-1].shape[1] != 1:
            raise ValueError("dense network must map 10 features to 1 output")

    @classmethod
    def untrained(cls, seed: int = 42, version: str = "untrained") -> "DenseScoringModel":
        """Glorot-uniform weights, zero biases, fixed seed so scores are reproducible."""
        rng = np.random.default_rng(seed)
        weights, biases = [], []
        for fan_in, fan_out in zip(DENSE_LAYER_SIZES, DENSE_LAYER_SIZES[1:]):
            limit = np.sqrt(6.0 / (fan_in + fan_out))
            weights.append(rng.uniform(-limit, limit, size=(fan_in, fan_out)))
            biases.append(np.zeros(fan_out))
        return cls(weights, biases, version=version)

    def predict(self, vector: FeatureVector) -> float:
        try:
            x = _as_input(vector)
            last = len(self.weights) - 1
            for i, (w, b) in enumerate(zip(self.weights, self.biases)):
                x = x @ w + b
                x = 1.0 / (1.0 + np.exp(-x)) if i == last else np.maximum(x, 0.0)
            return _bounded(float(x[0, 0]))
        except Exception as e:
            logger.error("model_inference_failed", model="dense", version=self.version, error=str(e))
            return 0.0


# ═══════════════════════════════════════════════════════════════
# Fitted scikit-learn estimator
# ═══════════════════════════════════════════════════════════════

class EstimatorScoringModel:

    def __init__(self, estimator: Any, version: str = "1.0"):
        self.estimator = estimator
        self.version = version

    def predict(self, vector: FeatureVector) -> float:
        try:
            x = _as_input(vector)
            if hasattr(self.estimator, "predict_proba"):
                return _bounded(float(self.estimator.predict_proba(x)[0][1]))
            return _bounded(float(self.estimator.predict(x)[0]))
        except Exception as e:
            logger.error("model_inference_failed", model="estimator", version=self.version, error=str(e))
            return 0.0


# ═══════════════════════════════════════════════════════════════
# Loading with fallback
# ═══════════════════════════════════════════════════════════════

def load_scoring_model(
    path: Optional[str],
    version: str = "1.0",
    fallback_seed: int = 42,
) -> ScoringModel:
    if not path or not os.path.exists(path):
        logger.warning("model_artifact_missing", path=path)
        return _fallback(fallback_seed)

    try:
        artifact = joblib.load(path)
        if isinstance(artifact, dict) and "weights" in artifact:
            model: ScoringModel = DenseScoringModel(
                artifact["weights"], artifact["biases"], version=artifact.get("version", version),
            )
        elif hasattr(artifact, "predict_proba") or hasattr(artifact, "predict"):
            model = EstimatorScoringModel(artifact, version=version)
        else:
            raise ValueError(f"unsupported artifact type {type(artifact).__name__}")
    except Exception as e:
        logger.error("model_artifact_load_failed", path=path, error=str(e))
        return _fallback(fallback_seed)

    logger.info("model_loaded", path=path, version=model.version)
    return model


def _fallback(seed: int) -> ScoringModel:
    model = DenseScoringModel.untrained(seed=seed)
    logger.info("fallback_model_created", version=model.version, seed=seed)
    return model
