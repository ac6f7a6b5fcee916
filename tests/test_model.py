"""
Tests for the scoring model capability and artifact loading.
"""
import joblib
import numpy as np
from sklearn.linear_model import LogisticRegression

from bloodmatch.scoring.features import FEATURE_COUNT, FeatureVector
from bloodmatch.scoring.model import (
    DENSE_LAYER_SIZES,
    DenseScoringModel,
    EstimatorScoringModel,
    load_scoring_model,
)


def _vector(value: float = 0.5) -> FeatureVector:
    return FeatureVector(*([value] * FEATURE_COUNT))


class TestDenseModel:

    def test_untrained_shape(self):
        model = DenseScoringModel.untrained(seed=7)
        shapes = [w.shape for w in model.weights]
        assert shapes == list(zip(DENSE_LAYER_SIZES, DENSE_LAYER_SIZES[1:]))

    def test_same_seed_same_score(self):
        a = DenseScoringModel.untrained(seed=42)
        b = DenseScoringModel.untrained(seed=42)
        assert a.predict(_vector(0.7)) == b.predict(_vector(0.7))

    def test_output_in_unit_interval(self):
        model = DenseScoringModel.untrained(seed=42)
        for value in (0.0, 0.25, 0.5, 1.0):
            assert 0.0 <= model.predict(_vector(value)) <= 1.0

    def test_zero_weights_give_half(self):
        weights = [np.zeros((i, o)) for i, o in zip(DENSE_LAYER_SIZES, DENSE_LAYER_SIZES[1:])]
        biases = [np.zeros(o) for o in DENSE_LAYER_SIZES[1:]]
        model = DenseScoringModel(weights, biases, version="zeros")
        assert model.predict(_vector()) == 0.5

    def test_inference_failure_returns_zero(self):
        model = DenseScoringModel.untrained(seed=1)
        model.weights[1] = np.zeros((3, 3))  # corrupt layer shape
        assert model.predict(_vector()) == 0.0


class TestEstimatorModel:

    def _fitted(self) -> LogisticRegression:
        rng = np.random.default_rng(0)
        x = rng.uniform(0, 1, size=(200, FEATURE_COUNT))
        y = (x.mean(axis=1) > 0.5).astype(int)
        return LogisticRegression().fit(x, y)

    def test_probability_of_positive_class(self):
        model = EstimatorScoringModel(self._fitted(), version="lr")
        assert model.predict(_vector(0.9)) > model.predict(_vector(0.1))
        assert 0.0 <= model.predict(_vector(0.5)) <= 1.0

    def test_broken_estimator_returns_zero(self):
        class Broken:
            def predict_proba(self, x):
                raise RuntimeError("boom")

        assert EstimatorScoringModel(Broken()).predict(_vector()) == 0.0


class TestLoading:

    def test_missing_artifact_falls_back(self, tmp_path):
        model = load_scoring_model(str(tmp_path / "absent.joblib"), fallback_seed=42)
        assert model.version == "untrained"
        assert model.predict(_vector(0.6)) == DenseScoringModel.untrained(seed=42).predict(_vector(0.6))

    def test_no_path_falls_back(self):
        assert load_scoring_model(None).version == "untrained"

    def test_unreadable_artifact_falls_back(self, tmp_path):
        path = tmp_path / "garbage.joblib"
        path.write_bytes(b"not a joblib file")
        assert load_scoring_model(str(path)).version == "untrained"

    def test_dense_artifact(self, tmp_path):
        source = DenseScoringModel.untrained(seed=3)
        path = tmp_path / "dense.joblib"
        joblib.dump({"weights": source.weights, "biases": source.biases, "version": "2.1"}, path)

        model = load_scoring_model(str(path))
        assert model.version == "2.1"
        assert model.predict(_vector(0.4)) == source.predict(_vector(0.4))

    def test_estimator_artifact(self, tmp_path):
        path = tmp_path / "lr.joblib"
        joblib.dump(TestEstimatorModel()._fitted(), path)

        model = load_scoring_model(str(path), version="lr-1")
        assert isinstance(model, EstimatorScoringModel)
        assert model.version == "lr-1"
