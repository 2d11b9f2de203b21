"""Tests for expression-based sex checks."""

import numpy as np
import pandas as pd
import pytest

from batchcompare.quality.sex_inference import (
    FEMALE_MARKERS,
    MALE_MARKERS,
    SupervisedSexClassifier,
    check_sex_concordance,
    infer_sex_from_markers,
)


class TestMarkerInference:

    def test_calls_match_recorded_sex(self, count_matrix):
        result = infer_sex_from_markers(count_matrix)

        recorded = count_matrix.sample_metadata['sex']
        assert (result.inferred_sex == recorded).all()
        assert result.n_male == 20
        assert result.n_female == 20
        assert len(result.markers_used) == len(MALE_MARKERS) + len(FEMALE_MARKERS)

    def test_score_higher_in_males(self, count_matrix):
        result = infer_sex_from_markers(count_matrix)
        is_male = (count_matrix.sample_metadata['sex'] == 'male').to_numpy()
        scores = result.sex_score.to_numpy()
        assert scores[is_male].min() > result.threshold > scores[~is_male].max()

    def test_female_markers_only(self, count_matrix):
        result = infer_sex_from_markers(count_matrix, male_markers={})
        assert result.markers_used == list(FEMALE_MARKERS)
        assert (result.inferred_sex == count_matrix.sample_metadata['sex']).all()

    def test_no_markers(self, count_matrix):
        keep = np.ones(count_matrix.n_features, dtype=bool)
        keep[:8] = False
        with pytest.raises(ValueError, match="No sex marker genes"):
            infer_sex_from_markers(count_matrix.select_features(keep))


class TestConcordance:

    def test_all_agree(self, count_matrix):
        sex = count_matrix.sample_metadata['sex']
        result = check_sex_concordance(sex, sex.copy())
        assert result.n_compared == 40
        assert result.n_mismatched == 0
        assert result.mismatch_rate == 0.0

    def test_swapped_sample_is_reported(self, count_matrix, caplog):
        recorded = count_matrix.sample_metadata['sex'].copy()
        recorded.iloc[3] = 'female' if recorded.iloc[3] == 'male' else 'male'
        inferred = infer_sex_from_markers(count_matrix).inferred_sex

        with caplog.at_level("WARNING", logger="batchcompare.quality.sex_inference"):
            result = check_sex_concordance(recorded, inferred)

        assert result.mismatched_samples == [count_matrix.sample_ids[3]]
        assert "disagrees" in caplog.text

    def test_missing_values_skipped(self):
        recorded = pd.Series(['male', None, 'female'], index=['a', 'b', 'c'])
        inferred = pd.Series(['male', 'female', 'male'], index=['a', 'b', 'c'])
        result = check_sex_concordance(recorded, inferred)
        assert result.n_compared == 2
        assert result.mismatched_samples == ['c']


class TestSupervisedClassifier:

    def test_predicts_unlabelled_samples(self, count_matrix):
        truth = count_matrix.sample_metadata['sex']
        labels = truth.copy()
        labels.iloc[:4] = np.nan

        result = SupervisedSexClassifier().fit_predict(count_matrix, labels)

        assert result.n_training_samples == 36
        assert result.cv_accuracy == pytest.approx(1.0)
        assert (result.predictions == truth).all()
        assert result.warnings == []
        assert ((result.probabilities >= 0) & (result.probabilities <= 1)).all()

    def test_insufficient_labels(self, count_matrix):
        labels = count_matrix.sample_metadata['sex'].copy()
        labels[labels == 'male'] = np.nan
        labels.iloc[1] = 'male'
        with pytest.raises(ValueError, match="Insufficient labelled samples"):
            SupervisedSexClassifier().fit(count_matrix, labels)

    def test_predict_requires_fit(self, count_matrix):
        with pytest.raises(RuntimeError, match="not fitted"):
            SupervisedSexClassifier().predict(count_matrix)

    def test_no_marker_features(self, count_matrix):
        with pytest.raises(ValueError, match="marker genes"):
            SupervisedSexClassifier(markers={'ENSG_NOT_PRESENT': 'X'}).fit(
                count_matrix, count_matrix.sample_metadata['sex']
            )
