"""
Expression-based sex checks for lymphoblastoid RNA-seq samples.

Pedigree files give the recorded sex of every HapMap individual. Sample
swaps and mislabelled cell lines show up as samples whose expression of
sex-chromosome genes disagrees with the record, and such samples would
corrupt the sex effect that the batch comparison is built around.

Biological Context:
    XIST is transcribed from the inactive X and is high in female cells.
    A handful of broadly expressed Y-linked genes (RPS4Y1, DDX3Y, KDM5D,
    EIF1AY, UTY, USP9Y, ZFY) are only expressed in male cells. Their
    contrast separates the sexes cleanly in lymphoblastoid lines.

Engineering Design:
    - Marker score: y_score = mean log2-CPM(Y markers) - log2-CPM(XIST),
      thresholded with Otsu's method (no labels needed)
    - Supervised: scikit-learn Pipeline(StandardScaler, LogisticRegression)
      trained on pedigree-labelled samples with stratified cross-validation,
      used to label samples whose pedigree record has no sex

Examples:
    >>> from batchcompare.quality import infer_sex_from_markers, check_sex_concordance
    >>> result = infer_sex_from_markers(matrix)
    >>> concordance = check_sex_concordance(matrix.sample_metadata['sex'], result.inferred_sex)
    >>> print(f"{concordance.n_mismatched} of {concordance.n_compared} disagree")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import numpy as np
import pandas as pd

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.stats.normalization import log_cpm
from batchcompare.utils.statistics import otsu_threshold

logger = logging.getLogger(__name__)

__all__ = [
    'FEMALE_MARKERS',
    'MALE_MARKERS',
    'SexInferenceResult',
    'SexConcordance',
    'SupervisedSexResult',
    'infer_sex_from_markers',
    'check_sex_concordance',
    'SupervisedSexClassifier',
]

# Ensembl gene ids (GRCh37) of the sex-chromosome markers
FEMALE_MARKERS: dict[str, str] = {
    'ENSG00000229807': 'XIST',
}

MALE_MARKERS: dict[str, str] = {
    'ENSG00000129824': 'RPS4Y1',
    'ENSG00000067048': 'DDX3Y',
    'ENSG00000012817': 'KDM5D',
    'ENSG00000198692': 'EIF1AY',
    'ENSG00000183878': 'UTY',
    'ENSG00000114374': 'USP9Y',
    'ENSG00000067646': 'ZFY',
}


@dataclass(frozen=True)
class SexInferenceResult:
    """Marker-based sex calls.

    Attributes:
        sex_score: y_score per sample (higher = more male)
        inferred_sex: 'male' / 'female' per sample
        threshold: Otsu threshold applied to sex_score
        markers_used: Gene ids that contributed to the score
    """

    sex_score: pd.Series
    inferred_sex: pd.Series
    threshold: float
    markers_used: list[str]

    @property
    def n_male(self) -> int:
        return int((self.inferred_sex == 'male').sum())

    @property
    def n_female(self) -> int:
        return int((self.inferred_sex == 'female').sum())


@dataclass(frozen=True)
class SexConcordance:
    """Agreement between recorded and inferred sex."""

    n_compared: int
    n_mismatched: int
    mismatched_samples: list[str]

    @property
    def mismatch_rate(self) -> float:
        return self.n_mismatched / self.n_compared if self.n_compared else 0.0


@dataclass
class SupervisedSexResult:
    """Predictions of the supervised classifier for every sample."""

    predictions: pd.Series
    probabilities: pd.Series
    cv_accuracy: float
    n_training_samples: int
    warnings: list[str] = field(default_factory=list)


def _marker_log_cpm(matrix: ExpressionMatrix, markers: Mapping[str, str]) -> pd.DataFrame:
    """log2-CPM rows of the markers present in the matrix (markers × samples)."""
    present = [g for g in markers if g in matrix.feature_ids]
    if not present:
        return pd.DataFrame(columns=matrix.sample_ids, dtype=float)

    lib_size = matrix.data.sum(axis=0)
    rows = matrix.feature_ids.get_indexer(present)
    values = log_cpm(matrix.data[rows], lib_size=lib_size)
    return pd.DataFrame(values, index=present, columns=matrix.sample_ids)


def infer_sex_from_markers(
    matrix: ExpressionMatrix,
    male_markers: Mapping[str, str] | None = None,
    female_markers: Mapping[str, str] | None = None,
) -> SexInferenceResult:
    """
    Call sex from XIST and Y-linked gene expression.

    The score is the mean log2-CPM of the Y markers minus the mean log2-CPM
    of the female markers; either term is dropped when none of its markers
    is in the matrix. Library sizes come from the full matrix, so pass
    counts before gene filtering removes the markers.

    Args:
        matrix: Counts (genes × samples) indexed by Ensembl gene id
        male_markers: Y-linked marker ids (default MALE_MARKERS)
        female_markers: X-inactivation marker ids (default FEMALE_MARKERS)

    Returns:
        SexInferenceResult

    Raises:
        ValueError: If no marker gene is present
    """
    male_markers = MALE_MARKERS if male_markers is None else male_markers
    female_markers = FEMALE_MARKERS if female_markers is None else female_markers

    male = _marker_log_cpm(matrix, male_markers)
    female = _marker_log_cpm(matrix, female_markers)

    if male.empty and female.empty:
        raise ValueError(
            "No sex marker genes found in the matrix "
            f"(looked for {len(male_markers) + len(female_markers)} Ensembl ids)"
        )

    score = pd.Series(0.0, index=matrix.sample_ids, name='sex_score')
    if not male.empty:
        score += male.mean(axis=0)
    if not female.empty:
        score -= female.mean(axis=0)

    threshold = otsu_threshold(score.to_numpy())
    inferred = pd.Series(
        np.where(score.to_numpy() > threshold, 'male', 'female'),
        index=matrix.sample_ids,
        name='inferred_sex',
    )

    used = list(male.index) + list(female.index)
    logger.info(
        f"Marker sex inference: {int((inferred == 'male').sum())} male, "
        f"{int((inferred == 'female').sum())} female "
        f"(threshold {threshold:.2f}, {len(used)} markers)"
    )
    return SexInferenceResult(
        sex_score=score,
        inferred_sex=inferred,
        threshold=threshold,
        markers_used=used,
    )


def check_sex_concordance(recorded: pd.Series, inferred: pd.Series) -> SexConcordance:
    """
    Compare recorded and inferred sex on samples where both are known.

    Series are aligned by index; missing values on either side are skipped.
    """
    joined = pd.concat([recorded.rename('recorded'), inferred.rename('inferred')], axis=1, join='inner')
    joined = joined.dropna()

    mismatch = joined['recorded'].astype(str) != joined['inferred'].astype(str)
    mismatched = [str(s) for s in joined.index[mismatch.to_numpy()]]

    result = SexConcordance(
        n_compared=len(joined),
        n_mismatched=len(mismatched),
        mismatched_samples=mismatched,
    )
    if mismatched:
        logger.warning(
            f"Recorded sex disagrees with expression for {len(mismatched)}/{len(joined)} "
            f"samples: {mismatched[:10]}"
        )
    else:
        logger.info(f"Recorded sex agrees with expression for all {len(joined)} samples")
    return result


class SupervisedSexClassifier:
    """
    Logistic-regression sex classifier trained on pedigree labels.

    Features are log2-CPM values of the marker genes present in the matrix.
    Scaling happens inside a scikit-learn Pipeline so cross-validation folds
    never see held-out statistics.

    Args:
        markers: Feature gene ids (default: all male and female markers)
        min_per_class: Minimum labelled samples per sex
        n_splits: Maximum stratified CV folds
        C: Inverse regularisation strength
        random_state: Seed for the CV shuffle

    Example:
        >>> clf = SupervisedSexClassifier()
        >>> result = clf.fit_predict(matrix, matrix.sample_metadata['sex'])
        >>> print(f"CV accuracy: {result.cv_accuracy:.1%}")
    """

    def __init__(
        self,
        markers: Mapping[str, str] | None = None,
        min_per_class: int = 5,
        n_splits: int = 5,
        C: float = 1.0,
        random_state: int = 42,
    ):
        self.markers = dict(markers) if markers is not None else {**MALE_MARKERS, **FEMALE_MARKERS}
        self.min_per_class = min_per_class
        self.n_splits = n_splits
        self.C = C
        self.random_state = random_state

        self._pipeline = None
        self._features: list[str] = []
        self._cv_accuracy: float = float('nan')
        self._n_training_samples: int = 0

    def _build_pipeline(self):
        from sklearn.linear_model import LogisticRegression
        from sklearn.pipeline import Pipeline
        from sklearn.preprocessing import StandardScaler

        return Pipeline([
            ('scale', StandardScaler()),
            ('clf', LogisticRegression(C=self.C, class_weight='balanced', max_iter=1000)),
        ])

    def _feature_matrix(self, matrix: ExpressionMatrix) -> np.ndarray:
        frame = _marker_log_cpm(matrix, {g: self.markers[g] for g in self._features})
        return frame.to_numpy().T

    def fit(self, matrix: ExpressionMatrix, labels: pd.Series) -> SupervisedSexClassifier:
        """
        Fit on samples with a 'male'/'female' label.

        Raises:
            ValueError: If no marker is present or a class has fewer than
                min_per_class labelled samples
        """
        from sklearn.model_selection import StratifiedKFold, cross_val_score

        self._features = [g for g in self.markers if g in matrix.feature_ids]
        if not self._features:
            raise ValueError("None of the classifier marker genes are in the matrix")

        labels = labels.reindex(matrix.sample_ids)
        labelled = labels.isin(['male', 'female']).to_numpy()
        y = (labels[labelled] == 'male').astype(int).to_numpy()

        n_male = int(y.sum())
        n_female = int(len(y) - n_male)
        if min(n_male, n_female) < self.min_per_class:
            raise ValueError(
                f"Insufficient labelled samples: male={n_male}, female={n_female}. "
                f"Need at least {self.min_per_class} of each sex."
            )

        X = self._feature_matrix(matrix)[labelled]

        n_splits = min(self.n_splits, n_male, n_female)
        if n_splits >= 2:
            cv = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=self.random_state)
            scores = cross_val_score(self._build_pipeline(), X, y, cv=cv, scoring='accuracy')
            self._cv_accuracy = float(np.mean(scores))

        self._pipeline = self._build_pipeline()
        self._pipeline.fit(X, y)
        self._n_training_samples = len(y)

        logger.info(
            f"Sex classifier: {len(self._features)} markers, {len(y)} labelled samples, "
            f"CV accuracy {self._cv_accuracy:.1%}"
        )
        return self

    def predict(self, matrix: ExpressionMatrix) -> SupervisedSexResult:
        """Predict sex for every sample of the matrix."""
        if self._pipeline is None:
            raise RuntimeError("Classifier not fitted. Call fit() first.")

        X = self._feature_matrix(matrix)
        prob_male = self._pipeline.predict_proba(X)[:, 1]

        warnings_list = []
        if np.isfinite(self._cv_accuracy) and self._cv_accuracy < 0.9:
            warnings_list.append(
                f"CV accuracy ({self._cv_accuracy:.1%}) is below 90%. "
                "Predicted labels may be unreliable."
            )

        return SupervisedSexResult(
            predictions=pd.Series(
                np.where(prob_male > 0.5, 'male', 'female'),
                index=matrix.sample_ids,
                name='predicted_sex',
            ),
            probabilities=pd.Series(prob_male, index=matrix.sample_ids, name='prob_male'),
            cv_accuracy=self._cv_accuracy,
            n_training_samples=self._n_training_samples,
            warnings=warnings_list,
        )

    def fit_predict(self, matrix: ExpressionMatrix, labels: pd.Series) -> SupervisedSexResult:
        """Fit on the labelled samples and predict all of them."""
        self.fit(matrix, labels)
        return self.predict(matrix)
