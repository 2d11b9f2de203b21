"""
Pytest configuration and shared fixtures.

Provides a synthetic stand-in for the montpick dataset: negative-binomial
counts for two studies with a strong study effect on a block of genes, a
sex effect on a smaller block, and expressed XIST / Y-linked markers, plus
writers for the ReCount and HapMap text formats.
"""

import matplotlib

matplotlib.use("Agg")

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.quality.sex_inference import FEMALE_MARKERS, MALE_MARKERS

STUDY_GENES = slice(50, 170)
SEX_GENES = slice(8, 28)
N_LOW_GENES = 20


def generate_count_matrix(
    n_genes: int = 300,
    n_samples: int = 40,
    dispersion: float = 0.05,
    study_log2fc: float = 1.0,
    sex_log2fc: float = 2.0,
    seed: int = 42,
) -> ExpressionMatrix:
    """
    Generate a montpick-like count matrix.

    Design:
        - First half of the samples: study "Montgomery" (CEU), second half
          "Pickrell" (YRI); sex alternates so it is balanced within study
        - Genes 0-7: sex markers (Y-linked genes on in males, XIST in females)
        - Genes 8-27: autosomal sex effect of ±sex_log2fc
        - Genes 50-169: study effect of ±study_log2fc
        - Last N_LOW_GENES genes: mean count ~1 (removed by the mean filter)
    """
    rng = np.random.RandomState(seed)

    marker_ids = list(MALE_MARKERS) + list(FEMALE_MARKERS)
    other_ids = [f"ENSG9{i:010d}" for i in range(n_genes - len(marker_ids))]
    feature_ids = pd.Index(marker_ids + other_ids, name='gene')

    sample_ids = pd.Index([f"NA{18000 + i}" for i in range(n_samples)], name='sample_id')
    half = n_samples // 2
    study = np.array(["Montgomery"] * half + ["Pickrell"] * (n_samples - half))
    population = np.where(study == "Montgomery", "CEU", "YRI")
    sex = np.array(["female" if i % 2 == 0 else "male" for i in range(n_samples)])
    is_male = sex == "male"
    is_pickrell = study == "Pickrell"

    base = np.exp(rng.normal(np.log(60.0), 0.8, size=n_genes))
    base = np.maximum(base, 20.0)
    base[-N_LOW_GENES:] = 1.0

    log2_mu = np.log2(base)[:, np.newaxis] * np.ones((1, n_samples))

    n_study = STUDY_GENES.stop - STUDY_GENES.start
    study_sign = np.where(rng.rand(n_study) > 0.5, 1.0, -1.0)
    log2_mu[STUDY_GENES] += study_sign[:, np.newaxis] * study_log2fc * is_pickrell[np.newaxis, :]

    n_sex = SEX_GENES.stop - SEX_GENES.start
    sex_sign = np.where(rng.rand(n_sex) > 0.5, 1.0, -1.0)
    log2_mu[SEX_GENES] += sex_sign[:, np.newaxis] * sex_log2fc * is_male[np.newaxis, :]

    n_male_markers = len(MALE_MARKERS)
    log2_mu[:n_male_markers] = np.where(is_male, np.log2(200.0), np.log2(0.3))[np.newaxis, :]
    log2_mu[n_male_markers] = np.where(is_male, np.log2(1.0), np.log2(500.0))

    lib_factor = rng.uniform(0.7, 1.3, size=n_samples)
    mu = (2.0 ** log2_mu) * lib_factor[np.newaxis, :]

    size = 1.0 / dispersion
    counts = rng.negative_binomial(size, size / (size + mu)).astype(np.float64)

    metadata = pd.DataFrame({
        'num_tech_reps': 1,
        'population': population,
        'study': study,
        'sex': sex,
    }, index=sample_ids)

    return ExpressionMatrix(counts, feature_ids, sample_ids, metadata)


def write_recount_tables(matrix: ExpressionMatrix, directory: Path) -> tuple[Path, Path]:
    """Write ReCount-style count and phenotype tables; returns their paths."""
    directory.mkdir(parents=True, exist_ok=True)

    counts_path = directory / "montpick_count_table.txt"
    counts = matrix.to_frame().astype(int)
    counts.index.name = 'gene'
    counts.to_csv(counts_path, sep='\t')

    pheno_path = directory / "montpick_phenodata.txt"
    meta = matrix.sample_metadata
    lines = ["sample.id num.tech.reps population study"]
    for sample in matrix.sample_ids:
        lines.append(
            f"{sample} {meta.loc[sample, 'num_tech_reps']} "
            f"{meta.loc[sample, 'population']} {meta.loc[sample, 'study']}"
        )
    pheno_path.write_text("\n".join(lines) + "\n")
    return counts_path, pheno_path


def write_pedigree(matrix: ExpressionMatrix, path: Path, unknown=()) -> Path:
    """Write a HapMap pedigree for the matrix samples; `unknown` get sex code 0."""
    codes = {'male': 1, 'female': 2}
    meta = matrix.sample_metadata
    lines = ["FID IID dad mom sex pheno population"]
    for i, sample in enumerate(matrix.sample_ids):
        code = 0 if sample in unknown else codes[meta.loc[sample, 'sex']]
        lines.append(f"{1300 + i} {sample} 0 0 {code} 0 {meta.loc[sample, 'population']}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def count_matrix():
    """300 genes × 40 samples with study and sex effects."""
    return generate_count_matrix()


@pytest.fixture
def expressed_matrix(count_matrix):
    """count_matrix without the lowly expressed genes."""
    keep = np.ones(count_matrix.n_features, dtype=bool)
    keep[-N_LOW_GENES:] = False
    return count_matrix.select_features(keep)


@pytest.fixture
def recount_files(count_matrix, tmp_path):
    """ReCount tables and a pedigree for count_matrix under tmp_path/inputs."""
    counts_path, pheno_path = write_recount_tables(count_matrix, tmp_path / "inputs")
    pedigree_path = write_pedigree(count_matrix, tmp_path / "inputs" / "relationships_w_pops_121708.txt")
    return {'counts': counts_path, 'phenotype': pheno_path, 'pedigree': pedigree_path}


@pytest.fixture
def study_codes(count_matrix):
    """0/1 study indicator (Pickrell = 1)."""
    return (count_matrix.sample_metadata['study'] == "Pickrell").to_numpy(dtype=float)
