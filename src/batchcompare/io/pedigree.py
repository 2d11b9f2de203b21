"""
HapMap pedigree files and sample metadata merging.

The HapMap "relationships_w_pops" releases list every sequenced individual
with family, parents, sex and population:

    FID     IID      dad      mom      sex  pheno  population
    1341    NA06985  0        0        2    0      CEU

Sex is coded 1 = male, 2 = female, anything else unknown. The ReCount
phenotype table has no sex column, so the pedigree is the source of the
`sex` covariate used throughout the comparison.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Iterable

import numpy as np
import pandas as pd

from batchcompare.core.expression import ExpressionMatrix

logger = logging.getLogger(__name__)

__all__ = ['SEX_CODES', 'load_pedigree', 'combine_pedigrees', 'merge_pedigree']

SEX_CODES = {1: 'male', 2: 'female'}

PEDIGREE_COLUMNS = ['fid', 'iid', 'dad', 'mom', 'sex', 'pheno', 'population']


def load_pedigree(path: Path | str) -> pd.DataFrame:
    """
    Load one HapMap pedigree file.

    Returns:
        DataFrame indexed by individual ID with columns `family_id`,
        `father`, `mother`, `sex` ('male'/'female'/NaN) and `population`.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If required columns are missing
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pedigree file not found: {path}")

    try:
        raw = pd.read_csv(path, sep=r'\s+', dtype=str)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Pedigree file is empty: {path}") from e

    raw.columns = [c.strip().lower() for c in raw.columns]
    missing = [c for c in ('iid', 'sex') if c not in raw.columns]
    if missing:
        raise ValueError(
            f"Pedigree file {path} is missing columns {missing}. Found: {list(raw.columns)}"
        )

    sex_code = pd.to_numeric(raw['sex'], errors='coerce')
    pedigree = pd.DataFrame({
        'family_id': raw.get('fid'),
        'father': raw.get('dad'),
        'mother': raw.get('mom'),
        'sex': sex_code.map(SEX_CODES),
        'population': raw.get('population'),
    })
    pedigree.index = pd.Index(raw['iid'].str.strip(), name='sample_id')

    n_unknown = int(pedigree['sex'].isna().sum())
    logger.info(
        f"Loaded pedigree {path.name}: {len(pedigree)} individuals, "
        f"{n_unknown} with unknown sex"
    )
    return pedigree


def combine_pedigrees(frames: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """
    Concatenate several pedigree releases, keeping the first record of
    each individual.
    """
    frames = [f for f in frames if f is not None and len(f) > 0]
    if not frames:
        raise ValueError("No pedigree records to combine")

    combined = pd.concat(frames, axis=0)
    combined = combined[~combined.index.duplicated(keep='first')]
    return combined


def merge_pedigree(matrix: ExpressionMatrix, pedigree: pd.DataFrame) -> ExpressionMatrix:
    """
    Left-join pedigree sex and family onto the sample metadata.

    Pedigree sex and family take precedence; samples without a pedigree
    record keep any value already in the metadata. `population` is filled
    from the pedigree only when the matrix lacks it; when both exist and
    disagree a UserWarning lists the conflicting samples.

    Returns:
        New ExpressionMatrix with `sex` and `family_id` columns
    """
    metadata = matrix.sample_metadata.copy()
    aligned = pedigree.reindex(matrix.sample_ids)

    matched = aligned['sex'].notna() | aligned['family_id'].notna()
    n_matched = int(matched.sum())
    logger.info(
        f"Pedigree match: {n_matched}/{matrix.n_samples} samples "
        f"({100 * n_matched / max(matrix.n_samples, 1):.1f}%)"
    )

    for column in ('sex', 'family_id'):
        if column in metadata.columns:
            metadata[column] = aligned[column].where(aligned[column].notna(), metadata[column])
        else:
            metadata[column] = aligned[column].values

    if 'population' not in metadata.columns:
        metadata['population'] = aligned['population'].values
    else:
        ped_pop = aligned['population']
        both = ped_pop.notna().values & metadata['population'].notna().values
        conflict = both & (ped_pop.values != metadata['population'].values)
        if np.any(conflict):
            warnings.warn(
                f"Population disagrees between phenotype table and pedigree for "
                f"{int(conflict.sum())} samples: {list(matrix.sample_ids[conflict][:5])}",
                UserWarning,
                stacklevel=2,
            )

    counts = metadata['sex'].value_counts(dropna=False).to_dict()
    logger.info(f"Sex distribution after merge: {counts}")

    return matrix.with_metadata(metadata)
