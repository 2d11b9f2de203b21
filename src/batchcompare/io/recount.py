"""
Loaders for ReCount count and phenotype tables.

ReCount publishes each dataset as an R ExpressionSet and, for the same
data, as two plain-text tables:

    montpick_count_table.txt   gene<TAB>NA06985<TAB>NA06986 ...
                               ENSG00000000003<TAB>0<TAB>12 ...
    montpick_phenodata.txt     sample.id num.tech.reps population study
                               NA06985 1 CEU Montgomery

The text tables are read here and aligned into an ExpressionMatrix whose
sample metadata holds the phenotype columns (`num_tech_reps`,
`population`, `study`).

Examples:
    >>> from batchcompare.io.recount import load_recount_dataset
    >>> matrix = load_recount_dataset("montpick_count_table.txt", "montpick_phenodata.txt")
    >>> matrix.sample_metadata['study'].value_counts()
    Pickrell      69
    Montgomery    60
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from batchcompare.core.expression import ExpressionMatrix

logger = logging.getLogger(__name__)

__all__ = ['load_count_table', 'load_phenotype_table', 'load_recount_dataset']


def _check_file(path: Path | str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return path


def load_count_table(path: Path | str) -> pd.DataFrame:
    """
    Load a ReCount count table (genes × samples).

    Args:
        path: Tab-delimited table, first column gene IDs, header sample IDs

    Returns:
        DataFrame of integer counts indexed by gene ID

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the table is empty, non-numeric or has duplicate genes
    """
    path = _check_file(path)

    try:
        df = pd.read_csv(path, sep='\t', index_col=0)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Count table is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Failed to parse count table {path}: {e}") from e

    if df.empty:
        raise ValueError(f"Count table contains no data: {path}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(
            f"Count table has non-numeric sample columns: {non_numeric[:5]}"
            f"{'...' if len(non_numeric) > 5 else ''}"
        )

    if df.index.has_duplicates:
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Count table has duplicate gene IDs: {dupes[:5]}")

    df.index = df.index.astype(str)
    df.index.name = 'gene'
    df.columns = df.columns.astype(str).str.strip()

    logger.info(f"Loaded count table: {df.shape[0]} genes x {df.shape[1]} samples")
    return df


def load_phenotype_table(path: Path | str) -> pd.DataFrame:
    """
    Load a ReCount phenotype table.

    Column names are normalised to snake_case (``sample.id`` -> ``sample_id``,
    ``num.tech.reps`` -> ``num_tech_reps``) and the table is indexed by
    sample ID.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the table is empty or lacks a sample ID column
    """
    path = _check_file(path)

    try:
        df = pd.read_csv(path, sep=r'\s+')
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Phenotype table is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Failed to parse phenotype table {path}: {e}") from e

    df.columns = [c.strip().replace('.', '_').lower() for c in df.columns]

    if 'sample_id' not in df.columns:
        raise ValueError(
            f"Phenotype table {path} has no sample.id column. Found: {list(df.columns)}"
        )

    df['sample_id'] = df['sample_id'].astype(str)
    df = df.set_index('sample_id')

    if df.empty:
        raise ValueError(f"Phenotype table contains no samples: {path}")

    logger.info(f"Loaded phenotype table: {len(df)} samples, columns {list(df.columns)}")
    return df


def load_recount_dataset(
    counts_path: Path | str,
    phenotype_path: Path | str,
) -> ExpressionMatrix:
    """
    Load and align a ReCount dataset into an ExpressionMatrix.

    Samples are kept in phenotype-table order and restricted to those present
    in both tables.

    Raises:
        ValueError: If the tables share no samples
    """
    counts = load_count_table(counts_path)
    pheno = load_phenotype_table(phenotype_path)

    shared = [s for s in pheno.index if s in set(counts.columns)]
    if not shared:
        raise ValueError(
            "Count table and phenotype table share no sample IDs "
            f"(counts: {list(counts.columns[:3])}..., phenotype: {list(pheno.index[:3])}...)"
        )

    n_dropped_counts = counts.shape[1] - len(shared)
    n_dropped_pheno = len(pheno) - len(shared)
    if n_dropped_counts or n_dropped_pheno:
        logger.warning(
            f"Dropping {n_dropped_counts} count columns and {n_dropped_pheno} "
            f"phenotype rows without a match"
        )

    sample_ids = pd.Index(shared, name='sample_id')
    data = counts[shared].to_numpy(dtype=np.float64)

    return ExpressionMatrix(
        data=data,
        feature_ids=pd.Index(counts.index, name='gene'),
        sample_ids=sample_ids,
        sample_metadata=pheno.loc[shared].set_axis(sample_ids, axis=0),
    )
