"""
I/O for the public inputs of the batch comparison.

Key Functions:
    - download_file: cached fetch of a remote file
    - load_recount_dataset: ReCount count + phenotype tables -> ExpressionMatrix
    - load_pedigree / merge_pedigree: HapMap sex and family annotations

Examples:
    >>> from batchcompare.io import download_file, load_recount_dataset
    >>> counts = download_file(COUNTS_URL)
    >>> pheno = download_file(PHENO_URL)
    >>> matrix = load_recount_dataset(counts, pheno)
"""

from batchcompare.io.downloads import DownloadError, download_file, default_cache_dir
from batchcompare.io.recount import load_count_table, load_phenotype_table, load_recount_dataset
from batchcompare.io.pedigree import load_pedigree, combine_pedigrees, merge_pedigree

__all__ = [
    'DownloadError',
    'download_file',
    'default_cache_dir',
    'load_count_table',
    'load_phenotype_table',
    'load_recount_dataset',
    'load_pedigree',
    'combine_pedigrees',
    'merge_pedigree',
]
