"""Shared statistical and file helpers."""

from batchcompare.utils.statistics import otsu_threshold, encode_binary, safe_pearson, bh_adjust
from batchcompare.utils.fileio import atomic_write_json, atomic_write_text, atomic_write_csv

__all__ = [
    'otsu_threshold',
    'encode_binary',
    'safe_pearson',
    'bh_adjust',
    'atomic_write_json',
    'atomic_write_text',
    'atomic_write_csv',
]
