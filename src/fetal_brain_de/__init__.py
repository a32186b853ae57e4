"""Fetal vs adult human brain RNA-seq differential expression."""

__version__ = "0.1.0"

from .config import get_config, Config
from .assembly import merge_sample_counts, annotate_genes, filter_low_expression
from .differential import run_differential_expression
from .pipeline import run_pipeline

__all__ = [
    'get_config',
    'Config',
    'merge_sample_counts',
    'annotate_genes',
    'filter_low_expression',
    'run_differential_expression',
    'run_pipeline'
]
