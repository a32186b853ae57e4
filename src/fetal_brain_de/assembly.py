"""Table assembly: merge per-sample counts, annotate genes, attach sample metadata."""

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from fetal_brain_de.counting import sample_id_from_path


logger = logging.getLogger(__name__)


class AssemblyError(Exception):
    """Exception for table assembly errors."""
    pass


def _detect_delimiter(filepath: Path) -> Optional[str]:
    with open(filepath, 'r') as f:
        first_line = f.readline()
    if '\t' in first_line:
        return '\t'
    if ',' in first_line:
        return ','
    return None


def read_sample_counts(filepath: Union[str, Path]) -> pd.Series:
    """
    Read one sample's count file (gene id, count).

    Comment lines starting with '#' are skipped, so featureCounts and
    htseq-count style outputs load as well; htseq-count's ``__`` summary
    rows are dropped.
    """
    filepath = Path(filepath)
    df = pd.read_csv(filepath, sep='\t', comment='#', header=None, dtype={0: str})
    if not str(df.iloc[0, -1]).strip().isdigit():
        # Header row
        df = df.iloc[1:]
    counts = pd.Series(
        df.iloc[:, -1].astype("int64").values,
        index=df.iloc[:, 0].astype(str).str.strip(),
        name=sample_id_from_path(filepath),
    )
    counts = counts[~counts.index.str.startswith("__")]
    counts.index.name = "gene_id"
    return counts


def merge_sample_counts(filepaths: List[Union[str, Path]]) -> pd.DataFrame:
    """
    Merge per-sample count files into one genes x samples matrix.

    Genes missing from a sample's file are counted as zero.
    """
    if not filepaths:
        raise AssemblyError("No count files to merge")

    series = [read_sample_counts(p) for p in filepaths]
    names = [s.name for s in series]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise AssemblyError(f"Duplicate sample IDs among count files: {', '.join(duplicated)}")

    counts = pd.concat(series, axis=1, join="outer").fillna(0).astype("int64")
    counts.index.name = "gene_id"
    logger.info(f"Merged {counts.shape[1]} samples x {counts.shape[0]} genes")
    return counts


def annotate_genes(counts: pd.DataFrame, genes: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Join gene symbols onto the count matrix and drop unannotated rows.

    Args:
        counts: Count matrix indexed by gene id
        genes: Gene table with gene_id and gene_name columns

    Returns:
        Tuple of (annotated count matrix, gene table aligned to its rows)
    """
    gene_table = genes.drop_duplicates(subset="gene_id").set_index("gene_id")
    names = gene_table["gene_name"].reindex(counts.index)
    annotated = names.notna() & (names.astype(str).str.strip() != "")

    n_dropped = int((~annotated).sum())
    kept = counts.loc[annotated]
    logger.info(f"Dropped {n_dropped} unannotated genes, {len(kept)} remain")

    gene_rows = gene_table.reindex(kept.index).rename_axis("gene_id").reset_index()
    return kept, gene_rows


def filter_low_expression(counts: pd.DataFrame, min_mean_log2: float = 1.0) -> pd.DataFrame:
    """Keep genes whose mean log2(count + 1) across samples exceeds ``min_mean_log2``."""
    mean_log2 = np.log2(counts + 1).mean(axis=1)
    kept = counts.loc[mean_log2 > min_mean_log2]
    logger.info(
        f"Filtered {len(counts) - len(kept)} low-expression genes "
        f"(mean log2 count <= {min_mean_log2}), {len(kept)} remain"
    )
    return kept


def read_metadata(
    filepath: Union[str, Path],
    delimiter: Optional[str] = None,
    sample_col: int = 0,
    header: int = 0
) -> pd.DataFrame:
    """
    Read metadata file.

    Args:
        filepath: Path to metadata file
        delimiter: Column delimiter (auto-detected if None)
        sample_col: Column index for sample IDs
        header: Row index for column names

    Returns:
        DataFrame with samples as rows, annotations as columns
    """
    filepath = Path(filepath)

    if filepath.suffix.lower() in ['.xlsx', '.xls']:
        df = pd.read_excel(filepath, index_col=sample_col, header=header)
    else:
        if delimiter is None:
            delimiter = _detect_delimiter(filepath)
        df = pd.read_csv(filepath, sep=delimiter, index_col=sample_col, header=header)

    # Clean up sample IDs
    df.index = df.index.astype(str).str.strip()
    df.columns = df.columns.astype(str).str.strip()

    return df


def derive_age_group(
    age: pd.Series,
    fetal_max_age: float = 0.0,
    adult_min_age: float = 18.0
) -> pd.Series:
    """
    Two-level age group from age in years.

    Samples younger than ``fetal_max_age`` are fetal, samples at least
    ``adult_min_age`` old are adult; everything in between is left missing.
    """
    age = pd.to_numeric(age, errors="coerce")
    group = pd.Series(pd.NA, index=age.index, dtype="object", name="age_group")
    group[age < fetal_max_age] = "fetal"
    group[age >= adult_min_age] = "adult"
    return group


def attach_metadata(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    group_col: str = "age_group"
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Restrict counts and metadata to the samples they share.

    Samples without a value in ``group_col`` are excluded. The returned
    metadata rows follow the column order of the count matrix.
    """
    if group_col not in metadata.columns:
        raise AssemblyError(f"Group column '{group_col}' not found in metadata")

    grouped = metadata[metadata[group_col].notna()]
    shared = [s for s in counts.columns if s in grouped.index]
    if not shared:
        raise AssemblyError("No samples are shared between the count matrix and the metadata")

    missing = sorted(set(counts.columns) - set(shared))
    if missing:
        logger.warning(f"Excluding {len(missing)} samples without metadata or group: {', '.join(missing)}")

    return counts[shared], grouped.loc[shared]


def write_merged_counts(counts: pd.DataFrame, genes: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write the annotated count matrix as a tab-delimited file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    names = genes.set_index("gene_id")["gene_name"].reindex(counts.index)
    out = counts.copy()
    out.insert(0, "gene_name", names.values)
    out.to_csv(path, sep='\t', index_label="gene_id")
    logger.info(f"Wrote merged counts to {path}")
    return path
