"""Promoter overlap with Roadmap Epigenomics histone-mark peaks."""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd
import bioframe as bf
import requests

from fetal_brain_de.annotation import promoters_from_genes


logger = logging.getLogger(__name__)

ROADMAP_URL_TEMPLATE = (
    "https://egg2.wustl.edu/roadmap/data/byFileType/peaks/consolidated/"
    "narrowPeak/{epigenome}-{mark}.narrowPeak.gz"
)

# Roadmap reference epigenomes
PEAK_CATEGORIES = {
    "fetal_brain": "E081",   # Fetal Brain Male
    "adult_brain": "E073",   # Brain Dorsolateral Prefrontal Cortex
    "adult_liver": "E066",   # Liver
}


class EpigenomicsError(Exception):
    """Exception for peak retrieval and overlap errors."""
    pass


def peak_url(category: str, mark: str = "H3K4me3",
             categories: Optional[Dict[str, str]] = None,
             url_template: str = ROADMAP_URL_TEMPLATE) -> str:
    categories = PEAK_CATEGORIES if categories is None else categories
    if category not in categories:
        raise EpigenomicsError(
            f"Unknown peak category '{category}'. Available: {', '.join(sorted(categories))}"
        )
    return url_template.format(epigenome=categories[category], mark=mark)


def download_peaks(url: str, cache_dir: Union[str, Path],
                   session: Optional[requests.Session] = None,
                   timeout: float = 60.0) -> Path:
    """Download a peak file into ``cache_dir`` unless it is already there."""
    cache_dir = Path(cache_dir)
    target = cache_dir / url.rsplit("/", 1)[-1]
    if target.exists():
        logger.debug(f"Using cached peaks {target}")
        return target

    cache_dir.mkdir(parents=True, exist_ok=True)
    session = session or requests.Session()
    logger.info(f"Downloading {url}")
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise EpigenomicsError(f"Failed to download {url}: {str(e)}")

    # Write through a temporary name so a failed download never looks cached
    partial = target.with_name(target.name + ".part")
    partial.write_bytes(resp.content)
    partial.replace(target)
    return target


def read_peaks(path: Union[str, Path]) -> pd.DataFrame:
    """Read a narrowPeak (or plain BED) file into a sorted bedframe."""
    path = Path(path)
    schema = "narrowPeak" if "narrowPeak" in path.name else "bed3"
    try:
        peaks = bf.read_table(str(path), schema=schema)
    except (OSError, ValueError) as e:
        raise EpigenomicsError(f"Failed to read peaks from {path}: {str(e)}")
    return bf.sort_bedframe(peaks)


def fetch_peaks(
    category: str,
    cache_dir: Union[str, Path],
    mark: str = "H3K4me3",
    categories: Optional[Dict[str, str]] = None,
    url_template: str = ROADMAP_URL_TEMPLATE,
    session: Optional[requests.Session] = None,
    timeout: float = 60.0
) -> pd.DataFrame:
    """Peak set for one tissue/age category, fetched once and cached."""
    url = peak_url(category, mark, categories, url_template)
    peaks = read_peaks(download_peaks(url, cache_dir, session=session, timeout=timeout))
    logger.info(f"Loaded {len(peaks)} {mark} peaks for {category}")
    return peaks


def match_chrom_style(regions: pd.DataFrame, reference: pd.DataFrame) -> pd.DataFrame:
    """Add or strip the 'chr' prefix of ``regions`` to follow ``reference`` (Ensembl vs UCSC names)."""
    if len(regions) == 0 or len(reference) == 0:
        return regions
    ref_ucsc = reference["chrom"].astype(str).str.startswith("chr").any()
    reg_ucsc = regions["chrom"].astype(str).str.startswith("chr").any()
    if ref_ucsc == reg_ucsc:
        return regions
    regions = regions.copy()
    if ref_ucsc:
        regions["chrom"] = "chr" + regions["chrom"].astype(str).replace({"MT": "M"})
    else:
        regions["chrom"] = regions["chrom"].astype(str).str.replace(r"^chr", "", regex=True).replace({"M": "MT"})
    return regions


def count_promoters_with_peaks(promoters: pd.DataFrame, peaks: pd.DataFrame) -> int:
    """Number of promoters overlapping at least one peak."""
    if len(promoters) == 0:
        return 0
    promoters = match_chrom_style(promoters, peaks)
    hits = bf.count_overlaps(promoters[["chrom", "start", "end"]], peaks[["chrom", "start", "end"]])
    return int((hits["count"] > 0).sum())


def promoter_overlap_fraction(promoters: pd.DataFrame, peaks: pd.DataFrame) -> float:
    """Fraction of promoters overlapping at least one peak."""
    if len(promoters) == 0:
        return float('nan')
    return count_promoters_with_peaks(promoters, peaks) / len(promoters)


def cross_reference(
    results: pd.DataFrame,
    genes: pd.DataFrame,
    peaks_by_category: Dict[str, pd.DataFrame],
    upstream: int = 2000,
    downstream: int = 200,
    by_direction: bool = True,
    chromsizes: Optional[pd.Series] = None
) -> pd.DataFrame:
    """
    Overlap of significant-gene promoters with each category's peaks.

    Args:
        results: DE results with gene_id, significant and direction columns
        genes: Gene table with coordinates
        peaks_by_category: Peak sets keyed by category name
        upstream: Promoter bases upstream of the TSS
        downstream: Promoter bases downstream of the TSS
        by_direction: Also report up- and down-regulated genes separately
        chromsizes: Optional chromosome lengths for clamping promoters

    Returns:
        DataFrame with gene_set, category, n_promoters, n_overlapping, fraction
    """
    gene_sets = {"significant": results.loc[results['significant'], 'gene_id']}
    if by_direction:
        gene_sets["up"] = results.loc[results['direction'] == 'up', 'gene_id']
        gene_sets["down"] = results.loc[results['direction'] == 'down', 'gene_id']

    rows = []
    for set_name, gene_ids in gene_sets.items():
        selected = genes[genes['gene_id'].isin(set(gene_ids))]
        promoters = promoters_from_genes(selected, upstream, downstream, chromsizes)
        for category, peaks in peaks_by_category.items():
            n_overlapping = count_promoters_with_peaks(promoters, peaks)
            fraction = n_overlapping / len(promoters) if len(promoters) else float('nan')
            rows.append({
                'gene_set': set_name,
                'category': category,
                'n_promoters': len(promoters),
                'n_overlapping': n_overlapping,
                'fraction': fraction
            })
            logger.info(f"{set_name} promoters overlapping {category} peaks: {n_overlapping}/{len(promoters)}")

    return pd.DataFrame(rows, columns=['gene_set', 'category', 'n_promoters', 'n_overlapping', 'fraction'])
