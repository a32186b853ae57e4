"""Gene models and promoter regions from a GTF annotation."""

import csv
import gzip
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import bioframe as bf


logger = logging.getLogger(__name__)

GTF_COLUMNS = [
    "seqname", "source", "feature", "start", "end",
    "score", "strand", "frame", "attribute"
]


def parse_gtf_attributes(attribute_series: pd.Series, target_keys: List[str]) -> pd.DataFrame:
    """
    Parse the GTF attribute field into a DataFrame with requested keys.

    Example attribute string: key "value"; key2 "value2";
    """
    parsed_rows: List[Dict[str, Optional[str]]] = []
    for raw in attribute_series.fillna("").astype(str):
        row: Dict[str, Optional[str]] = {k: None for k in target_keys}
        for field in raw.strip().split(";"):
            field = field.strip()
            if not field:
                continue
            # Split only on the first space to keep quoted value intact
            parts = field.split(" ", 1)
            if len(parts) != 2:
                continue
            key, value = parts[0], parts[1].strip().strip('"')
            if key in row and row[key] is None:
                row[key] = value
        parsed_rows.append(row)
    return pd.DataFrame(parsed_rows, index=attribute_series.index, columns=target_keys)


def open_any(path: Union[str, Path]):
    return gzip.open(path, "rt") if str(path).endswith(".gz") else open(path, "r")


def read_gtf(gtf_path: Union[str, Path], feature: str) -> pd.DataFrame:
    """Read the records of one feature type from a GTF file."""
    with open_any(gtf_path) as handle:
        df = pd.read_csv(
            handle,
            sep="\t",
            names=GTF_COLUMNS,
            comment="#",
            quoting=csv.QUOTE_NONE,
            header=None,
            dtype={"seqname": str, "start": int, "end": int, "strand": str},
        )
    return df[df["feature"] == feature].copy()


def _to_bedframe(records: pd.DataFrame, gene_id_attr: str, gene_name_attr: str) -> pd.DataFrame:
    attrs = parse_gtf_attributes(records["attribute"], [gene_id_attr, gene_name_attr])
    frame = pd.DataFrame({
        "chrom": records["seqname"].values,
        # GTF is 1-based closed, bedframes are 0-based half-open
        "start": records["start"].astype(int).values - 1,
        "end": records["end"].astype(int).values,
        "strand": records["strand"].values,
        "gene_id": attrs[gene_id_attr].values,
        "gene_name": attrs[gene_name_attr].values,
    })
    return frame.dropna(subset=["gene_id"])


def load_genes_from_gtf(
    gtf_path: Union[str, Path],
    gene_id_attr: str = "gene_id",
    gene_name_attr: str = "gene_name",
) -> pd.DataFrame:
    """
    Returns BED-like gene table: chrom, start, end, strand, gene_id, gene_name.

    Genes without a name attribute keep a missing ``gene_name``; they are
    the unannotated rows dropped during table assembly.
    """
    genes = read_gtf(gtf_path, "gene")
    if genes.empty:
        # Some annotations (e.g. UCSC exports) only carry transcripts and exons
        exons = load_exons_from_gtf(gtf_path, gene_id_attr, gene_name_attr)
        genes = (
            exons.groupby("gene_id", sort=False)
            .agg(chrom=("chrom", "first"), start=("start", "min"), end=("end", "max"),
                 strand=("strand", "first"), gene_name=("gene_name", "first"))
            .reset_index()
        )
        genes = genes[["chrom", "start", "end", "strand", "gene_id", "gene_name"]]
    else:
        genes = _to_bedframe(genes, gene_id_attr, gene_name_attr)
    genes = genes.drop_duplicates(subset="gene_id").reset_index(drop=True)
    logger.info(f"Loaded {len(genes)} genes from {gtf_path}")
    return bf.sort_bedframe(genes)


def load_exons_from_gtf(
    gtf_path: Union[str, Path],
    gene_id_attr: str = "gene_id",
    gene_name_attr: str = "gene_name",
) -> pd.DataFrame:
    """Exon table (chrom, start, end, strand, gene_id, gene_name) used for read counting."""
    exons = _to_bedframe(read_gtf(gtf_path, "exon"), gene_id_attr, gene_name_attr)
    logger.debug(f"Loaded {len(exons)} exons from {gtf_path}")
    return bf.sort_bedframe(exons.reset_index(drop=True))


def read_chromsizes(chromsizes_path: Union[str, Path]) -> pd.Series:
    cs = pd.read_csv(chromsizes_path, sep="\t", header=None, names=["chrom", "length"])
    return pd.Series(cs.length.values, index=cs.chrom)


def promoters_from_genes(
    genes: pd.DataFrame,
    upstream: int = 2000,
    downstream: int = 200,
    chromsizes: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Strand-aware promoter windows around TSS:
    - '+' strand: [TSS - upstream, TSS + downstream)
    - '-' strand: [TSS - downstream, TSS + upstream)
    """
    g = genes
    minus = (g["strand"] == "-").values
    # TSS as a 0-based position: first base on '+', last base on '-'
    tss = np.where(minus, g["end"].values - 1, g["start"].values)
    prom_start = np.where(minus, tss + 1 - downstream, tss - upstream)
    prom_end = np.where(minus, tss + 1 + upstream, tss + downstream)

    promoters = pd.DataFrame({
        "chrom": g["chrom"].values,
        "start": np.clip(prom_start, 0, None).astype(int),
        "end": prom_end.astype(int),
        "strand": g["strand"].values,
        "gene_id": g["gene_id"].values,
        "gene_name": g["gene_name"].values,
    })

    if chromsizes is not None:
        promoters = promoters.merge(
            chromsizes.rename("chrom_length"),
            left_on="chrom",
            right_index=True,
            how="left",
        )
        promoters["end"] = promoters[["end", "chrom_length"]].min(axis=1).astype(int)
        promoters = promoters.drop(columns=["chrom_length"])
    promoters = promoters[promoters["end"] > promoters["start"]]
    return bf.sort_bedframe(promoters.reset_index(drop=True))
