"""Read counting: assign aligned reads to gene features."""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import pysam

try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    RPY2_AVAILABLE = True
except ImportError:
    RPY2_AVAILABLE = False

from fetal_brain_de.annotation import load_exons_from_gtf


logger = logging.getLogger(__name__)

SUMMARY_KEYS = ["assigned", "ambiguous", "no_feature", "low_mapq", "unmapped", "skipped"]


class CountingError(Exception):
    """Exception for read counting errors."""
    pass


class FeatureCountsError(CountingError):
    """Exception for Rsubread featureCounts errors."""
    pass


def sample_id_from_path(path: Union[str, Path]) -> str:
    """Sample identifier of a per-sample file: the file name up to the first dot."""
    return Path(path).name.split(".")[0]


class _ExonIndex:
    """Per-chromosome sorted exon arrays for block overlap lookups."""

    def __init__(self, exons: pd.DataFrame):
        self._chroms = {}
        for chrom, group in exons.groupby("chrom", sort=False):
            group = group.sort_values("start")
            starts = group["start"].to_numpy(dtype=np.int64)
            ends = group["end"].to_numpy(dtype=np.int64)
            self._chroms[chrom] = (
                starts,
                ends,
                group["gene_id"].to_numpy(),
                group["strand"].to_numpy(),
                int((ends - starts).max()),
            )

    def genes_overlapping(self, chrom: str, blocks: Iterable[Tuple[int, int]],
                          strand: Optional[str] = None) -> set:
        entry = self._chroms.get(chrom)
        if entry is None:
            return set()
        starts, ends, gene_ids, strands, max_len = entry
        hits = set()
        for block_start, block_end in blocks:
            lo = np.searchsorted(starts, block_start - max_len, side="left")
            hi = np.searchsorted(starts, block_end, side="left")
            for i in range(lo, hi):
                if ends[i] > block_start and (strand is None or strands[i] == strand):
                    hits.add(gene_ids[i])
        return hits


def _read_strand(read: "pysam.AlignedSegment") -> str:
    strand = "-" if read.is_reverse else "+"
    if read.is_paired and read.is_read2:
        strand = "+" if strand == "-" else "-"
    return strand


def count_reads_pysam(
    bam_path: Union[str, Path],
    exons: pd.DataFrame,
    strand_specific: bool = False,
    min_mapq: int = 10,
    paired_end: bool = False
) -> Tuple[pd.Series, Dict[str, int]]:
    """
    Count reads per gene using the union of each gene's exons.

    A read is assigned to a gene when its aligned blocks overlap exons of
    exactly one gene. Secondary and supplementary alignments are skipped.
    For paired-end data each fragment is counted once, through its first mate.

    Args:
        bam_path: Coordinate-sorted or unsorted BAM file
        exons: Exon table (chrom, start, end, strand, gene_id)
        strand_specific: Require the read strand to match the gene strand
        min_mapq: Minimum mapping quality
        paired_end: Count fragments instead of reads

    Returns:
        Tuple of (counts per gene, summary of read assignments)
    """
    index = _ExonIndex(exons)
    gene_ids = pd.unique(exons["gene_id"])
    counts = dict.fromkeys(gene_ids, 0)
    summary = dict.fromkeys(SUMMARY_KEYS, 0)

    try:
        bam = pysam.AlignmentFile(str(bam_path), "rb")
    except (OSError, ValueError) as e:
        raise CountingError(f"Failed to open alignment file {bam_path}: {str(e)}")

    with bam:
        for read in bam.fetch(until_eof=True):
            if read.is_unmapped:
                summary["unmapped"] += 1
                continue
            if read.is_secondary or read.is_supplementary:
                summary["skipped"] += 1
                continue
            if paired_end and read.is_paired and not read.is_read1:
                summary["skipped"] += 1
                continue
            if read.mapping_quality < min_mapq:
                summary["low_mapq"] += 1
                continue

            strand = _read_strand(read) if strand_specific else None
            hits = index.genes_overlapping(read.reference_name, read.get_blocks(), strand)
            if not hits:
                summary["no_feature"] += 1
            elif len(hits) > 1:
                summary["ambiguous"] += 1
            else:
                counts[hits.pop()] += 1
                summary["assigned"] += 1

    sample = sample_id_from_path(bam_path)
    logger.info(
        f"{sample}: assigned {summary['assigned']} reads "
        f"({summary['ambiguous']} ambiguous, {summary['no_feature']} no feature)"
    )
    return pd.Series(counts, name=sample, dtype="int64"), summary


class FeatureCountsWrapper:
    """Wrapper for Rsubread featureCounts."""

    def __init__(self):
        """Initialize featureCounts wrapper and check R environment."""
        if not RPY2_AVAILABLE:
            raise FeatureCountsError("rpy2 is not installed. Please install it with: pip install rpy2")

        self._check_r_packages()
        try:
            self.rsubread = importr('Rsubread')
            self.base = importr('base')
            logger.info("Successfully loaded Rsubread")
        except Exception as e:
            raise FeatureCountsError(f"Failed to load R packages: {str(e)}")

    def _check_r_packages(self):
        """Check if Rsubread is installed."""
        utils = importr('utils')
        base = importr('base')

        installed = base.rownames(utils.installed_packages())
        if 'Rsubread' not in installed:
            raise FeatureCountsError(
                "Required R package not found: Rsubread\n"
                "Please install it in R using:\n"
                "  BiocManager::install('Rsubread')"
            )

    def _convert_from_r_dataframe(self, r_df) -> pd.DataFrame:
        """Convert R DataFrame to pandas DataFrame."""
        with localconverter(ro.default_converter + pandas2ri.converter):
            return ro.conversion.rpy2py(r_df)

    def count(
        self,
        bam_paths: List[Union[str, Path]],
        gtf_path: Union[str, Path],
        strand_specific: bool = False,
        min_mapq: int = 10,
        paired_end: bool = False,
        threads: int = 1
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Run featureCounts on a set of BAM files.

        Returns:
            Tuple of (count matrix genes x samples, assignment statistics)
        """
        logger.info(f"Running featureCounts on {len(bam_paths)} BAM files")
        try:
            res = self.rsubread.featureCounts(
                files=ro.StrVector([str(p) for p in bam_paths]),
                annot_ext=str(gtf_path),
                isGTFAnnotationFile=True,
                GTF_featureType="exon",
                GTF_attrType="gene_id",
                isPairedEnd=paired_end,
                strandSpecific=1 if strand_specific else 0,
                minMQS=min_mapq,
                nthreads=threads
            )
        except Exception as e:
            raise FeatureCountsError(f"featureCounts failed: {str(e)}")

        count_matrix = res.rx2('counts')
        counts = self._convert_from_r_dataframe(self.base.as_data_frame(count_matrix))
        with localconverter(ro.default_converter + pandas2ri.converter):
            counts.index = list(self.base.rownames(count_matrix))
        counts.columns = [sample_id_from_path(p) for p in bam_paths]
        stats = self._convert_from_r_dataframe(res.rx2('stat'))
        return counts.astype("int64"), stats


def write_sample_counts(counts: pd.Series, path: Union[str, Path]) -> Path:
    """Write one sample's counts as a two-column (gene_id, count) TSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    counts.rename("count").rename_axis("gene_id").to_csv(path, sep="\t", header=True)
    return path


def count_samples(
    bam_paths: List[Union[str, Path]],
    gtf_path: Union[str, Path],
    out_dir: Union[str, Path],
    engine: str = "pysam",
    strand_specific: bool = False,
    min_mapq: int = 10,
    paired_end: bool = False,
    threads: int = 1
) -> List[Path]:
    """
    Count every BAM file and write one ``<sample>.counts.tsv`` per sample.

    Returns:
        Paths of the per-sample count files
    """
    if not bam_paths:
        raise CountingError("No BAM files given")

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    summaries = {}
    written = []

    if engine == "pysam":
        exons = load_exons_from_gtf(gtf_path)
        for bam_path in bam_paths:
            counts, summary = count_reads_pysam(
                bam_path, exons,
                strand_specific=strand_specific,
                min_mapq=min_mapq,
                paired_end=paired_end
            )
            summaries[counts.name] = summary
            written.append(write_sample_counts(counts, out_dir / f"{counts.name}.counts.tsv"))
        summary_df = pd.DataFrame.from_dict(summaries, orient="index")[SUMMARY_KEYS]
    elif engine == "rsubread":
        wrapper = FeatureCountsWrapper()
        counts, summary_df = wrapper.count(
            bam_paths, gtf_path,
            strand_specific=strand_specific,
            min_mapq=min_mapq,
            paired_end=paired_end,
            threads=threads
        )
        for sample in counts.columns:
            written.append(write_sample_counts(counts[sample], out_dir / f"{sample}.counts.tsv"))
    else:
        raise CountingError(f"Unknown counting engine: {engine}")

    summary_df.to_csv(out_dir / "counting_summary.tsv", sep="\t")
    logger.info(f"Wrote {len(written)} count files to {out_dir}")
    return written


_TOTAL_READS = re.compile(r"^\s*(\d+) reads; of these:", re.MULTILINE)
_ALIGNMENT_RATE = re.compile(r"([\d.]+)% overall alignment rate")


def read_alignment_summary(path: Union[str, Path]) -> Dict[str, float]:
    """
    Parse a HISAT2/Bowtie2 alignment summary.

    Returns:
        Dictionary with ``total_reads`` and ``alignment_rate`` (percent)
    """
    text = Path(path).read_text()
    total = _TOTAL_READS.search(text)
    rate = _ALIGNMENT_RATE.search(text)
    if total is None or rate is None:
        raise CountingError(f"Not an alignment summary: {path}")
    return {
        "total_reads": int(total.group(1)),
        "alignment_rate": float(rate.group(1)),
    }


def collect_alignment_summaries(paths: List[Union[str, Path]]) -> pd.DataFrame:
    """Mapping statistics for several samples, indexed by sample id."""
    records = {sample_id_from_path(p): read_alignment_summary(p) for p in paths}
    return pd.DataFrame.from_dict(records, orient="index")
