"""Command line entry point."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from fetal_brain_de.assembly import AssemblyError
from fetal_brain_de.config import Config, get_config, set_config
from fetal_brain_de.counting import CountingError
from fetal_brain_de.differential import DifferentialExpressionError
from fetal_brain_de.epigenomics import EpigenomicsError
from fetal_brain_de.pipeline import PipelineError, run_pipeline


logger = logging.getLogger("fetal_brain_de")

ANALYSIS_ERRORS = (
    AssemblyError,
    CountingError,
    DifferentialExpressionError,
    EpigenomicsError,
    PipelineError,
)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="fetal-brain-de",
        description="Fetal vs adult brain differential expression with H3K4me3 promoter overlap",
    )
    ap.add_argument("--config", type=Path, help="YAML configuration file")
    inputs = ap.add_mutually_exclusive_group()
    inputs.add_argument("--bam", nargs="+", type=Path, help="Aligned reads, one BAM per sample")
    inputs.add_argument("--counts", nargs="+", type=Path, help="Per-sample count files (<sample>.counts.tsv)")
    ap.add_argument("--gtf", type=Path, help="Gene annotation GTF")
    ap.add_argument("--metadata", type=Path, help="Sample metadata (CSV, TSV or Excel)")
    ap.add_argument("--alignment-summaries", nargs="+", type=Path,
                    help="HISAT2/Bowtie2 alignment summaries added to the metadata as mapping statistics")
    ap.add_argument("--outdir", type=Path, help="Output directory")
    ap.add_argument("--engine", choices=["python", "limma"], default="python",
                    help="Moderated t-test implementation")
    ap.add_argument("--counting-engine", choices=["pysam", "rsubread"], help="Read counting implementation")
    ap.add_argument("--covariates", nargs="*", help="Sample columns to adjust for (e.g. sex rin)")
    ap.add_argument("--skip-epigenomics", action="store_true", help="Skip the H3K4me3 promoter overlap")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def load_config(args: argparse.Namespace) -> Config:
    """Configuration from --config (or the default location) with command line overrides."""
    config = Config.from_yaml(args.config) if args.config else get_config()

    if args.gtf:
        config.paths.gtf = args.gtf
    if args.metadata:
        config.paths.metadata = args.metadata
    if args.outdir:
        config.paths.output_dir = args.outdir
        config.paths.counts_dir = args.outdir / "counts"
    if args.counting_engine:
        config.counting.engine = args.counting_engine
    if args.covariates is not None:
        config.defaults.covariates = args.covariates
    if args.skip_epigenomics:
        config.skip_epigenomics = True
    if args.verbose:
        config.debug = True

    set_config(config)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args)

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        result = run_pipeline(
            config,
            bam_paths=args.bam,
            count_paths=args.counts,
            alignment_summaries=args.alignment_summaries,
            engine=args.engine
        )
    except ANALYSIS_ERRORS as e:
        logger.error(str(e))
        return 1

    n_sig = int(result.results['significant'].sum())
    print(f"{n_sig} of {len(result.results)} genes significant")
    for name, path in result.outputs.items():
        print(f"  {name}: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
