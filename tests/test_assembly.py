"""Unit tests for table assembly."""

import numpy as np
import pandas as pd
import pytest
from fetal_brain_de.assembly import (
    AssemblyError,
    annotate_genes,
    attach_metadata,
    derive_age_group,
    filter_low_expression,
    merge_sample_counts,
    read_metadata,
    read_sample_counts,
    write_merged_counts
)


class TestSampleCounts:
    """Tests for per-sample count files."""

    def test_read_own_format(self, count_files, simulated_counts):
        """Test reading a gene_id/count file with header."""
        counts = read_sample_counts(count_files[0])

        assert counts.name == "S1"
        assert len(counts) == len(simulated_counts)
        assert counts.loc["G0000"] == simulated_counts.loc["G0000", "S1"]

    def test_read_htseq_format(self, tmp_path):
        """Test htseq-count output without header; summary rows are dropped."""
        path = tmp_path / "S9.htseq.txt"
        path.write_text("G1\t10\nG2\t0\n__no_feature\t5\n__ambiguous\t2\n")

        counts = read_sample_counts(path)

        assert counts.name == "S9"
        assert counts.to_dict() == {"G1": 10, "G2": 0}

    def test_read_featurecounts_format(self, tmp_path):
        """Test featureCounts output with its comment and header lines."""
        path = tmp_path / "S7.featureCounts.txt"
        path.write_text(
            "# Program:featureCounts v2.0.3; Command:\"featureCounts\"\n"
            "Geneid\tChr\tStart\tEnd\tStrand\tLength\tS7.bam\n"
            "G1\tchr1\t1\t100\t+\t100\t42\n"
            "G2\tchr1\t201\t300\t-\t100\t7\n"
        )

        counts = read_sample_counts(path)

        assert counts.to_dict() == {"G1": 42, "G2": 7}

    def test_merge(self, count_files, simulated_counts):
        """Test merging keeps every gene and sample."""
        merged = merge_sample_counts(count_files)

        assert merged.shape == simulated_counts.shape
        assert list(merged.columns) == list(simulated_counts.columns)
        pd.testing.assert_frame_equal(
            merged.loc[simulated_counts.index], simulated_counts,
            check_names=False, check_dtype=False
        )

    def test_merge_fills_missing_genes(self, tmp_path):
        """Test genes absent from one file are counted as zero."""
        (tmp_path / "A.counts.tsv").write_text("gene_id\tcount\nG1\t5\nG2\t3\n")
        (tmp_path / "B.counts.tsv").write_text("gene_id\tcount\nG1\t4\n")

        merged = merge_sample_counts([tmp_path / "A.counts.tsv", tmp_path / "B.counts.tsv"])

        assert merged.loc["G2", "B"] == 0
        assert merged.dtypes.unique().tolist() == [np.dtype("int64")]

    def test_merge_duplicate_samples(self, tmp_path):
        """Test error when two files map to the same sample id."""
        (tmp_path / "A.counts.tsv").write_text("gene_id\tcount\nG1\t5\n")
        (tmp_path / "A.htseq.txt").write_text("G1\t5\n")

        with pytest.raises(AssemblyError, match="Duplicate"):
            merge_sample_counts([tmp_path / "A.counts.tsv", tmp_path / "A.htseq.txt"])

    def test_merge_nothing(self):
        """Test error when no files are given."""
        with pytest.raises(AssemblyError):
            merge_sample_counts([])


class TestAnnotation:
    """Tests for joining gene symbols."""

    def test_drops_unannotated_rows(self, simulated_counts, gene_table):
        """Test rows out equals rows in minus unannotated rows."""
        n_unannotated = gene_table['gene_name'].isna().sum()

        annotated, genes = annotate_genes(simulated_counts, gene_table)

        assert len(annotated) == len(simulated_counts) - n_unannotated
        assert list(genes['gene_id']) == list(annotated.index)
        assert genes['gene_name'].notna().all()

    def test_unknown_gene_ids_dropped(self, simulated_counts, gene_table):
        """Test genes absent from the annotation count as unannotated."""
        extra = pd.DataFrame([[1] * 8], index=['NOT_IN_GTF'], columns=simulated_counts.columns)
        counts = pd.concat([simulated_counts, extra])

        annotated, _ = annotate_genes(counts, gene_table)

        assert 'NOT_IN_GTF' not in annotated.index

    def test_unnamed_index(self, gene_table):
        """Test the gene table keeps its gene_id column for an unnamed count index."""
        counts = pd.DataFrame({'S1': [5, 6, 7]}, index=['G0001', 'G0002', 'NOT_IN_GTF'])

        annotated, genes = annotate_genes(counts, gene_table)

        assert 'gene_id' in genes.columns
        assert genes['gene_id'].tolist() == ['G0001', 'G0002']
        assert genes['gene_name'].tolist() == ['GENE1', 'GENE2']


class TestFiltering:
    """Tests for low-expression filtering."""

    def test_filter_low_expression(self):
        """Test genes at or below the threshold are removed."""
        counts = pd.DataFrame({
            'S1': [0, 1, 100],
            'S2': [0, 1, 200]
        }, index=['zero', 'one', 'high'])

        kept = filter_low_expression(counts, min_mean_log2=1.0)

        # log2(1 + 1) == 1 is not above the threshold
        assert list(kept.index) == ['high']


class TestMetadata:
    """Tests for sample metadata."""

    def test_read_csv(self, tmp_path, sample_table):
        """Test reading CSV metadata."""
        filepath = tmp_path / "pheno.csv"
        sample_table.to_csv(filepath)

        df = read_metadata(filepath)

        assert df.shape == sample_table.shape
        assert list(df.index) == list(sample_table.index)

    def test_read_tsv(self, tmp_path, sample_table):
        """Test reading TSV metadata."""
        filepath = tmp_path / "pheno.tsv"
        sample_table.to_csv(filepath, sep='\t')

        df = read_metadata(filepath)

        assert df.loc['S5', 'age_group'] == 'adult'

    def test_read_excel(self, tmp_path, sample_table):
        """Test reading Excel metadata."""
        filepath = tmp_path / "pheno.xlsx"
        sample_table.to_excel(filepath)

        df = read_metadata(filepath)

        assert df.shape == sample_table.shape

    def test_derive_age_group(self):
        """Test prenatal samples are fetal and 18+ are adult."""
        ages = pd.Series([-0.4, 0.5, 12.0, 18.0, 60.0, np.nan], index=list('abcdef'))

        groups = derive_age_group(ages)

        assert groups['a'] == 'fetal'
        assert groups['d'] == 'adult'
        assert groups['e'] == 'adult'
        assert groups[['b', 'c', 'f']].isna().all()

    def test_attach_metadata(self, simulated_counts, sample_table):
        """Test samples are aligned to the count matrix order."""
        shuffled = sample_table.iloc[::-1]

        counts, metadata = attach_metadata(simulated_counts, shuffled)

        assert list(metadata.index) == list(counts.columns)

    def test_attach_excludes_ungrouped(self, simulated_counts, sample_table):
        """Test samples without a group are left out."""
        metadata = sample_table.copy()
        metadata.loc['S8', 'age_group'] = np.nan

        counts, metadata = attach_metadata(simulated_counts, metadata)

        assert 'S8' not in counts.columns
        assert counts.shape[1] == 7

    def test_attach_no_shared_samples(self, simulated_counts, sample_table):
        """Test error when nothing matches."""
        metadata = sample_table.copy()
        metadata.index = [f"Wrong_{i}" for i in range(8)]

        with pytest.raises(AssemblyError, match="No samples"):
            attach_metadata(simulated_counts, metadata)

    def test_attach_missing_group_column(self, simulated_counts, sample_table):
        """Test error when the group column is absent."""
        with pytest.raises(AssemblyError, match="not found"):
            attach_metadata(simulated_counts, sample_table, group_col='tissue')


class TestExport:
    """Tests for the merged count table."""

    def test_write_merged_counts(self, tmp_path, simulated_counts, gene_table):
        """Test the export carries gene symbols and all samples."""
        counts, genes = annotate_genes(simulated_counts, gene_table)
        path = write_merged_counts(counts, genes, tmp_path / "out" / "merged_counts.tsv")

        table = pd.read_csv(path, sep='\t', index_col=0)

        assert list(table.columns) == ['gene_name'] + list(counts.columns)
        assert len(table) == len(counts)
        assert table.loc['G0001', 'gene_name'] == 'GENE1'
