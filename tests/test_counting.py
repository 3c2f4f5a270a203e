# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""Tests for annotation parsing and read counting."""

import numpy as np
import pandas as pd
import pytest

import deseqpython as dp
from deseqpython.counting import SPECIAL_COUNTERS, AlignmentRecord, Exon


@pytest.fixture
def annotation():
    """geneA has two '+' exons, geneB ('-') overlaps the second, geneC is on chr2."""
    return dp.GeneAnnotation({
        'geneA': [Exon('chr1', 100, 200, '+'), Exon('chr1', 300, 400, '+')],
        'geneB': [Exon('chr1', 350, 500, '-')],
        'geneC': [Exon('chr2', 0, 1000, '+')],
    })


def rec(name, start, end, chrom='chr1', **kwargs):
    return AlignmentRecord(name=name, chrom=chrom, blocks=((start, end),), **kwargs)


def pair(name, s1, e1, s2, e2, proper=True, **kwargs):
    r1 = AlignmentRecord(name=name, chrom='chr1', blocks=((s1, e1),), is_paired=True,
                         is_read1=True, is_proper_pair=proper, **kwargs)
    r2 = AlignmentRecord(name=name, chrom='chr1', blocks=((s2, e2),), is_paired=True,
                         is_read2=True, is_reverse=True, is_proper_pair=proper, **kwargs)
    return [r1, r2]


class TestAnnotation:
    """GeneAnnotation and GTF parsing."""

    def test_overlapping(self, annotation):
        hits = annotation.overlapping('chr1', 360, 380)
        assert sorted(g for _, _, g in hits) == [0, 1]
        assert annotation.overlapping('chr1', 200, 300) == []
        assert annotation.overlapping('chrX', 0, 100) == []

    def test_overlapping_long_exon(self):
        ann = dp.GeneAnnotation({'long': [Exon('chr2', 0, 1000)],
                                 'short': [Exon('chr2', 10, 20)]})
        assert [g for _, _, g in ann.overlapping('chr2', 500, 510)] == [0]

    def test_strand_filter(self, annotation):
        hits = annotation.overlapping('chr1', 360, 380, strand='-')
        assert [g for _, _, g in hits] == [1]

    def test_invalid_exon(self):
        with pytest.raises(ValueError):
            dp.GeneAnnotation({'g': [Exon('chr1', 10, 10)]})
        with pytest.raises(ValueError):
            dp.GeneAnnotation({'g': [Exon('chr1', 10, 20, '*')]})

    def test_from_dataframe(self):
        df = pd.DataFrame({'gene_id': ['a', 'a', 'b'], 'chrom': ['1', '1', '2'],
                           'start': [0, 50, 10], 'end': [10, 60, 20]})
        ann = dp.GeneAnnotation.from_dataframe(df)
        assert ann.gene_ids == ['a', 'b']
        assert len(ann['a']) == 2
        assert ann['b'][0].strand == '.'
        with pytest.raises(ValueError):
            dp.GeneAnnotation.from_dataframe(df.drop(columns='end'))

    def test_read_gtf(self, tmp_path):
        path = tmp_path / "genes.gtf"
        lines = [
            '#!genome-build test',
            'chr1\ttest\tgene\t101\t400\t.\t+\t.\tgene_id "geneA";',
            'chr1\ttest\texon\t101\t200\t.\t+\t.\tgene_id "geneA"; transcript_id "t1";',
            'chr1\ttest\texon\t301\t400\t.\t+\t.\tgene_id "geneA"; transcript_id "t1";',
            'chr1\ttest\texon\t351\t500\t.\t-\t.\ttranscript_id "t2"; gene_id "geneB";',
            'chr2\ttest\texon\t1\t1000\t.\t.\t.\tgene_id "geneC";',
            'chr2\ttest\texon\t1\t1000\t.\t+\t.\ttranscript_id "t4";',
        ]
        path.write_text('\n'.join(lines) + '\n')
        ann = dp.read_gtf(str(path))
        assert ann.gene_ids == ['geneA', 'geneB', 'geneC']
        assert ann['geneA'] == [Exon('chr1', 100, 200, '+'), Exon('chr1', 300, 400, '+')]
        assert ann['geneB'] == [Exon('chr1', 350, 500, '-')]
        assert ann['geneC'][0].strand == '.'

    def test_empty_gtf(self, tmp_path):
        path = tmp_path / "empty.gtf"
        path.write_text('')
        assert len(dp.read_gtf(str(path))) == 0

    def test_missing_gtf(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            dp.read_gtf(str(tmp_path / "nope.gtf"))


class TestOverlapModes:
    """htseq-count style overlap resolution."""

    def count(self, annotation, records, **kwargs):
        counts, stats = dp.count_reads(records, annotation, **kwargs)
        return dict(counts), stats

    def test_union(self, annotation):
        reads = [rec('r1', 120, 170), rec('r2', 150, 250), rec('r3', 600, 650),
                 rec('r4', 360, 380), rec('r5', 10, 60, chrom='chr2')]
        counts, stats = self.count(annotation, reads)
        assert counts == {'geneA': 2, 'geneB': 0, 'geneC': 1}
        assert stats['__no_feature'] == 1
        assert stats['__ambiguous'] == 1

    def test_intersection_strict(self, annotation):
        reads = [rec('r1', 150, 250), rec('r2', 380, 450), rec('r3', 120, 170)]
        counts, stats = self.count(annotation, reads, mode='intersection_strict')
        assert counts == {'geneA': 1, 'geneB': 1, 'geneC': 0}
        assert stats['__no_feature'] == 1

    def test_intersection_nonempty(self, annotation):
        reads = [rec('r1', 150, 250), rec('r2', 380, 450), rec('r3', 360, 380)]
        counts, stats = self.count(annotation, reads, mode='intersection_nonempty')
        assert counts == {'geneA': 1, 'geneB': 1, 'geneC': 0}
        assert stats['__ambiguous'] == 1

    def test_union_ambiguous_partial(self, annotation):
        counts, stats = self.count(annotation, [rec('r1', 380, 450)])
        assert counts['geneA'] == 0 and counts['geneB'] == 0
        assert stats['__ambiguous'] == 1

    def test_ambiguous_all(self, annotation):
        counts, stats = self.count(annotation, [rec('r1', 360, 380)], ambiguous='all')
        assert counts == {'geneA': 1, 'geneB': 1, 'geneC': 0}
        assert stats['__ambiguous'] == 1

    def test_spliced_read(self, annotation):
        spliced = AlignmentRecord(name='s', chrom='chr1', blocks=((180, 200), (300, 320)))
        counts, stats = self.count(annotation, [spliced], mode='intersection_strict')
        assert counts['geneA'] == 1

    def test_invalid_options(self, annotation):
        with pytest.raises(ValueError):
            dp.count_reads([], annotation, mode='exact')
        with pytest.raises(ValueError):
            dp.count_reads([], annotation, stranded='maybe')

    def test_empty_annotation(self):
        counts, stats = dp.count_reads([rec('r1', 0, 50)], dp.GeneAnnotation())
        assert len(counts) == 0
        assert stats['__no_feature'] == 1


class TestStrandedness:
    """Library strandedness."""

    def test_yes(self, annotation):
        fwd = rec('r1', 360, 380)
        rev = rec('r2', 360, 380, is_reverse=True)
        counts, _ = dp.count_reads([fwd, rev], annotation, stranded='yes')
        assert counts['geneA'] == 1 and counts['geneB'] == 1

    def test_reverse(self, annotation):
        counts, _ = dp.count_reads([rec('r1', 120, 170)], annotation, stranded='reverse')
        assert counts['geneA'] == 0
        counts, _ = dp.count_reads([rec('r1', 120, 170, is_reverse=True)], annotation,
                                   stranded='reverse')
        assert counts['geneA'] == 1

    def test_read2_flipped(self, annotation):
        # read1 forward, read2 reverse: both on '+' after flipping read 2
        counts, stats = dp.count_reads(pair('p', 360, 380, 370, 390), annotation,
                                       stranded='yes')
        assert counts['geneA'] == 1
        assert counts['geneB'] == 0


class TestFragments:
    """Pairs, singletons and filters."""

    def test_pair_counted_once(self, annotation):
        counts, stats = dp.count_reads(pair('p', 100, 150, 160, 199), annotation)
        assert counts['geneA'] == 1
        assert sum(stats.values()) == 0

    def test_pair_interleaved(self, annotation):
        records = pair('p1', 100, 150, 160, 199) + pair('p2', 420, 470, 450, 490)
        records = [records[0], records[2], records[1], records[3]]
        counts, _ = dp.count_reads(records, annotation)
        assert counts['geneA'] == 1 and counts['geneB'] == 1

    def test_improper_pair(self, annotation):
        records = pair('p', 100, 150, 160, 199, proper=False)
        counts, stats = dp.count_reads(records, annotation)
        assert counts['geneA'] == 0
        assert stats['__not_counted_fragment'] == 1
        counts, _ = dp.count_reads(records, annotation, fragment_policy='all')
        assert counts['geneA'] == 1

    def test_orphan_and_unmapped_mate(self, annotation):
        orphan = pair('o', 100, 150, 160, 199)[0]
        lonely = rec('m', 120, 170, is_paired=True, is_read1=True, mate_is_unmapped=True)
        counts, stats = dp.count_reads([orphan, lonely], annotation)
        assert counts['geneA'] == 0
        assert stats['__not_counted_fragment'] == 2
        counts, _ = dp.count_reads([orphan, lonely], annotation, fragment_policy='all')
        assert counts['geneA'] == 2

    def test_mapq(self, annotation):
        reads = [rec('r1', 120, 170, mapq=5), rec('r2', 120, 170, mapq=30)]
        counts, stats = dp.count_reads(reads, annotation, min_mapq=10)
        assert counts['geneA'] == 1
        assert stats['__too_low_aQual'] == 1

    def test_multimappers(self, annotation):
        reads = [rec('r1', 120, 170, nh=2), rec('r2', 120, 170, nh=1)]
        counts, stats = dp.count_reads(reads, annotation)
        assert counts['geneA'] == 1
        assert stats['__alignment_not_unique'] == 1
        counts, _ = dp.count_reads(reads, annotation, count_multimappers=True)
        assert counts['geneA'] == 2


class TestCountMatrix:
    """count_matrix over several samples."""

    def test_records(self, annotation):
        sources = {
            'B': [rec('r1', 120, 170), rec('r2', 400, 480)],
            'A': [rec('r1', 10, 60, chrom='chr2'), rec('r2', 900, 950)],
        }
        mat, stats = dp.count_matrix(sources, annotation, return_stats=True)
        assert list(mat.columns) == ['B', 'A']
        assert list(mat.index) == ['geneA', 'geneB', 'geneC']
        np.testing.assert_array_equal(mat['B'].values, [1, 1, 0])
        np.testing.assert_array_equal(mat['A'].values, [0, 0, 1])
        assert mat.dtypes.eq(np.int64).all()
        assert list(stats.index) == list(SPECIAL_COUNTERS)
        assert stats.loc['__no_feature', 'A'] == 1

    def test_options_forwarded(self, annotation):
        sources = {'s': [rec('r1', 360, 380)]}
        mat = dp.count_matrix(sources, annotation, ambiguous='all')
        assert mat.loc['geneA', 's'] == 1 and mat.loc['geneB', 's'] == 1

    def test_not_a_mapping(self, annotation):
        with pytest.raises(ValueError):
            dp.count_matrix([[rec('r1', 0, 10)]], annotation)

    def test_feeds_dataset(self, annotation):
        sources = {f"s{j}": [rec(f"r{k}", 120, 170) for k in range(5 + j)] for j in range(4)}
        mat = dp.count_matrix(sources, annotation)
        samples = pd.DataFrame({'condition': ['A', 'A', 'B', 'B']}, index=list(mat.columns))
        ds = dp.make_deseq_dataset(mat, samples, '~ condition')
        assert ds.gene_ids == ['geneA', 'geneB', 'geneC']


class TestBam:
    """Reading alignments with pysam."""

    @pytest.fixture
    def bam_path(self, tmp_path):
        pysam = pytest.importorskip("pysam")
        header = pysam.AlignmentHeader.from_dict({
            'HD': {'VN': '1.6', 'SO': 'unsorted'},
            'SQ': [{'SN': 'chr1', 'LN': 2000}, {'SN': 'chr2', 'LN': 2000}],
        })
        path = tmp_path / "reads.bam"

        def segment(name, pos, flag=0, mapq=60, cigar='50M', nh=1):
            seg = pysam.AlignedSegment(header)
            seg.query_name = name
            seg.query_sequence = 'A' * 50
            seg.flag = flag
            seg.reference_id = 0
            seg.reference_start = pos
            seg.mapping_quality = mapq
            seg.cigarstring = cigar
            seg.query_qualities = pysam.qualitystring_to_array('I' * 50)
            seg.set_tag('NH', nh)
            return seg

        with pysam.AlignmentFile(str(path), 'wb', header=header) as out:
            out.write(segment('r1', 120))
            out.write(segment('r2', 600))
            out.write(segment('r3', 120, flag=1024))
            out.write(segment('r4', 120, flag=256))
            out.write(segment('r5', 120, mapq=3))
            out.write(segment('r6', 180, cigar='20M100N30M'))
        return path

    def test_read_alignments(self, bam_path):
        records = list(dp.read_alignments(str(bam_path)))
        assert [r.name for r in records] == ['r1', 'r2', 'r5', 'r6']
        assert records[0].blocks == ((120, 170),)
        assert records[3].blocks == ((180, 200), (300, 330))
        assert records[0].nh == 1

    def test_min_mapq_and_duplicates(self, bam_path):
        names = [r.name for r in dp.read_alignments(str(bam_path), min_mapq=10,
                                                     keep_duplicates=True)]
        assert names == ['r1', 'r2', 'r3', 'r6']

    def test_count_matrix_from_bam(self, bam_path):
        mat, stats = dp.count_matrix({'s1': str(bam_path)},
                                     dp.GeneAnnotation({'geneA': [Exon('chr1', 100, 200),
                                                                  Exon('chr1', 300, 400)]}),
                                     return_stats=True, min_mapq=10, require_index=False)
        assert mat.loc['geneA', 's1'] == 2
        assert stats.loc['__too_low_aQual', 's1'] == 1
        assert stats.loc['__no_feature', 's1'] == 1

    def test_count_matrix_unindexed_bam(self, bam_path):
        ann = dp.GeneAnnotation({'geneA': [Exon('chr1', 100, 200)]})
        with pytest.raises(OSError):
            dp.count_matrix({'s1': str(bam_path)}, ann)

    def test_count_matrix_indexed_bam(self, bam_path, tmp_path):
        pysam = pytest.importorskip("pysam")
        sorted_path = str(tmp_path / "sorted.bam")
        pysam.sort("-o", sorted_path, str(bam_path))
        pysam.index(sorted_path)
        ann = dp.GeneAnnotation({'geneA': [Exon('chr1', 100, 200),
                                           Exon('chr1', 300, 400)]})
        mat = dp.count_matrix({'s1': sorted_path}, ann, min_mapq=10)
        assert mat.loc['geneA', 's1'] == 2

    def test_require_index(self, bam_path):
        with pytest.raises(OSError):
            dp.read_alignments(str(bam_path), require_index=True)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            dp.read_alignments(str(tmp_path / "missing.bam"))
