"""
Tests for the end-to-end batch comparison.

Inputs are served from disk through file:// URLs, so the download cache,
the ReCount and pedigree readers and the full estimator stack all run
without network access.
"""

import json

import numpy as np
import pandas as pd
import pytest

from conftest import N_LOW_GENES, write_pedigree
from batchcompare.batch.factors import BatchFactors, factor_frame
from batchcompare.pipeline import (
    AnalysisConfig,
    annotate_sex,
    estimate_batch_factors,
    gene_filter,
    moderated_t_by_adjustment,
    prepare_dataset,
    run_analysis,
    unbalanced_subset,
    write_outputs,
)
from batchcompare.utils.statistics import safe_pearson


def file_config(files, tmp_path, **overrides):
    """AnalysisConfig reading the fixture tables through file:// URLs."""
    values = dict(
        counts_url=files['counts'].as_uri(),
        phenotype_url=files['phenotype'].as_uri(),
        pedigree_urls=[files['pedigree'].as_uri()],
        cache_dir=tmp_path / "cache",
        output_dir=tmp_path / "results",
        n_sv=1,
        n_empirical_exclude=100,
        cat_max_rank=100,
    )
    values.update(overrides)
    return AnalysisConfig(**values)


class TestAnalysisConfig:

    def test_defaults(self):
        config = AnalysisConfig()
        assert config.primary_covariate == "sex"
        assert config.batch_covariate == "study"
        assert len(config.pedigree_urls) == 2
        assert config.to_dict()['cache_dir'] is None

    @pytest.mark.parametrize("overrides,message", [
        ({'min_mean': -1}, "min_mean"),
        ({'n_sv': -1}, "n_sv"),
        ({'ruv_k': 0}, "ruv_k"),
        ({'cat_max_rank': 0}, "cat_max_rank"),
        ({'keep_fraction': 0.0}, "keep_fraction"),
        ({'voom_normalize': 'tmm'}, "voom_normalize"),
        ({'figure_format': 'gif'}, "figure_format"),
        ({'primary_covariate': 'study'}, "must differ"),
    ])
    def test_invalid_values(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            AnalysisConfig(**overrides)

    def test_paths_coerced(self):
        config = AnalysisConfig(output_dir="out", cache_dir="cache")
        assert config.to_dict()['output_dir'] == "out"
        assert config.cache_dir.name == "cache"


class TestPrepareDataset:

    def test_loads_filters_and_annotates(self, recount_files, tmp_path):
        matrix = prepare_dataset(file_config(recount_files, tmp_path))

        assert matrix.n_samples == 40
        assert matrix.n_features == 300 - N_LOW_GENES
        meta = matrix.sample_metadata
        assert {'study', 'population', 'sex', 'family_id', 'sex_score', 'inferred_sex'} <= set(meta.columns)
        assert (meta['sex'] == meta['inferred_sex']).all()
        assert (tmp_path / "cache" / "montpick_count_table.txt").exists()

    def test_unknown_sex_is_predicted(self, count_matrix, recount_files, tmp_path):
        unknown = list(count_matrix.sample_ids[:3])
        write_pedigree(count_matrix, recount_files['pedigree'], unknown=unknown)

        matrix = prepare_dataset(file_config(recount_files, tmp_path))

        meta = matrix.sample_metadata
        assert matrix.n_samples == 40
        assert (meta.loc[unknown, 'sex_source'] == 'predicted').all()
        assert (meta.loc[unknown, 'sex'] == count_matrix.sample_metadata.loc[unknown, 'sex']).all()

    def test_unknown_sex_dropped_without_check(self, count_matrix, recount_files, tmp_path):
        write_pedigree(count_matrix, recount_files['pedigree'], unknown=list(count_matrix.sample_ids[:3]))
        matrix = prepare_dataset(file_config(recount_files, tmp_path, check_sex=False))
        assert matrix.n_samples == 37
        assert 'inferred_sex' not in matrix.sample_metadata.columns

    def test_requires_sex_source(self, recount_files, tmp_path):
        with pytest.raises(ValueError, match="No pedigree files"):
            prepare_dataset(file_config(recount_files, tmp_path, pedigree_urls=[]))

    @pytest.mark.parametrize("overrides,column", [
        ({'primary_covariate': 'gender'}, "gender"),
        ({'batch_covariate': 'lab'}, "lab"),
    ])
    def test_missing_covariate_column(self, recount_files, tmp_path, overrides, column):
        with pytest.raises(ValueError, match=f"no '{column}' column"):
            prepare_dataset(file_config(recount_files, tmp_path, **overrides))


class TestWriteOutputs:

    def test_summary_records_gene_filter(self, tmp_path):
        config = AnalysisConfig(output_dir=tmp_path, min_mean=7.5)
        assert gene_filter(config).params == {'min_mean': 7.5}

        summary = json.loads(write_outputs({}, config).read_text())

        assert summary['transforms'] == [{'name': 'MeanCountFilter', 'params': {'min_mean': 7.5}}]
        assert summary['runs'] == {}


class TestAnnotateSex:

    def test_records_source(self, count_matrix):
        annotated = annotate_sex(count_matrix)
        assert (annotated.sample_metadata['sex_source'] == 'pedigree').all()
        assert annotated.sample_metadata['sex_score'].notna().all()

    def test_untrainable_classifier_leaves_unknown(self, count_matrix, caplog):
        meta = count_matrix.sample_metadata.copy()
        meta['sex'] = None
        meta.iloc[0, meta.columns.get_loc('sex')] = 'female'

        with caplog.at_level("WARNING", logger="batchcompare.pipeline"):
            annotated = annotate_sex(count_matrix.with_metadata(meta))

        assert annotated.sample_metadata['sex'].isna().sum() == 39
        assert "Cannot predict sex" in caplog.text


class TestUnbalancedSubset:

    def test_confounds_sex_with_study(self, count_matrix):
        subset = unbalanced_subset(count_matrix, keep_fraction=0.3, seed=1)

        table = pd.crosstab(subset.sample_metadata['study'], subset.sample_metadata['sex'])
        assert subset.n_samples == 26
        assert table.loc['Montgomery', 'female'] == 10
        assert table.loc['Montgomery', 'male'] == 3
        assert table.loc['Pickrell', 'male'] == 10
        assert table.loc['Pickrell', 'female'] == 3

    def test_sex_becomes_correlated_with_study(self, count_matrix):
        def sex_study_r(matrix):
            meta = matrix.sample_metadata
            return abs(safe_pearson(
                (meta['sex'] == 'male').to_numpy(dtype=float),
                (meta['study'] == 'Pickrell').to_numpy(dtype=float),
            ))

        subset = unbalanced_subset(count_matrix, seed=2)
        assert sex_study_r(count_matrix) == pytest.approx(0.0)
        assert sex_study_r(subset) > 0.5

    def test_reproducible(self, count_matrix):
        a = unbalanced_subset(count_matrix, seed=5)
        b = unbalanced_subset(count_matrix, seed=5)
        assert list(a.sample_ids) == list(b.sample_ids)

    def test_full_fraction_keeps_everything(self, count_matrix):
        assert unbalanced_subset(count_matrix, keep_fraction=1.0).n_samples == 40

    def test_missing_column(self, count_matrix):
        with pytest.raises(KeyError, match="batch"):
            unbalanced_subset(count_matrix, confounder="batch")

    def test_needs_two_studies(self, count_matrix):
        montgomery = (count_matrix.sample_metadata['study'] == "Montgomery").to_numpy()
        with pytest.raises(ValueError, match="two levels"):
            unbalanced_subset(count_matrix.select_samples(montgomery))


class TestModeratedTByAdjustment:

    def test_adjustments_and_study_equivalence(self, expressed_matrix, study_codes, tmp_path):
        factors = {
            'sva': BatchFactors('sva', factor_frame(study_codes, 'sva', expressed_matrix.sample_ids)),
            'pca': BatchFactors('pca', factor_frame(np.empty((40, 0)), 'pc', expressed_matrix.sample_ids)),
        }
        config = AnalysisConfig(output_dir=tmp_path)

        tables = moderated_t_by_adjustment(expressed_matrix, factors, config)

        assert set(tables) == {'none', '+study', '+sva'}
        # a factor equal to the study indicator spans the same design
        np.testing.assert_allclose(tables['+sva']['t'], tables['+study']['t'], rtol=1e-6)
        assert not np.allclose(tables['none']['t'], tables['+study']['t'])


class TestEstimateBatchFactors:

    def test_every_method_recovers_study(self, expressed_matrix, study_codes, tmp_path):
        config = AnalysisConfig(output_dir=tmp_path, n_sv=1, n_empirical_exclude=100)
        factors = estimate_batch_factors(expressed_matrix, config)

        assert set(factors) == {'sva', 'pca', 'ruvr', 'ruvg'}
        for method, fs in factors.items():
            best = max(abs(safe_pearson(fs.factors[c].to_numpy(), study_codes)) for c in fs.names)
            assert best > 0.8, method

    def test_requires_known_sex(self, expressed_matrix, tmp_path):
        meta = expressed_matrix.sample_metadata.copy()
        meta.iloc[0, meta.columns.get_loc('sex')] = None
        with pytest.raises(ValueError, match="Missing sex"):
            estimate_batch_factors(expressed_matrix.with_metadata(meta), AnalysisConfig(output_dir=tmp_path))


@pytest.mark.slow
class TestRunAnalysis:

    def test_end_to_end(self, recount_files, tmp_path):
        config = file_config(recount_files, tmp_path)
        results = run_analysis(config)

        assert set(results) == {'full', 'unbalanced'}
        assert results['full'].n_samples == 40
        assert results['unbalanced'].n_samples == 26

        full = results['full']
        assert set(full.best_match.index) == {'sva', 'pca', 'ruvr', 'ruvg'}
        assert (full.best_match['abs_r'] > 0.8).all()
        assert set(full.cat['adjustment']) == {'none', '+sva', '+pca', '+ruvr', '+ruvg'}
        assert full.cat['rank'].max() == 100

        out = tmp_path / "results"
        for label in ('full', 'unbalanced'):
            for name in ('study_correlations.csv', 'factor_correlations.csv',
                         'moderated_t.csv', 'cat_curves.csv', 'report.html'):
                assert (out / label / name).exists(), f"{label}/{name}"
            assert len(list((out / label / "figures").glob("*.png"))) == 4

        summary = json.loads((out / "summary.json").read_text())
        assert summary['config']['n_sv'] == 1
        assert summary['transforms'][0]['name'] == 'MeanCountFilter'
        assert summary['runs']['unbalanced']['covariates']['Pickrell']['male'] == 10
        assert summary['runs']['full']['cat']['rank'] == 100
        assert set(summary['runs']['full']['best_study_match']) == {'sva', 'pca', 'ruvr', 'ruvg'}

    def test_skip_unbalanced_and_svg(self, recount_files, tmp_path):
        config = file_config(recount_files, tmp_path, run_unbalanced=False, figure_format="svg")
        results = run_analysis(config)

        assert list(results) == ['full']
        assert list((tmp_path / "results" / "full" / "figures").glob("*.svg"))
        assert not (tmp_path / "results" / "unbalanced").exists()
