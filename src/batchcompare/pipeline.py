"""
The batch estimator comparison, end to end.

Biological Context:
    The ReCount "montpick" dataset pools lymphoblastoid cell lines of HapMap
    CEU individuals sequenced by Montgomery et al. and YRI individuals
    sequenced by Pickrell et al. Study is therefore a strong, known batch.
    Sex is a balanced biological covariate with a small, well-understood
    set of affected genes, which makes it a good probe of whether a batch
    adjustment preserves biology.

Engineering Design:
    prepare_dataset          download → load → merge pedigree → sex check
                             → drop unknown sex → mean-count filter
    estimate_batch_factors   SVA, PCA, RUVr, RUVg on the same samples
    run_batch_comparison     correlations with study/sex and between
                             methods, voom/limma t for sex under every
                             adjustment, CAT curves against +study, figures
    unbalanced_subset        resample so sex and study are confounded
    run_analysis             "full" and "unbalanced" runs plus outputs

Examples:
    >>> from batchcompare.pipeline import AnalysisConfig, run_analysis
    >>> results = run_analysis(AnalysisConfig(output_dir=Path("results")))
    >>> results["full"].best_match
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pandas as pd

from batchcompare.batch import (
    BatchFactors,
    best_study_match,
    empirical_control_genes,
    estimate_principal_components,
    estimate_surrogate_variables,
    factor_correlation_matrix,
    first_pass_glm,
    ruv_control_genes,
    ruv_residuals,
    study_correlations,
)
from batchcompare.core.expression import ExpressionMatrix
from batchcompare.io import (
    combine_pedigrees,
    default_cache_dir,
    download_file,
    load_pedigree,
    load_recount_dataset,
    merge_pedigree,
)
from batchcompare.quality import (
    MeanCountFilter,
    SupervisedSexClassifier,
    check_sex_concordance,
    infer_sex_from_markers,
)
from batchcompare.stats import (
    add_factors,
    cat_table,
    limma_moderated_t,
    model_matrix,
    upper_quartile_normalization,
)
from batchcompare.utils.fileio import atomic_write_csv, atomic_write_json
from batchcompare.viz import BatchVisualizer, FigureCollection

logger = logging.getLogger(__name__)

__all__ = [
    'MONTPICK_COUNTS_URL',
    'MONTPICK_PHENOTYPE_URL',
    'HAPMAP_PEDIGREE_URLS',
    'AnalysisConfig',
    'ComparisonResult',
    'gene_filter',
    'prepare_dataset',
    'annotate_sex',
    'estimate_batch_factors',
    'moderated_t_by_adjustment',
    'run_batch_comparison',
    'unbalanced_subset',
    'run_analysis',
    'write_outputs',
]

MONTPICK_COUNTS_URL = "http://bowtie-bio.sourceforge.net/recount/countTables/montpick_count_table.txt"
MONTPICK_PHENOTYPE_URL = "http://bowtie-bio.sourceforge.net/recount/phenotypeTables/montpick_phenodata.txt"
HAPMAP_PEDIGREE_URLS = (
    "ftp://ftp.ncbi.nlm.nih.gov/hapmap/samples_individuals/relationships_w_pops_121708.txt",
    "ftp://ftp.ncbi.nlm.nih.gov/hapmap/samples_individuals/relationships_w_pops_051208.txt",
)

REFERENCE_ADJUSTMENT = "+study"
FIGURE_FORMATS = ("png", "pdf", "svg")
VOOM_NORMALIZATIONS = ("none", "quantile")


@dataclass
class AnalysisConfig:
    """Parameters of one analysis run."""

    counts_url: str = MONTPICK_COUNTS_URL
    phenotype_url: str = MONTPICK_PHENOTYPE_URL
    pedigree_urls: list[str] = field(default_factory=lambda: list(HAPMAP_PEDIGREE_URLS))
    cache_dir: Optional[Path] = None
    output_dir: Path = Path("batchcompare_results")
    min_mean: float = 5.0
    primary_covariate: str = "sex"
    batch_covariate: str = "study"
    n_sv: Optional[int] = None
    n_pcs: int = 2
    ruv_k: int = 1
    n_empirical_exclude: int = 5000
    cat_max_rank: int = 500
    voom_normalize: str = "none"
    keep_fraction: float = 0.3
    seed: int = 42
    run_unbalanced: bool = True
    check_sex: bool = True
    figure_format: str = "png"

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)
        self.pedigree_urls = list(self.pedigree_urls)

        if self.min_mean < 0:
            raise ValueError(f"min_mean must be >= 0, got {self.min_mean}")
        if self.n_sv is not None and self.n_sv < 0:
            raise ValueError(f"n_sv must be >= 0, got {self.n_sv}")
        for name in ("n_pcs", "ruv_k", "cat_max_rank"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.n_empirical_exclude < 0:
            raise ValueError(f"n_empirical_exclude must be >= 0, got {self.n_empirical_exclude}")
        if not 0 < self.keep_fraction <= 1:
            raise ValueError(f"keep_fraction must be in (0, 1], got {self.keep_fraction}")
        if self.voom_normalize not in VOOM_NORMALIZATIONS:
            raise ValueError(f"voom_normalize must be one of {VOOM_NORMALIZATIONS}, got '{self.voom_normalize}'")
        if self.figure_format not in FIGURE_FORMATS:
            raise ValueError(f"figure_format must be one of {FIGURE_FORMATS}, got '{self.figure_format}'")
        if self.primary_covariate == self.batch_covariate:
            raise ValueError("primary_covariate and batch_covariate must differ")

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view of the configuration."""
        data = asdict(self)
        data["output_dir"] = str(self.output_dir)
        data["cache_dir"] = str(self.cache_dir) if self.cache_dir is not None else None
        return data


@dataclass
class ComparisonResult:
    """Everything one comparison run produces."""

    label: str
    n_samples: int
    n_genes: int
    factors: dict[str, BatchFactors]
    study_correlations: pd.DataFrame
    factor_correlations: pd.DataFrame
    best_match: pd.DataFrame
    moderated_t: dict[str, pd.DataFrame]
    cat: pd.DataFrame
    covariate_table: pd.DataFrame
    figures: FigureCollection = field(default_factory=FigureCollection)

    def t_table(self) -> pd.DataFrame:
        """Long table of moderated t results with an `adjustment` column."""
        frames = []
        for adjustment, table in self.moderated_t.items():
            frame = table.copy()
            frame.insert(0, 'adjustment', adjustment)
            frames.append(frame)
        if not frames:
            return pd.DataFrame()
        combined = pd.concat(frames)
        combined.index.name = 'gene'
        return combined

    def summary(self) -> dict[str, Any]:
        """Headline numbers for summary.json."""
        cat_at = {}
        if not self.cat.empty:
            rank = int(min(100, self.cat['rank'].max()))
            at_rank = self.cat[self.cat['rank'] == rank]
            cat_at = {
                'rank': rank,
                'concordance': {
                    str(row['adjustment']): float(row['concordance'])
                    for _, row in at_rank.iterrows()
                },
            }

        return {
            'label': self.label,
            'n_samples': self.n_samples,
            'n_genes': self.n_genes,
            'covariates': {
                str(k): {str(kk): int(vv) for kk, vv in v.items()}
                for k, v in self.covariate_table.to_dict(orient='index').items()
            },
            'n_factors': {method: fs.k for method, fs in self.factors.items()},
            'best_study_match': {
                str(method): {'factor': str(row['factor']), 'abs_r': float(row['abs_r'])}
                for method, row in self.best_match.iterrows()
            },
            'cat': cat_at,
        }

    def write(self, output_dir: Path | str, figure_format: str = "png") -> list[Path]:
        """Write tables, figures and the HTML report for this run."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        written = []
        tables = {
            'study_correlations.csv': (self.study_correlations, False),
            'factor_correlations.csv': (self.factor_correlations, True),
            'moderated_t.csv': (self.t_table(), True),
            'cat_curves.csv': (self.cat, False),
        }
        for name, (frame, index) in tables.items():
            path = output_dir / name
            atomic_write_csv(path, frame, index=index)
            written.append(path)

        written.extend(self.figures.save_all(output_dir / "figures", format=figure_format))
        written.append(self.figures.to_html_report(
            output_dir / "report.html",
            title=f"Batch effect comparison ({self.label})",
            description=(
                f"{self.n_samples} samples, {self.n_genes} genes. "
                "SVA, PCA, RUVr and RUVg factors compared with the known study."
            ),
            tables={
                'Best study factor per method': self.best_match,
                'Samples by study and sex': self.covariate_table,
            },
        ))
        logger.info(f"Wrote {len(written)} files to {output_dir}")
        return written


# =============================================================================
# Data preparation
# =============================================================================


def annotate_sex(matrix: ExpressionMatrix, covariate: str = "sex") -> ExpressionMatrix:
    """
    Check recorded sex against marker expression and label unknown samples.

    Adds `sex_score` and `inferred_sex` columns. Samples without a recorded
    sex receive the supervised classifier's prediction (`sex_source` =
    'predicted'); when the classifier cannot be trained they stay unknown.

    Raises:
        ValueError: If no sex marker gene is in the matrix
    """
    inference = infer_sex_from_markers(matrix)
    metadata = matrix.sample_metadata.copy()
    metadata['sex_score'] = inference.sex_score
    metadata['inferred_sex'] = inference.inferred_sex
    metadata['sex_source'] = np.where(metadata[covariate].notna(), 'pedigree', None)

    check_sex_concordance(metadata[covariate], inference.inferred_sex)

    missing = metadata[covariate].isna()
    if missing.any():
        try:
            prediction = SupervisedSexClassifier().fit_predict(matrix, metadata[covariate])
        except ValueError as e:
            logger.warning(f"Cannot predict sex for {int(missing.sum())} unlabelled samples: {e}")
        else:
            for message in prediction.warnings:
                logger.warning(message)
            metadata.loc[missing, covariate] = prediction.predictions[missing]
            metadata.loc[missing, 'sex_source'] = 'predicted'
            logger.info(f"Predicted sex for {int(missing.sum())} samples without a pedigree record")

    return matrix.with_metadata(metadata)


def gene_filter(config: AnalysisConfig) -> MeanCountFilter:
    """The expression filter applied before every comparison run."""
    return MeanCountFilter(min_mean=config.min_mean)


def prepare_dataset(config: AnalysisConfig) -> ExpressionMatrix:
    """
    Download inputs and build the filtered, sex-annotated count matrix.

    Raises:
        DownloadError: If a download fails
        ValueError: If inputs are malformed or no samples remain
    """
    cache_dir = config.cache_dir or default_cache_dir()

    counts_path = download_file(config.counts_url, cache_dir)
    pheno_path = download_file(config.phenotype_url, cache_dir)
    matrix = load_recount_dataset(counts_path, pheno_path)
    logger.info(f"Loaded {matrix.n_features} genes × {matrix.n_samples} samples")

    pedigrees = [load_pedigree(download_file(url, cache_dir)) for url in config.pedigree_urls]
    if pedigrees:
        matrix = merge_pedigree(matrix, combine_pedigrees(pedigrees))
    elif config.primary_covariate not in matrix.sample_metadata.columns:
        raise ValueError(
            f"No pedigree files configured and phenotype table has no '{config.primary_covariate}' column"
        )

    for column in (config.primary_covariate, config.batch_covariate):
        if column not in matrix.sample_metadata.columns:
            raise ValueError(
                f"Sample metadata has no '{column}' column; "
                f"available: {list(matrix.sample_metadata.columns)}"
            )

    if config.check_sex:
        try:
            matrix = annotate_sex(matrix, config.primary_covariate)
        except ValueError as e:
            logger.warning(f"Skipping expression sex check: {e}")

    known = matrix.sample_metadata[config.primary_covariate].notna()
    if not known.all():
        logger.info(f"Dropping {int((~known).sum())} samples with unknown {config.primary_covariate}")
        matrix = matrix.select_samples(known.to_numpy())
    if matrix.n_samples == 0:
        raise ValueError(f"No samples with known {config.primary_covariate}")

    filtered = gene_filter(config).apply(matrix)
    logger.info(f"Analysis matrix: {filtered.n_features} genes × {filtered.n_samples} samples")
    return filtered


# =============================================================================
# Estimators and comparison
# =============================================================================


def estimate_batch_factors(matrix: ExpressionMatrix, config: AnalysisConfig) -> dict[str, BatchFactors]:
    """
    Run SVA, PCA, RUVr and RUVg on one matrix.

    SVA and PCA use log(upper-quartile counts + 1); RUV normalizes the
    upper-quartile counts with a first-pass GLM on the primary covariate.
    None of the estimators sees the batch covariate.
    """
    metadata = matrix.sample_metadata
    design = model_matrix(metadata, [config.primary_covariate])
    if not design.sample_mask.all():
        raise ValueError(f"Missing {config.primary_covariate} for some samples; drop them first")

    sample_ids = matrix.sample_ids
    uq_counts = upper_quartile_normalization(matrix.data).data
    log_data = np.log(uq_counts + 1.0)

    factors = {}
    factors['sva'] = estimate_surrogate_variables(
        log_data, design.X, n_sv=config.n_sv, sample_ids=sample_ids, seed=config.seed,
    )
    factors['pca'] = estimate_principal_components(log_data, k=config.n_pcs, sample_ids=sample_ids)

    first_pass = first_pass_glm(
        matrix.data, design, coef=design.column_names[-1], feature_ids=matrix.feature_ids,
    )
    factors['ruvr'] = ruv_residuals(
        uq_counts, first_pass.residuals, k=config.ruv_k, sample_ids=sample_ids,
    )
    controls = empirical_control_genes(first_pass.lrt, n_exclude=config.n_empirical_exclude)
    factors['ruvg'] = ruv_control_genes(
        uq_counts, controls.to_numpy(), k=config.ruv_k, sample_ids=sample_ids,
    )

    for method, fs in factors.items():
        logger.info(f"{method}: {fs.k} factors")
    return factors


def moderated_t_by_adjustment(
    matrix: ExpressionMatrix,
    factors: dict[str, BatchFactors],
    config: AnalysisConfig,
) -> dict[str, pd.DataFrame]:
    """
    voom/limma moderated t for the primary covariate under each adjustment.

    Adjustments: 'none', '+study', and '+<method>' for every estimator with
    at least one factor.
    """
    metadata = matrix.sample_metadata
    base = model_matrix(metadata, [config.primary_covariate])
    coef = base.column_names[-1]

    designs = {
        'none': base,
        REFERENCE_ADJUSTMENT: model_matrix(metadata, [config.primary_covariate, config.batch_covariate]),
    }
    for method, fs in factors.items():
        if fs.is_empty:
            logger.info(f"No {method} factors; skipping +{method}")
            continue
        designs[f"+{method}"] = add_factors(base, fs.factors.loc[matrix.sample_ids])

    results = {}
    for adjustment, design in designs.items():
        results[adjustment] = limma_moderated_t(
            matrix.data, design, coef,
            normalize=config.voom_normalize,
            feature_ids=matrix.feature_ids,
        )
        logger.debug(f"{adjustment}: {int((results[adjustment]['p_value'] < 0.01).sum())} genes at p < 0.01")
    return results


def run_batch_comparison(
    matrix: ExpressionMatrix,
    config: AnalysisConfig,
    label: str = "full",
) -> ComparisonResult:
    """Estimate factors, compare them, and rank sex effects under each adjustment."""
    logger.info(f"=== Batch comparison: {label} ({matrix.n_samples} samples) ===")
    metadata = matrix.sample_metadata

    factors = estimate_batch_factors(matrix, config)
    factor_sets = list(factors.values())

    corr = study_correlations(
        factor_sets, metadata, covariates=(config.batch_covariate, config.primary_covariate),
    )
    factor_corr = factor_correlation_matrix(factor_sets)
    best = best_study_match(corr, covariate=config.batch_covariate)

    tstats = moderated_t_by_adjustment(matrix, factors, config)
    reference = tstats[REFERENCE_ADJUSTMENT]['t']
    others = {name: table['t'] for name, table in tstats.items() if name != REFERENCE_ADJUSTMENT}
    cat = cat_table(reference, others, max_rank=config.cat_max_rank)

    viz = BatchVisualizer()
    figures = FigureCollection()
    figures.add("factor_vs_study", viz.plot_factor_vs_study(
        factor_sets, metadata, best,
        batch_covariate=config.batch_covariate, hue_covariate=config.primary_covariate,
    ))
    figures.add("factor_scatter", viz.plot_factor_scatter(
        factor_sets, metadata, best, batch_covariate=config.batch_covariate,
    ))
    figures.add("factor_correlations", viz.plot_correlation_heatmap(factor_corr))
    figures.add("cat_curves", viz.plot_cat_curves(
        cat, n_features=matrix.n_features, reference=REFERENCE_ADJUSTMENT,
    ))

    covariate_table = pd.crosstab(
        metadata[config.batch_covariate], metadata[config.primary_covariate],
    )

    return ComparisonResult(
        label=label,
        n_samples=matrix.n_samples,
        n_genes=matrix.n_features,
        factors=factors,
        study_correlations=corr,
        factor_correlations=factor_corr,
        best_match=best,
        moderated_t=tstats,
        cat=cat,
        covariate_table=covariate_table,
        figures=figures,
    )


def unbalanced_subset(
    matrix: ExpressionMatrix,
    confounder: str = "study",
    covariate: str = "sex",
    keep_fraction: float = 0.3,
    seed: Optional[int] = None,
) -> ExpressionMatrix:
    """
    Resample so that `covariate` is correlated with `confounder`.

    In the first confounder level (sorted) every sample of the first
    covariate level is kept and only `keep_fraction` of the second; in the
    second confounder level the roles are swapped. Samples of further
    confounder levels are dropped.

    Raises:
        KeyError: If a column is missing
        ValueError: If either column has fewer than two levels
    """
    metadata = matrix.sample_metadata
    for column in (confounder, covariate):
        if column not in metadata.columns:
            raise KeyError(f"Column '{column}' not in sample metadata")
    if not 0 < keep_fraction <= 1:
        raise ValueError(f"keep_fraction must be in (0, 1], got {keep_fraction}")

    batches = sorted(metadata[confounder].dropna().astype(str).unique().tolist())
    levels = sorted(metadata[covariate].dropna().astype(str).unique().tolist())
    if len(batches) < 2 or len(levels) < 2:
        raise ValueError(
            f"Need two levels of '{confounder}' and '{covariate}', got {batches} and {levels}"
        )

    rng = np.random.default_rng(seed)
    batch_values = metadata[confounder].astype(str).to_numpy()
    level_values = metadata[covariate].astype(str).to_numpy()
    keep = np.zeros(matrix.n_samples, dtype=bool)

    for i, batch in enumerate(batches[:2]):
        full_level = levels[i % 2]
        reduced_level = levels[(i + 1) % 2]
        in_batch = batch_values == batch

        keep |= in_batch & (level_values == full_level)

        candidates = np.where(in_batch & (level_values == reduced_level))[0]
        if len(candidates):
            n_keep = max(1, int(round(keep_fraction * len(candidates))))
            keep[rng.choice(candidates, size=n_keep, replace=False)] = True
        logger.info(
            f"{confounder}={batch}: all '{full_level}', "
            f"{int(keep[candidates].sum())}/{len(candidates)} '{reduced_level}'"
        )

    subset = matrix.select_samples(keep)
    logger.info(f"Unbalanced subset: {subset.n_samples} of {matrix.n_samples} samples")
    return subset


# =============================================================================
# Full analysis
# =============================================================================


def write_outputs(results: dict[str, ComparisonResult], config: AnalysisConfig) -> Path:
    """Write every run under output_dir/<label> and a top-level summary.json."""
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for label, result in results.items():
        result.write(output_dir / label, figure_format=config.figure_format)
        result.figures.close_all()

    summary_path = output_dir / "summary.json"
    transform = gene_filter(config)
    atomic_write_json(summary_path, {
        'config': config.to_dict(),
        'transforms': [{'name': transform.name, 'params': transform.params}],
        'runs': {label: result.summary() for label, result in results.items()},
    })
    return summary_path


def run_analysis(config: AnalysisConfig) -> dict[str, ComparisonResult]:
    """
    Run the full comparison and, optionally, the unbalanced one.

    Returns:
        Results keyed by run label ('full', 'unbalanced')
    """
    matrix = prepare_dataset(config)
    results = {'full': run_batch_comparison(matrix, config, label='full')}

    if config.run_unbalanced:
        subset = unbalanced_subset(
            matrix,
            confounder=config.batch_covariate,
            covariate=config.primary_covariate,
            keep_fraction=config.keep_fraction,
            seed=config.seed,
        )
        subset = gene_filter(config).apply(subset)
        results['unbalanced'] = run_batch_comparison(subset, config, label='unbalanced')

    write_outputs(results, config)
    return results
