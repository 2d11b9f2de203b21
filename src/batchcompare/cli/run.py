"""
batchcompare run command - compare SVA, PCA, RUVr and RUVg on montpick.

Downloads the ReCount montpick counts and phenotype table and the HapMap
pedigrees, estimates batch factors with each method, and reports how well
each recovers the sequencing study and how adjusting for it changes the
ranking of sex-associated genes. The comparison is repeated on a subset in
which sex is unbalanced between the two studies.

Usage:
    batchcompare run --output results/montpick
    batchcompare run --config analysis.yaml --n-sv 2 --skip-unbalanced
"""

import argparse
import logging
from datetime import datetime
from pathlib import Path

from batchcompare.cli._validators import (
    _fraction,
    _non_negative_float,
    _non_negative_int,
    _positive_int,
)
from batchcompare.io.downloads import DownloadError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the run subcommand."""
    parser = subparsers.add_parser(
        "run",
        help="Compare batch estimators on the montpick dataset",
        description=(
            "Estimate batch factors with SVA, PCA, RUVr and RUVg, compare them with\n"
            "the known study, and rank sex effects under each adjustment."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Outputs (per run: full/, unbalanced/):
  study_correlations.csv   factor vs study/sex correlations
  factor_correlations.csv  |r| between all factors
  moderated_t.csv          voom/limma results per adjustment
  cat_curves.csv           concordance with the +study ranking
  figures/                 plots in the chosen format
  report.html              figures and summary tables
  ../summary.json          configuration and headline numbers

Examples:
  batchcompare run --output results/montpick
  batchcompare run --config analysis.yaml --format pdf
  batchcompare run --n-sv 2 --ruv-k 2 --cat-max-rank 1000
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML or JSON file with AnalysisConfig fields"
    )

    parser.add_argument(
        "--output", "-o",
        type=Path,
        help="Output directory (default: batchcompare_results)"
    )

    parser.add_argument(
        "--cache-dir",
        type=Path,
        help="Download cache directory (default: ~/.cache/batchcompare)"
    )

    parser.add_argument(
        "--min-mean",
        type=_non_negative_float,
        help="Keep genes with mean count above this (default: 5)"
    )

    parser.add_argument(
        "--n-sv",
        type=_non_negative_int,
        help="Number of surrogate variables (default: estimated by permutation)"
    )

    parser.add_argument(
        "--ruv-k",
        type=_positive_int,
        help="Number of RUV factors (default: 1)"
    )

    parser.add_argument(
        "--cat-max-rank",
        type=_positive_int,
        help="Largest rank cutoff of the CAT curves (default: 500)"
    )

    parser.add_argument(
        "--keep-fraction",
        type=_fraction,
        help="Fraction of the minority sex kept per study in the unbalanced run (default: 0.3)"
    )

    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for permutations and resampling (default: 42)"
    )

    parser.add_argument(
        "--skip-unbalanced",
        action="store_true",
        help="Only run the comparison on the full dataset"
    )

    parser.add_argument(
        "--no-sex-check",
        action="store_true",
        help="Skip the expression-based sex check"
    )

    parser.add_argument(
        "--format",
        choices=["png", "pdf", "svg"],
        help="Figure format (default: png)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging"
    )

    parser.set_defaults(func=run_command)


def _print_summary(results) -> None:
    for label, result in results.items():
        print(f"\n  --- {label}: {result.n_samples} samples, {result.n_genes} genes ---")
        print(f"  Samples by study and sex:\n{result.covariate_table.to_string()}")
        if not result.best_match.empty:
            print("\n  Best study factor per method:")
            for method, row in result.best_match.iterrows():
                print(f"    {method:6s} {row['factor']:10s} |r| = {row['abs_r']:.3f}")
        concordance = result.summary()['cat']
        if concordance:
            print(f"\n  CAT at rank {concordance['rank']} vs +study:")
            for adjustment, value in concordance['concordance'].items():
                print(f"    {adjustment:8s} {value:.2f}")


def run_command(args: argparse.Namespace) -> int:
    """Execute the run command."""
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    import matplotlib
    matplotlib.use("Agg")

    from batchcompare.cli.config import build_analysis_config, load_config, validate_config
    from batchcompare.pipeline import run_analysis
    from batchcompare.viz.styles import configure_style

    config_values = {}
    if args.config:
        print(f"Loading configuration from: {args.config}")
        try:
            config_values = load_config(args.config)
            validate_config(config_values)
        except (FileNotFoundError, ValueError) as e:
            print(f"ERROR: Config file error: {e}")
            return 1

    try:
        config = build_analysis_config(args, config_values, getattr(args, "cli_args", None))
    except (TypeError, ValueError) as e:
        print(f"ERROR: Invalid configuration: {e}")
        return 1

    start_time = datetime.now()
    print(f"\n{'='*70}")
    print("  Batch Effect Estimator Comparison (SVA / PCA / RUVr / RUVg)")
    print(f"{'='*70}")
    print(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Output: {config.output_dir}\n")

    configure_style("paper")

    try:
        results = run_analysis(config)
    except DownloadError as e:
        print(f"ERROR: Download failed: {e}")
        return 1
    except FileNotFoundError as e:
        print(f"ERROR: File not found: {e}")
        return 1
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    _print_summary(results)

    duration = (datetime.now() - start_time).total_seconds()
    print(f"\nComplete! Duration: {duration:.1f}s")
    print(f"Results: {config.output_dir}")
    return 0
