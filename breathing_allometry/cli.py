#!/usr/bin/env python3
"""
Command-line runner for the full breathing-rate allometry analysis:
download -> clean -> fit -> diagnose -> test -> plot -> report.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from .config import CORRECTION_METHODS, AnalysisConfig, setup_directories
from .download import fetch_inputs
from .exceptions import AnalysisError
from .scripts import data_preparation, mixed_effects_analysis
from .visualisation import mixed_effects_analysis as static_plots
from .visualisation.interactive_plots import create_interactive_figures
from .visualisation.report import generate_html_report

logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Mixed-effects allometry of mammalian breathing rate vs body mass')
    parser.add_argument('--data-url', help='URL of the breathing-rate CSV')
    parser.add_argument('--supplement-url', help='URL of the supplementary species workbook')
    parser.add_argument('-o', '--output-dir', type=Path, help='Root directory for data, figures and report')
    parser.add_argument('--refresh', action='store_true', help='Re-download inputs even if cached')
    parser.add_argument('--n-simulations', type=positive_int, help='Simulations for scaled residuals')
    parser.add_argument('--seed', type=int, help='Random seed for residual simulation')
    parser.add_argument('--correction', choices=CORRECTION_METHODS,
                        help='Multiple-comparison method for slope contrasts')
    parser.add_argument('--skip-figures', action='store_true', help='Only write data and result tables')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    return parser


def run_pipeline(config: AnalysisConfig, refresh: bool = False, skip_figures: bool = False) -> dict:
    """Run every stage once and return the output locations."""
    setup_directories(config)

    measurements_path, supplement_path = fetch_inputs(config, refresh=refresh)

    print("Preparing data...")
    df = data_preparation.prepare_dataset(measurements_path, supplement_path, config)
    data_preparation.write_cleaned(df, config.cleaned_path)

    fitted, results, tables = mixed_effects_analysis.run_analysis(df, config)
    mixed_effects_analysis.save_results(df, fitted, results, tables, config)
    mixed_effects_analysis.print_summary(results, tables)

    outputs = {'cleaned_data': config.cleaned_path, 'results_dir': config.processed_dir}
    if skip_figures:
        return outputs

    model_df, saved_results, saved_tables = static_plots.load_results(config)
    static_figures = static_plots.create_static_figures(model_df, saved_results, saved_tables, config)
    interactive = create_interactive_figures(model_df, saved_tables, config)

    print("Generating analysis report...")
    report_path = generate_html_report(saved_results, saved_tables, config,
                                       static_figures=static_figures,
                                       interactive_figures=interactive)

    outputs.update({'figures_dir': config.figures_dir, 'report': report_path})
    return outputs


def main(argv=None) -> int:
    """Main execution function."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = AnalysisConfig.from_env(
        data_url=args.data_url,
        supplement_url=args.supplement_url,
        output_root=args.output_dir,
        n_simulations=args.n_simulations,
        seed=args.seed,
        correction_method=args.correction,
    )

    start_time = time.time()
    try:
        outputs = run_pipeline(config, refresh=args.refresh, skip_figures=args.skip_figures)
    except AnalysisError as e:
        logger.error(str(e))
        return 1

    duration = time.time() - start_time
    print(f"\n{'='*50}")
    print("ANALYSIS COMPLETE")
    print(f"{'='*50}")
    print(f"Time taken: {duration:.1f} seconds")
    for name, path in outputs.items():
        print(f"  {name.replace('_', ' ')}: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
