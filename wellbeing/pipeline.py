#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Wellbeing Trial Analysis Pipeline

This script runs the complete outcome analysis:
1. Loads the instrument exports, arm assignment and demographics
2. Harmonizes them into a long-format panel
3. Fits the time-course, arm-difference and subgroup models
4. Optionally applies FDR correction
5. Exports one CSV per analysis plus descriptives and run metadata

Usage:
    wellbeing-analysis --data-dir DIR [options]

Example:
    wellbeing-analysis --design design.yaml --data-dir data/ --output-dir results/ --n-jobs 4 --fdr
"""

from typing import Dict, List, Optional, Sequence, Tuple
import argparse
import logging
import os
import sys

import pandas as pd

from . import config
from .__version__ import get_version_info
from .descriptives import describe_panel
from .design import StudyDesign
from .errors import WellbeingAnalysisError
from .harmonizer import HarmonizedPanel, PanelHarmonizer
from .metadata import RunMetadata
from .reporting import apply_fdr, completeness_summary, export_results, summarize_significant
from .runner import ANALYSES, OutcomeAnalysisRunner

logger = logging.getLogger(__name__)


def load_tables(
    design: StudyDesign,
    data_dir: str
) -> Tuple[Dict[str, pd.DataFrame], pd.DataFrame, Optional[pd.DataFrame]]:
    """
    Read `<instrument>.csv` for every declared instrument, the arm table and
    the optional demographics table.

    Key columns are read as strings so participant IDs keep leading zeros.

    Raises:
        FileNotFoundError: If the arm table or every instrument table is missing
    """
    tables = {}
    for name, instrument in design.instruments.items():
        path = os.path.join(data_dir, f"{name}.csv")
        if not os.path.exists(path):
            logger.warning(f"  No export for instrument '{name}' ({path})")
            continue
        tables[name] = pd.read_csv(
            path, dtype={instrument.participant_column: str, instrument.timepoint_column: str}
        )
        logger.info(f"  Loaded {name}: {len(tables[name])} rows")

    if not tables:
        raise FileNotFoundError(f"No instrument exports found in {data_dir}")

    arm_path = os.path.join(data_dir, config.ARM_FILE)
    if not os.path.exists(arm_path):
        raise FileNotFoundError(f"Arm assignment table not found: {arm_path}")
    arm_table = pd.read_csv(arm_path, dtype=str)

    covariate_path = os.path.join(data_dir, config.COVARIATE_FILE)
    covariate_table = pd.read_csv(covariate_path, dtype=str) if os.path.exists(covariate_path) else None
    if covariate_table is None and design.covariates:
        logger.warning(f"  No demographics table ({covariate_path}); covariates will be missing")

    return tables, arm_table, covariate_table


def run_pipeline(
    design: StudyDesign,
    data_dir: str,
    output_dir: str,
    analyses: Sequence[str] = ANALYSES,
    n_jobs: int = config.N_JOBS,
    fdr: bool = False,
    adjust_for: Sequence[str] = (),
    moderators: Optional[List[str]] = None
) -> Tuple[HarmonizedPanel, Dict[str, pd.DataFrame]]:
    """
    Load, harmonize, model and export.

    Returns:
        Tuple of (panel, results) where results maps analysis -> table
    """
    print("=" * 80)
    print(get_version_info())
    print("=" * 80)

    print("\n[1/5] Loading data...")
    tables, arm_table, covariate_table = load_tables(design, data_dir)
    print(f"      ✓ {len(tables)} instrument tables")

    print("\n[2/5] Harmonizing panel...")
    panel = PanelHarmonizer(design).harmonize(tables, arm_table, covariate_table)
    print(f"      ✓ {panel.data[config.PARTICIPANT_COLUMN].nunique()} participants, {len(panel.data):,} rows")
    if len(panel.exclusions) > 0:
        print(f"      ⚠ {len(panel.exclusions)} participants excluded (no arm assignment)")

    print("\n[3/5] Fitting models...")
    runner = OutcomeAnalysisRunner(design, n_jobs=n_jobs)
    results = runner.run(panel.data, analyses, adjust_for=adjust_for, moderators=moderators)
    for name, table in results.items():
        n_computed = int((table['status'] == 'computed').sum())
        print(f"      ✓ {name}: {n_computed}/{len(table)} comparisons computed")

    if fdr:
        print("\n[4/5] Applying FDR correction...")
        results = {name: apply_fdr(table) for name, table in results.items()}
    else:
        print("\n[4/5] FDR correction skipped (unadjusted p-values)")

    print("\n[5/5] Exporting results...")
    os.makedirs(output_dir, exist_ok=True)
    paths = export_results(results, output_dir)

    describe_panel(panel.data).to_csv(os.path.join(output_dir, 'descriptives.csv'), index=False)
    panel.exclusions.to_csv(os.path.join(output_dir, 'exclusions.csv'), index=False)
    panel.adjustments.to_csv(os.path.join(output_dir, 'adjustments.csv'), index=False)
    if results:
        combined = pd.concat(list(results.values()), ignore_index=True)
        completeness_summary(combined).to_csv(os.path.join(output_dir, 'completeness.csv'), index=False)
        summary = summarize_significant(combined)
        print("\nSignificant comparisons:")
        print(summary.to_string(index=False))

    metadata = RunMetadata(design, fit_settings=runner.fit_kwargs).generate_metadata(panel, results, n_jobs)
    RunMetadata.save(metadata, os.path.join(output_dir, 'run_metadata.json'))

    for path in paths.values():
        print(f"      ✓ Saved: {os.path.basename(path)}")

    return panel, results


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main workflow for the command-line interface.
    """
    parser = argparse.ArgumentParser(
        description='Fit longitudinal outcome models for the wellbeing intervention trial',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wellbeing-analysis --data-dir data/
  wellbeing-analysis --design design.yaml --data-dir data/ --output-dir results/ --fdr
  wellbeing-analysis --data-dir data/ --analyses arm_difference --n-jobs 4 --verbose
        """
    )

    parser.add_argument(
        '--design',
        type=str,
        default=None,
        help='Study design declaration (.yaml or .json). Default: built-in trial design'
    )
    parser.add_argument(
        '--data-dir',
        type=str,
        default=config.DATA_ROOT,
        help=f'Directory with <instrument>.csv, {config.ARM_FILE} and {config.COVARIATE_FILE}'
    )
    parser.add_argument(
        '--output-dir',
        type=str,
        default=config.RESULTS_DIR,
        help=f'Output directory for results (default: {config.RESULTS_DIR})'
    )
    parser.add_argument(
        '--analyses',
        nargs='+',
        choices=list(ANALYSES),
        default=list(ANALYSES),
        help='Analyses to run (default: all)'
    )
    parser.add_argument(
        '--adjust-for',
        nargs='*',
        default=[],
        help='Contrast-coded covariates added to the arm-difference models'
    )
    parser.add_argument(
        '--moderators',
        nargs='*',
        default=None,
        help='Covariates tested in the subgroup analysis (default: all declared)'
    )
    parser.add_argument(
        '--n-jobs',
        type=int,
        default=config.N_JOBS,
        help='Number of parallel model fits (default: 1)'
    )
    parser.add_argument(
        '--fdr',
        action='store_true',
        help='Add Benjamini-Hochberg adjusted p-values'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        design = StudyDesign.from_file(args.design) if args.design else StudyDesign.default()
        run_pipeline(
            design,
            data_dir=args.data_dir,
            output_dir=args.output_dir,
            analyses=args.analyses,
            n_jobs=args.n_jobs,
            fdr=args.fdr,
            adjust_for=args.adjust_for,
            moderators=args.moderators,
        )
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        print(f"\n❌ ERROR: File not found - {e}")
        return 1
    except (WellbeingAnalysisError, ValueError) as e:
        logger.error(f"Analysis failed: {e}", exc_info=args.verbose)
        print(f"\n❌ ERROR: Analysis failed - {e}")
        return 1

    print("\n" + "=" * 80)
    print("✓ Analysis complete!")
    print("=" * 80)
    return 0


if __name__ == '__main__':
    sys.exit(main())
