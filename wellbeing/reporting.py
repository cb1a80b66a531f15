# -*- coding: utf-8 -*-
"""
Result Reporting Module

Post-processing of the contrast tables produced by the runner:

- Benjamini-Hochberg FDR adjustment within families of comparisons
- CSV export, one file per analysis
- Counts of significant and omitted comparisons

None of these change the estimates; FDR adds `p_fdr` and `significant`
columns to a copy of the table.
"""

from typing import Dict, Sequence
import logging
import os

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from . import config

logger = logging.getLogger(__name__)

DEFAULT_FAMILY = ('analysis', 'comparison')


def apply_fdr(
    results: pd.DataFrame,
    family: Sequence[str] = DEFAULT_FAMILY,
    alpha: float = config.ALPHA
) -> pd.DataFrame:
    """
    Apply Benjamini-Hochberg FDR correction.

    Correction is applied separately within each family (by default every
    analysis x comparison label). Omitted rows have no p-value and are
    left out of the correction.

    Args:
        results: Result table with a p_value column
        family: Columns defining a family of tests
        alpha: Significance threshold on the adjusted p-values

    Returns:
        pd.DataFrame: Copy of `results` with p_fdr and significant columns
    """
    logger.info("Applying FDR correction...")
    adjusted = results.copy()
    adjusted['p_fdr'] = np.nan
    adjusted['significant'] = False

    testable = adjusted['p_value'].notna()
    if not testable.any():
        return adjusted

    for key, group in adjusted[testable].groupby(list(family), sort=False, dropna=False):
        _, p_fdr, _, _ = multipletests(group['p_value'].values, alpha=alpha, method='fdr_bh')

        adjusted.loc[group.index, 'p_fdr'] = p_fdr
        adjusted.loc[group.index, 'significant'] = p_fdr < alpha

        n_sig = int((p_fdr < alpha).sum())
        label = ' / '.join(str(k) for k in (key if isinstance(key, tuple) else (key,)))
        logger.info(f"  {label}: {n_sig}/{len(p_fdr)} significant after FDR correction")

    return adjusted


def export_results(
    results: Dict[str, pd.DataFrame],
    output_dir: str,
    prefix: str = ''
) -> Dict[str, str]:
    """
    Export each analysis table to `<output_dir>/<prefix><analysis>.csv`.

    Returns:
        Dict mapping analysis name -> written path
    """
    os.makedirs(output_dir, exist_ok=True)

    paths = {}
    for name, table in results.items():
        path = os.path.join(output_dir, f"{prefix}{name}.csv")
        table.to_csv(path, index=False)
        logger.info(f"Exported {name} results to: {path}")
        paths[name] = path
    return paths


def summarize_significant(results: pd.DataFrame, by: Sequence[str] = ('analysis', 'outcome')) -> pd.DataFrame:
    """
    Count significant comparisons.

    Uses the FDR `significant` flag when present, otherwise raw p < ALPHA.

    Returns:
        pd.DataFrame: `by` columns, n_tested, n_significant
    """
    by = list(by)
    computed = results[results['status'] == 'computed']
    if 'significant' in computed.columns:
        flag = computed['significant'].astype(bool)
    else:
        flag = computed['p_value'] < config.ALPHA

    summary = (
        computed.assign(_sig=flag.values)
        .groupby(by, sort=False)['_sig']
        .agg(n_tested='size', n_significant='sum')
        .reset_index()
    )
    summary['n_significant'] = summary['n_significant'].astype(int)
    return summary


def completeness_summary(results: pd.DataFrame) -> pd.DataFrame:
    """
    Computed vs omitted comparisons per analysis and outcome, with the
    distinct omission reasons.
    """
    rows = []
    for (analysis, outcome), group in results.groupby(['analysis', 'outcome'], sort=False):
        omitted = group[group['status'] == 'omitted']
        rows.append({
            'analysis': analysis,
            'outcome': outcome,
            'n_computed': int((group['status'] == 'computed').sum()),
            'n_omitted': len(omitted),
            'reasons': '; '.join(sorted(set(omitted['reason'].dropna()))),
        })
    return pd.DataFrame(rows, columns=['analysis', 'outcome', 'n_computed', 'n_omitted', 'reasons'])
