# -*- coding: utf-8 -*-
"""
Baseline Normalization Module

Attaches each participant's centered baseline value to their post-baseline
rows of one outcome. Pure function: the input panel is never modified.
"""

import logging

import pandas as pd

from . import config

logger = logging.getLogger(__name__)

PID = config.PARTICIPANT_COLUMN
TIMEPOINT = config.TIMEPOINT_COLUMN
OUTCOME = config.OUTCOME_COLUMN
VALUE = config.VALUE_COLUMN


def baseline_adjust(
    panel: pd.DataFrame,
    outcome: str,
    baseline: str = config.BASELINE_TIMEPOINT
) -> pd.DataFrame:
    """
    Post-baseline rows of `outcome` with a centered baseline covariate.

    Participants without an observed baseline contribute no rows. The
    centering mean is taken over participants with an observed baseline for
    this outcome only. Rows with a missing post-baseline value are dropped.

    Args:
        panel (pd.DataFrame): Long panel from PanelHarmonizer
        outcome (str): Outcome name
        baseline (str): Canonical baseline timepoint label

    Returns:
        pd.DataFrame: Panel columns plus `baseline` and `baseline_centered`,
            with the unused baseline category removed from `timepoint`
    """
    rows = panel[panel[OUTCOME] == outcome]

    is_baseline = rows[TIMEPOINT] == baseline
    baseline_values = (
        rows.loc[is_baseline & rows[VALUE].notna()]
        .set_index(PID)[VALUE]
    )
    baseline_mean = baseline_values.mean()

    adjusted = rows.loc[~is_baseline & rows[VALUE].notna()].copy()
    adjusted['baseline'] = adjusted[PID].map(baseline_values)

    n_without = adjusted.loc[adjusted['baseline'].isna(), PID].nunique()
    if n_without:
        logger.debug(f"  {outcome}: {n_without} participants without baseline excluded")
    adjusted = adjusted[adjusted['baseline'].notna()]

    adjusted['baseline_centered'] = adjusted['baseline'] - baseline_mean

    if isinstance(adjusted[TIMEPOINT].dtype, pd.CategoricalDtype) and \
            baseline in adjusted[TIMEPOINT].cat.categories:
        adjusted[TIMEPOINT] = adjusted[TIMEPOINT].cat.remove_categories([baseline])

    return adjusted.reset_index(drop=True)


def baseline_table(
    panel: pd.DataFrame,
    outcome: str,
    baseline: str = config.BASELINE_TIMEPOINT
) -> pd.DataFrame:
    """
    One row per participant with an observed baseline for `outcome`.

    Returns:
        pd.DataFrame: participant_id, baseline, baseline_centered
    """
    rows = panel[(panel[OUTCOME] == outcome) & (panel[TIMEPOINT] == baseline) & panel[VALUE].notna()]
    table = rows[[PID, VALUE]].rename(columns={VALUE: 'baseline'}).reset_index(drop=True)
    table['baseline_centered'] = table['baseline'] - table['baseline'].mean()
    return table
