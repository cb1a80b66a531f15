# -*- coding: utf-8 -*-
"""
Descriptive statistics of the harmonized panel: mean, SD, SEM and n of every
outcome by timepoint and arm.
"""

import logging

import numpy as np
import pandas as pd

from . import config

logger = logging.getLogger(__name__)

TIMEPOINT = config.TIMEPOINT_COLUMN
ARM = config.ARM_COLUMN
OUTCOME = config.OUTCOME_COLUMN
VALUE = config.VALUE_COLUMN


def describe_panel(panel: pd.DataFrame) -> pd.DataFrame:
    """
    Group-level summaries of the observed values.

    Timepoint and arm keep their declared order. Cells with no observed
    value are left out.

    Returns:
        pd.DataFrame: outcome, timepoint, arm, n, mean, sd, sem
    """
    observed = panel[panel[VALUE].notna()]
    outcome_order = list(dict.fromkeys(panel[OUTCOME]))

    stats = (
        observed.groupby([OUTCOME, TIMEPOINT, ARM], observed=True, sort=False)[VALUE]
        .agg(n='count', mean='mean', sd='std')
        .reset_index()
    )
    stats['sem'] = stats['sd'] / np.sqrt(stats['n'])

    stats[OUTCOME] = pd.Categorical(stats[OUTCOME], categories=outcome_order)
    stats = stats.sort_values([OUTCOME, TIMEPOINT, ARM]).reset_index(drop=True)
    stats[OUTCOME] = stats[OUTCOME].astype(str)

    logger.info(f"Computed descriptives for {len(stats)} outcome x timepoint x arm cells")
    return stats[[OUTCOME, TIMEPOINT, ARM, 'n', 'mean', 'sd', 'sem']]
