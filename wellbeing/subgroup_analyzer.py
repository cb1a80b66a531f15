# -*- coding: utf-8 -*-
"""
Subgroup Moderation Analysis Module

For every (outcome, moderator) pair this module collapses the baseline-adjusted
outcome to one value per participant and study phase, fits

    value ~ arm * moderator [* phase] + baseline_centered [+ (1|participant)]

and extracts the arm contrast (intervention minus control) at each moderator
level. Moderators are analyzed one at a time, each with its own model.

Scientific rationale:
- Averaging within a phase reduces week-to-week noise and gives a single
  intervention-phase and follow-up estimate per participant
- All outcomes use the same included timepoints, so subgroup estimates are
  comparable across outcomes
- A participant random intercept is only fitted when more than one phase is
  analyzed; with one row per participant the model is fitted by OLS
"""

from typing import Any, Dict, List, Sequence
import logging

import pandas as pd

from . import config
from .baseline import baseline_adjust
from .contrast_analyzer import ContrastSpec, extract_contrasts, omitted_row
from .design import PhaseSpec
from .errors import ModelingError
from .lme_analyzer import FormulaSpec, fit_model

logger = logging.getLogger(__name__)

PID = config.PARTICIPANT_COLUMN
TIMEPOINT = config.TIMEPOINT_COLUMN
ARM = config.ARM_COLUMN
VALUE = config.VALUE_COLUMN

ANALYSIS = 'subgroup'


def collapse_phases(
    rows: pd.DataFrame,
    phases: PhaseSpec,
    timepoints: Sequence[str],
    keep: Sequence[str] = ()
) -> pd.DataFrame:
    """
    Mean of the non-missing values of each participant within each phase.

    Only the timepoints declared in `phases` are used, for every outcome
    alike; other timepoints are ignored.

    Args:
        rows: Baseline-adjusted rows of one outcome
        phases: Phase declarations
        timepoints: Canonical timepoint order
        keep: Participant-level columns carried through (arm, moderators,
            baseline_centered)

    Returns:
        pd.DataFrame: participant_id, phase, value, n_timepoints and `keep`
    """
    phase_of = phases.phase_of()
    included = phases.timepoints(timepoints)

    data = rows[rows[TIMEPOINT].astype(object).isin(included) & rows[VALUE].notna()].copy()
    data['phase'] = pd.Categorical(
        data[TIMEPOINT].astype(object).map(phase_of),
        categories=phases.names,
    )

    keep = [c for c in keep if c != PID]
    participant_cols = data.groupby(PID, sort=True)[keep].first() if keep else None

    collapsed = (
        data.groupby([PID, 'phase'], observed=True, sort=True)[VALUE]
        .agg(['mean', 'count'])
        .reset_index()
        .rename(columns={'mean': VALUE, 'count': 'n_timepoints'})
    )
    if participant_cols is not None:
        collapsed = collapsed.merge(participant_cols, left_on=PID, right_index=True, how='left')
        for col in keep:
            if isinstance(rows[col].dtype, pd.CategoricalDtype):
                collapsed[col] = pd.Categorical(
                    collapsed[col].astype(object), categories=rows[col].cat.categories
                )
    return collapsed


def subgroup_formula(moderator: str, n_phases: int) -> FormulaSpec:
    """Model structure for one moderator."""
    factors = (ARM, moderator)
    interactions = ((ARM, moderator),)
    if n_phases > 1:
        factors += ('phase',)
        interactions += ((ARM, 'phase'), (moderator, 'phase'), (ARM, moderator, 'phase'))
    return FormulaSpec(
        factors=factors,
        numeric=('baseline_centered',),
        interactions=interactions,
        random_intercept=n_phases > 1,
    )


def analyze_subgroup(
    panel: pd.DataFrame,
    outcome: str,
    moderator: str,
    phases: PhaseSpec,
    timepoints: Sequence[str] = config.TIMEPOINTS,
    baseline: str = config.BASELINE_TIMEPOINT,
    **fit_kwargs
) -> List[Dict[str, Any]]:
    """
    Arm contrast at each level of `moderator` for one outcome.

    Pure: reads `panel`, returns new rows, keeps no state between calls.

    Returns:
        List of result rows tagged with the moderator name. A model that
        cannot be fitted yields a single 'omitted' row with the reason.
    """
    label = f"{outcome} x {moderator}"
    adjusted = baseline_adjust(panel, outcome, baseline)
    collapsed = collapse_phases(
        adjusted, phases, timepoints, keep=[ARM, moderator, 'baseline_centered']
    )

    n_phases = collapsed['phase'].nunique()
    spec = subgroup_formula(moderator, n_phases)
    by = (moderator, 'phase') if n_phases > 1 else (moderator,)

    try:
        model = fit_model(collapsed, spec, label=label, **fit_kwargs)
    except ModelingError as e:
        logger.warning(f"  ✗ {e}")
        return [omitted_row(outcome, ANALYSIS, None, f"{ARM} by {moderator}", str(e), moderator)]

    rows = extract_contrasts(
        model,
        ContrastSpec(factor=ARM, by=by),
        outcome=outcome,
        analysis=ANALYSIS,
        moderator=moderator,
    )
    if n_phases == 1:
        # Single-phase runs still report which phase the estimate belongs to
        phase = collapsed['phase'].dropna().iloc[0]
        for row in rows:
            row['stratum'] = f"{row['stratum']}, phase={phase}" if row['stratum'] else f"phase={phase}"
    return rows
