# -*- coding: utf-8 -*-
"""
Outcome Contrast Analysis Module

This module computes estimated marginal means (EMMs) and contrasts between
factor levels from a fitted model:

1. Each non-reference level vs the reference level (trt_vs_ctrl)
2. All pairwise level differences (pairwise)

optionally within every level of one or more `by` factors. Every difference is
later level minus earlier level in the factor's level order (treatment minus
control, timepoint minus baseline). Confidence intervals and p-values use the
model's mixed-model df; no multiplicity adjustment is applied here.
"""

from dataclasses import dataclass
from itertools import combinations, product
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
import patsy
from scipy import stats

from . import config
from .errors import ContrastError
from .lme_analyzer import FittedModel

logger = logging.getLogger(__name__)

# Shared sign convention for every contrast produced by this package
DIRECTION = 'later_minus_earlier'

RESULT_COLUMNS = [
    'outcome', 'analysis', 'moderator', 'stratum', 'comparison',
    'estimate', 'standard_error', 'lower_ci', 'upper_ci', 't_value',
    'p_value', 'df', 'status', 'reason'
]


@dataclass(frozen=True)
class ContrastSpec:
    """
    Which comparisons to extract from a model.

    Attributes:
        factor: Factor whose levels are compared
        by: Factors within whose levels the comparison is repeated
        method: 'trt_vs_ctrl' or 'pairwise'
        reference: Control level for trt_vs_ctrl (default: first level)
        levels: Levels to compare (default: all fitted levels)
    """

    factor: str
    by: Tuple[str, ...] = ()
    method: str = 'trt_vs_ctrl'
    reference: Optional[str] = None
    levels: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if self.method not in ('trt_vs_ctrl', 'pairwise'):
            raise ValueError(f"Unknown contrast method: {self.method}")


def reference_grid(model: FittedModel) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    All combinations of the model's factor levels and their design rows.

    Numeric covariates are held at their sample mean and contrast-coded
    covariates at 0 (equal weight on both levels).

    Returns:
        Tuple of (grid, design) with one row per factor-level combination
    """
    factors = list(model.spec.factors)
    levels = [model.factor_levels(f) for f in factors]
    grid = pd.DataFrame(list(product(*levels)), columns=factors)
    for factor, lvls in zip(factors, levels):
        grid[factor] = pd.Categorical(grid[factor], categories=lvls)
    for covariate in model.spec.numeric:
        grid[covariate] = float(model.data[covariate].mean())
    for covariate in model.spec.contrast_coded:
        grid[covariate] = 0.0

    (design,) = patsy.build_design_matrices([model.design_info], grid, return_type='dataframe')
    return grid, design[list(model.fe_params.index)]


def _check_level(model: FittedModel, factor: str, level: Any):
    if factor not in model.spec.factors:
        raise ContrastError(f"{model.label}: '{factor}' is not a factor of the model")
    if level not in model.factor_levels(factor):
        raise ContrastError(
            f"{model.label}: level '{level}' of '{factor}' not in fitted levels "
            f"{model.factor_levels(factor)}"
        )


def emm_vector(
    model: FittedModel,
    grid: pd.DataFrame,
    design: pd.DataFrame,
    factor: str,
    level: Any,
    at: Optional[Dict[str, Any]] = None
) -> np.ndarray:
    """Linear combination of fixed effects giving the EMM of `level` (at `at`)."""
    _check_level(model, factor, level)
    mask = grid[factor] == level
    for by_factor, by_level in (at or {}).items():
        _check_level(model, by_factor, by_level)
        mask &= grid[by_factor] == by_level
    return design.loc[mask.values].mean(axis=0).values


def _inference(model: FittedModel, L: np.ndarray) -> Dict[str, float]:
    beta = model.fe_params.values
    V = model.cov_fe.values

    estimate = float(L @ beta)
    se = float(np.sqrt(max(L @ V @ L, 0.0)))
    df = float(model.contrast_df(L))

    with np.errstate(divide='ignore', invalid='ignore'):
        t_value = estimate / se if se > 0 else np.nan
    p_value = float(2 * stats.t.sf(abs(t_value), df)) if np.isfinite(t_value) else np.nan
    t_crit = stats.t.ppf(1 - (1 - config.CI_LEVEL) / 2, df)

    return {
        'estimate': estimate,
        'standard_error': se,
        'lower_ci': estimate - t_crit * se,
        'upper_ci': estimate + t_crit * se,
        't_value': t_value,
        'p_value': p_value,
        'df': df,
    }


def _by_combinations(model: FittedModel, by: Sequence[str]) -> List[Dict[str, Any]]:
    if not by:
        return [{}]
    for factor in by:
        if factor not in model.spec.factors:
            raise ContrastError(f"{model.label}: by-factor '{factor}' is not a factor of the model")
    levels = [model.factor_levels(f) for f in by]
    return [dict(zip(by, combo)) for combo in product(*levels)]


def _stratum(prefix: Optional[str], at: Dict[str, Any]) -> str:
    parts = [prefix] if prefix else []
    parts += [f"{factor}={level}" for factor, level in at.items()]
    return ', '.join(parts)


def marginal_means(model: FittedModel, factor: str, by: Sequence[str] = ()) -> pd.DataFrame:
    """
    Estimated marginal means of `factor` (within each level of `by`).

    Returns:
        pd.DataFrame: by columns, level, estimate, standard_error, lower_ci,
            upper_ci, t_value, p_value, df
    """
    grid, design = reference_grid(model)
    rows = []
    for at in _by_combinations(model, by):
        for level in model.factor_levels(factor):
            L = emm_vector(model, grid, design, factor, level, at)
            rows.append({**at, factor: level, **_inference(model, L)})
    return pd.DataFrame(rows)


def _pairs(model: FittedModel, spec: ContrastSpec) -> List[Tuple[Any, Any]]:
    """(earlier, later) level pairs in fitted level order."""
    fitted = model.factor_levels(spec.factor) if spec.factor in model.spec.factors else []
    requested = list(spec.levels) if spec.levels is not None else fitted

    if spec.method == 'pairwise':
        ordered = [lvl for lvl in fitted if lvl in requested]
        ordered += [lvl for lvl in requested if lvl not in fitted]
        return list(combinations(ordered, 2))

    reference = spec.reference if spec.reference is not None else (requested[0] if requested else None)
    return [(reference, lvl) for lvl in requested if lvl != reference]


def contrast(
    model: FittedModel,
    factor: str,
    earlier: Any,
    later: Any,
    at: Optional[Dict[str, Any]] = None
) -> Dict[str, float]:
    """
    EMM(later) - EMM(earlier) with SE, CI, t, p and df.

    Raises:
        ContrastError: If either level (or an `at` level) is not fitted
    """
    grid, design = reference_grid(model)
    L = (
        emm_vector(model, grid, design, factor, later, at)
        - emm_vector(model, grid, design, factor, earlier, at)
    )
    return _inference(model, L)


def extract_contrasts(
    model: FittedModel,
    spec: ContrastSpec,
    outcome: str,
    analysis: str,
    stratum: Optional[str] = None,
    moderator: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    All comparisons requested by `spec`, one result row each.

    A comparison that cannot be formed (level not fitted) becomes an
    'omitted' row with the reason; the other comparisons are unaffected.

    Returns:
        List of result rows with keys RESULT_COLUMNS
    """
    rows = []
    try:
        if spec.factor not in model.spec.factors:
            raise ContrastError(f"{model.label}: '{spec.factor}' is not a factor of the model")
        by_combos = _by_combinations(model, spec.by)
    except ContrastError as e:
        logger.warning(f"  {e}")
        return [omitted_row(outcome, analysis, stratum, f"{spec.factor} contrasts", str(e), moderator)]

    grid, design = reference_grid(model)

    for at in by_combos:
        for earlier, later in _pairs(model, spec):
            comparison = f"{later} - {earlier}"
            row_stratum = _stratum(stratum, at)
            try:
                L = (
                    emm_vector(model, grid, design, spec.factor, later, at)
                    - emm_vector(model, grid, design, spec.factor, earlier, at)
                )
            except ContrastError as e:
                logger.warning(f"  {e}")
                rows.append(omitted_row(outcome, analysis, row_stratum, comparison, str(e), moderator))
                continue

            rows.append({
                'outcome': outcome,
                'analysis': analysis,
                'moderator': moderator,
                'stratum': row_stratum,
                'comparison': comparison,
                **_inference(model, L),
                'status': 'computed',
                'reason': None,
            })

    return rows


def omitted_row(
    outcome: str,
    analysis: str,
    stratum: Optional[str],
    comparison: str,
    reason: str,
    moderator: Optional[str] = None
) -> Dict[str, Any]:
    """Placeholder row for a comparison that could not be computed."""
    return {
        'outcome': outcome,
        'analysis': analysis,
        'moderator': moderator,
        'stratum': stratum or '',
        'comparison': comparison,
        'estimate': np.nan,
        'standard_error': np.nan,
        'lower_ci': np.nan,
        'upper_ci': np.nan,
        't_value': np.nan,
        'p_value': np.nan,
        'df': np.nan,
        'status': 'omitted',
        'reason': reason,
    }
