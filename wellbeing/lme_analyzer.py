# -*- coding: utf-8 -*-
"""
Outcome Linear Mixed Effects (LME) Module

This module assembles the design for one (outcome, stratum) model and fits it
with statsmodels: a random intercept per participant plus categorical and
numeric fixed effects, e.g.

    value ~ timepoint + arm + timepoint:arm + baseline_centered + gender + (1|participant)

Binary covariates declared as contrast-coded enter as -0.5/+0.5 so their main
effect is half the group difference and interacting terms keep their
reference-level meaning.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import time
import warnings

import numpy as np
import pandas as pd
import patsy

# Statistical packages
try:
    import statsmodels.api as sm
except ImportError:
    raise ImportError("statsmodels is required. Install with: pip install statsmodels")

from . import config
from .errors import ModelingError
from .satterthwaite import GroupedDesign, between_within_df, satterthwaite_df

# Configure logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormulaSpec:
    """
    Fixed- and random-effect structure of one model.

    Attributes:
        response: Response column
        factors: Categorical fixed effects. The first level is the reference.
        numeric: Numeric covariates entered as-is (e.g. baseline_centered)
        contrast_coded: Binary categorical covariates coded -0.5/+0.5
        interactions: Interaction terms, each a tuple of factor names
        levels: Optional explicit level order per factor
        random_intercept: Fit a participant random intercept. When False the
            model is fitted by OLS (one row per participant).
        group: Grouping column of the random intercept
    """

    response: str = config.VALUE_COLUMN
    factors: Tuple[str, ...] = ()
    numeric: Tuple[str, ...] = ()
    contrast_coded: Tuple[str, ...] = ()
    interactions: Tuple[Tuple[str, ...], ...] = ()
    levels: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    random_intercept: bool = True
    group: str = config.PARTICIPANT_COLUMN

    @property
    def columns(self) -> List[str]:
        cols = [self.response, *self.factors, *self.numeric, *self.contrast_coded, self.group]
        return list(dict.fromkeys(cols))

    def formula(self) -> str:
        terms = list(self.factors) + list(self.numeric) + list(self.contrast_coded)
        terms += [':'.join(term) for term in self.interactions]
        return f"{self.response} ~ " + (' + '.join(terms) if terms else '1')


@dataclass
class FittedModel:
    """
    A fitted model for one (outcome, stratum), consumed by the contrast extractor.

    Attributes:
        label: Human-readable identifier used in log messages
        spec: FormulaSpec the model was built from
        data: Data the model was fitted on (factors as pandas Categorical)
        result: statsmodels results object
        fe_params: Fixed-effect estimates
        cov_fe: Covariance of the fixed-effect estimates
        re_variance: Random-intercept variance (0 for OLS)
        residual_variance: Residual variance
        df_method: 'satterthwaite', 'between_within' or 'residual'
        design_info: patsy DesignInfo of the fixed-effect design, used to
            build design rows for new data (reference grids)
    """

    label: str
    spec: FormulaSpec
    data: pd.DataFrame
    result: Any
    fe_params: pd.Series
    cov_fe: pd.DataFrame
    re_variance: float
    residual_variance: float
    df_method: str
    design_info: patsy.DesignInfo = field(repr=False)
    _grouped: Optional[GroupedDesign] = field(default=None, repr=False)

    @property
    def exog(self) -> np.ndarray:
        return np.asarray(self.result.model.exog)

    @property
    def n_obs(self) -> int:
        return len(self.data)

    @property
    def n_groups(self) -> int:
        return self.data[self.spec.group].nunique()

    def factor_levels(self, factor: str) -> List[str]:
        return list(self.data[factor].cat.categories)

    def _grouped_design(self) -> GroupedDesign:
        if self._grouped is None:
            self._grouped = GroupedDesign.from_arrays(
                self.exog,
                np.asarray(self.result.model.endog),
                self.data[self.spec.group].values,
            )
        return self._grouped

    def contrast_df(self, L: np.ndarray) -> float:
        """Degrees of freedom for the contrast L' b."""
        if self.df_method == 'residual':
            return float(self.result.df_resid)

        design = self._grouped_design()
        if self.df_method == 'satterthwaite':
            df = satterthwaite_df(L, (self.re_variance, self.residual_variance), design)
            if df is not None:
                return df
            logger.debug(f"  {self.label}: falling back to between-within df")
        return between_within_df(L, design, self.exog)


class _FitDeadline(Exception):
    """Raised from the likelihood when the fit runs out of time."""


class _DeadlineMixedLM(sm.MixedLM):
    """MixedLM whose likelihood evaluations stop once `deadline` has passed."""

    deadline: Optional[float] = None

    def loglike(self, *args, **kwargs):
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise _FitDeadline()
        return super().loglike(*args, **kwargs)


def _order_levels(values: pd.Series, explicit: Optional[Sequence[str]]) -> List:
    observed = set(values.dropna().unique())
    if explicit is not None:
        return [lvl for lvl in explicit if lvl in observed]
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [lvl for lvl in values.cat.categories if lvl in observed]
    return list(pd.unique(values.dropna()))


def prepare_data(rows: pd.DataFrame, spec: FormulaSpec, label: str = '') -> pd.DataFrame:
    """
    Select model columns, drop incomplete rows and fix factor level order.

    Factors become pandas Categoricals with unused levels removed, so the
    first observed level in declared or canonical order is the reference.
    Contrast-coded covariates become -0.5/+0.5 floats.

    Raises:
        ModelingError: On missing columns, fewer than 2 participants or a
            factor with fewer than 2 observed levels
    """
    missing = [c for c in spec.columns if c not in rows.columns]
    if missing:
        raise ModelingError(f"{label}: columns not in data: {missing}")

    data = rows[spec.columns].copy()
    n_before = len(data)
    data = data.dropna(subset=spec.columns)
    if len(data) < n_before:
        logger.debug(f"  {label}: dropped {n_before - len(data)} incomplete rows")

    n_groups = data[spec.group].nunique()
    if n_groups < 2:
        raise ModelingError(f"{label}: {n_groups} participant(s) with complete data, need at least 2")

    for factor in spec.factors:
        levels = _order_levels(data[factor], spec.levels.get(factor))
        if len(levels) < 2:
            raise ModelingError(f"{label}: factor '{factor}' has {len(levels)} observed level(s)")
        data[factor] = pd.Categorical(data[factor].astype(object), categories=levels)

    for covariate in spec.contrast_coded:
        explicit = spec.levels.get(covariate)
        if explicit is None and isinstance(data[covariate].dtype, pd.CategoricalDtype):
            explicit = list(data[covariate].cat.categories)
        levels = _order_levels(data[covariate], explicit)
        if len(levels) != 2:
            raise ModelingError(
                f"{label}: contrast-coded covariate '{covariate}' needs 2 observed levels, "
                f"found {len(levels)}"
            )
        data[covariate] = data[covariate].astype(object).map({levels[0]: -0.5, levels[1]: 0.5}).astype(float)

    for covariate in spec.numeric:
        data[covariate] = data[covariate].astype(float)
    data[spec.response] = data[spec.response].astype(float)

    return data.reset_index(drop=True)


def fit_model(
    rows: pd.DataFrame,
    spec: FormulaSpec,
    label: str = 'model',
    reml: bool = config.LME_REML,
    maxiter: int = config.LME_MAXITER,
    timeout: Optional[float] = config.FIT_TIMEOUT_SEC,
    df_method: str = config.DF_METHOD
) -> FittedModel:
    """
    Fit one model and return it ready for contrast extraction.

    Args:
        rows: Outcome rows (e.g. from baseline_adjust)
        spec: Model structure
        label: Identifier for log and error messages
        reml: Fit by REML (True) or ML
        maxiter: Maximum optimizer iterations per method
        timeout: Wall-clock limit in seconds, None for no limit
        df_method: 'satterthwaite' or 'between_within' for mixed models

    Returns:
        FittedModel

    Raises:
        ModelingError: Insufficient data, rank-deficient design, solver
            failure, non-convergence or timeout
    """
    data = prepare_data(rows, spec, label)
    formula = spec.formula()
    logger.debug(f"  {label}: {formula} on {len(data)} rows")

    # Use patsy to build design matrices with categorical encoding
    try:
        y, X = patsy.dmatrices(formula, data, return_type='dataframe')
    except patsy.PatsyError as e:
        raise ModelingError(f"{label}: could not build design: {e}") from e

    if spec.random_intercept:
        model = _DeadlineMixedLM(endog=y.iloc[:, 0], exog=X, groups=data[spec.group])
    else:
        model = sm.OLS(y.iloc[:, 0], X)

    exog = np.asarray(model.exog)
    rank = np.linalg.matrix_rank(exog)
    if rank < exog.shape[1]:
        raise ModelingError(
            f"{label}: rank-deficient design (rank {rank} < {exog.shape[1]} columns)"
        )
    if exog.shape[0] <= exog.shape[1]:
        raise ModelingError(f"{label}: {exog.shape[0]} rows for {exog.shape[1]} fixed effects")

    try:
        with warnings.catch_warnings():
            warnings.filterwarnings('ignore')
            if spec.random_intercept:
                model.deadline = None if timeout is None else time.monotonic() + timeout
                try:
                    result = model.fit(reml=reml, method=config.LME_METHODS, maxiter=maxiter)
                finally:
                    # Later llf evaluations on the result are not timed
                    model.deadline = None
            else:
                result = model.fit()
    except _FitDeadline:
        raise ModelingError(f"{label}: fit exceeded {timeout:g}s timeout")
    except (np.linalg.LinAlgError, ValueError) as e:
        raise ModelingError(f"{label}: solver failed: {e}") from e

    if spec.random_intercept:
        if not result.converged:
            raise ModelingError(f"{label}: model did not converge")
        fe_params = result.fe_params
        cov_fe = result.cov_params().loc[fe_params.index, fe_params.index]
        re_variance = float(np.asarray(result.cov_re)[0, 0])
        residual_variance = float(result.scale)
        method = df_method
    else:
        fe_params = result.params
        cov_fe = result.cov_params()
        re_variance = 0.0
        residual_variance = float(result.scale)
        method = 'residual'

    if not (np.all(np.isfinite(fe_params)) and np.all(np.isfinite(cov_fe.values))):
        raise ModelingError(f"{label}: non-finite estimates")

    fitted = FittedModel(
        label=label,
        spec=spec,
        data=data,
        result=result,
        fe_params=fe_params,
        cov_fe=cov_fe,
        re_variance=re_variance,
        residual_variance=residual_variance,
        df_method=method,
        design_info=X.design_info,
    )
    logger.debug(f"  {label}: fitted on {fitted.n_obs} rows from {fitted.n_groups} participants")
    return fitted


def extract_fixed_effects(model: FittedModel) -> pd.DataFrame:
    """
    Fixed-effect table of a fitted model.

    Returns:
        pd.DataFrame: effect, beta, se, ci_lower, ci_upper, p_value, aic, bic, llf
    """
    result = model.result
    params = model.fe_params
    conf_int = result.conf_int().loc[params.index]
    pvalues = result.pvalues.loc[params.index]
    bse = result.bse.loc[params.index]

    results = pd.DataFrame({
        'effect': params.index,
        'beta': params.values,
        'se': bse.values,
        'ci_lower': conf_int[0].values,
        'ci_upper': conf_int[1].values,
        'p_value': pvalues.values
    })

    # Model diagnostics (REML fits report no AIC/BIC)
    results['aic'] = result.aic
    results['bic'] = result.bic
    results['llf'] = result.llf

    return results
