# -*- coding: utf-8 -*-
"""
Outcome Analysis Runner

Enumerates the (outcome, stratum) model fits of each analysis and runs them as
independent tasks on a joblib worker pool:

- time_course: per (outcome, arm), each post-baseline timepoint vs baseline
- arm_difference: per outcome, baseline-adjusted arm contrast at every
  post-baseline timepoint and averaged over timepoints
- subgroup: per (outcome, moderator), arm contrast within moderator levels

Each task reads an immutable slice of the panel and returns its own rows, so
results do not depend on the pool size or on task order.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time

import pandas as pd
from joblib import Parallel, delayed

from . import config
from .baseline import baseline_adjust
from .contrast_analyzer import RESULT_COLUMNS, ContrastSpec, extract_contrasts, omitted_row
from .design import StudyDesign
from .errors import ModelingError
from .lme_analyzer import FormulaSpec, fit_model
from .subgroup_analyzer import analyze_subgroup

logger = logging.getLogger(__name__)

PID = config.PARTICIPANT_COLUMN
TIMEPOINT = config.TIMEPOINT_COLUMN
ARM = config.ARM_COLUMN
OUTCOME = config.OUTCOME_COLUMN
VALUE = config.VALUE_COLUMN

ANALYSES = ('time_course', 'arm_difference', 'subgroup')


@dataclass(frozen=True)
class AnalysisTask:
    """One independent model fit."""

    analysis: str
    outcome: str
    comparison: str
    stratum: Optional[str] = None
    moderator: Optional[str] = None

    @property
    def label(self) -> str:
        detail = self.stratum or self.moderator
        return f"{self.analysis}:{self.outcome}" + (f":{detail}" if detail else '')

    def omitted(self, reason: str) -> Dict[str, Any]:
        return omitted_row(self.outcome, self.analysis, self.stratum, self.comparison, reason, self.moderator)


def time_course_task(
    rows: pd.DataFrame,
    outcome: str,
    arm: str,
    baseline: str,
    fit_kwargs: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """Each timepoint minus baseline within one arm."""
    label = f"{outcome} [{arm}]"
    arm_rows = rows[(rows[ARM] == arm) & rows[VALUE].notna()]
    spec = FormulaSpec(factors=(TIMEPOINT,))

    try:
        model = fit_model(arm_rows, spec, label=label, **fit_kwargs)
    except ModelingError as e:
        logger.warning(f"  ✗ {e}")
        return [omitted_row(outcome, 'time_course', f"{ARM}={arm}", f"{TIMEPOINT} vs {baseline}", str(e))]

    return extract_contrasts(
        model,
        ContrastSpec(factor=TIMEPOINT, reference=baseline),
        outcome=outcome,
        analysis='time_course',
        stratum=f"{ARM}={arm}",
    )


def arm_difference_task(
    rows: pd.DataFrame,
    outcome: str,
    baseline: str,
    arms: Sequence[str],
    adjust_for: Sequence[str],
    fit_kwargs: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """Baseline-adjusted arm contrast per timepoint and averaged over timepoints."""
    adjusted = baseline_adjust(rows, outcome, baseline)
    spec = FormulaSpec(
        factors=(TIMEPOINT, ARM),
        numeric=('baseline_centered',),
        contrast_coded=tuple(adjust_for),
        interactions=((TIMEPOINT, ARM),),
        levels={ARM: tuple(arms)},
    )

    try:
        model = fit_model(adjusted, spec, label=outcome, **fit_kwargs)
    except ModelingError as e:
        logger.warning(f"  ✗ {e}")
        return [omitted_row(outcome, 'arm_difference', None, f"{arms[1]} - {arms[0]}", str(e))]

    rows_out = extract_contrasts(
        model, ContrastSpec(factor=ARM, by=(TIMEPOINT,)), outcome=outcome, analysis='arm_difference'
    )
    rows_out += extract_contrasts(
        model, ContrastSpec(factor=ARM), outcome=outcome, analysis='arm_difference',
        stratum=f"{TIMEPOINT}=all post-baseline"
    )
    return rows_out


def _run(task: AnalysisTask, func, *args) -> Tuple[AnalysisTask, List[Dict[str, Any]], float]:
    start = time.perf_counter()
    try:
        rows = func(*args)
    except Exception as e:
        # A failing task is reported as omitted, the batch continues
        logger.error(f"  Error in {task.label}: {type(e).__name__}: {e}", exc_info=True)
        rows = [task.omitted(f"unexpected error: {type(e).__name__}: {e}")]
    return task, rows, time.perf_counter() - start


class OutcomeAnalysisRunner:
    """
    Runs the analysis battery over a harmonized panel.

    Attributes:
        design (StudyDesign): Study declarations
        n_jobs (int): joblib worker count (1 runs inline)
        fit_kwargs (Dict): Passed to fit_model (reml, maxiter, timeout, df_method)

    Example:
        >>> runner = OutcomeAnalysisRunner(design, n_jobs=4)
        >>> results = runner.run(panel.data)
        >>> results['arm_difference'].query("status == 'computed'")
    """

    def __init__(
        self,
        design: StudyDesign,
        n_jobs: int = config.N_JOBS,
        reml: bool = config.LME_REML,
        maxiter: int = config.LME_MAXITER,
        timeout: Optional[float] = config.FIT_TIMEOUT_SEC,
        df_method: str = config.DF_METHOD
    ):
        self.design = design
        self.n_jobs = n_jobs
        self.fit_kwargs = {
            'reml': reml,
            'maxiter': maxiter,
            'timeout': timeout,
            'df_method': df_method,
        }

        logger.info(f"Initialized OutcomeAnalysisRunner with {len(design.outcomes)} outcomes, n_jobs={n_jobs}")

    def _execute(self, jobs: List[Tuple]) -> pd.DataFrame:
        results = Parallel(n_jobs=self.n_jobs)(
            delayed(_run)(task, func, *args) for task, func, args in jobs
        )

        all_rows = []
        for i, (task, rows, elapsed) in enumerate(results, 1):
            n_omitted = sum(row['status'] == 'omitted' for row in rows)
            mark = '✓' if n_omitted == 0 else '✗'
            logger.info(f"  [{i}/{len(results)}] {mark} {task.label} ({elapsed:.1f}s, {len(rows)} rows)")
            all_rows.extend(rows)

        return pd.DataFrame(all_rows, columns=RESULT_COLUMNS)

    def _arm_comparison(self) -> str:
        control, treatment = self.design.arms[0], self.design.arms[1]
        return f"{treatment} - {control}"

    def _outcome_rows(self, panel: pd.DataFrame, outcome: str) -> pd.DataFrame:
        return panel[panel[OUTCOME] == outcome]

    def time_course(self, panel: pd.DataFrame) -> pd.DataFrame:
        """Timepoint vs baseline contrasts within each arm."""
        logger.info("Fitting time-course models...")
        jobs = []
        for outcome in self.design.outcomes:
            rows = self._outcome_rows(panel, outcome)
            for arm in self.design.arms:
                task = AnalysisTask(
                    'time_course', outcome, f"{TIMEPOINT} vs {self.design.baseline}", stratum=f"{ARM}={arm}"
                )
                jobs.append((task, time_course_task, (rows, outcome, arm, self.design.baseline, self.fit_kwargs)))
        return self._execute(jobs)

    def arm_difference(self, panel: pd.DataFrame, adjust_for: Sequence[str] = ()) -> pd.DataFrame:
        """
        Baseline-adjusted arm contrasts.

        Args:
            panel: Long panel
            adjust_for: Contrast-coded covariates added as fixed effects
        """
        logger.info("Fitting arm-difference models...")
        unknown = [c for c in adjust_for if c not in self.design.covariates]
        if unknown:
            raise ValueError(f"Undeclared adjustment covariates: {unknown}")

        jobs = []
        for outcome in self.design.outcomes:
            rows = self._outcome_rows(panel, outcome)
            task = AnalysisTask('arm_difference', outcome, self._arm_comparison())
            jobs.append((task, arm_difference_task, (
                rows, outcome, self.design.baseline, self.design.arms, tuple(adjust_for), self.fit_kwargs
            )))
        return self._execute(jobs)

    def subgroups(self, panel: pd.DataFrame, moderators: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """
        Arm contrasts within the levels of each moderator, one model per moderator.

        Args:
            panel: Long panel
            moderators: Declared covariates to test (default: all)
        """
        moderators = list(self.design.covariates) if moderators is None else list(moderators)
        unknown = [m for m in moderators if m not in self.design.covariates]
        if unknown:
            raise ValueError(f"Undeclared moderators: {unknown}")
        if not self.design.phases.names:
            raise ValueError("Subgroup analysis needs at least one declared phase")

        logger.info(f"Fitting subgroup models for {len(moderators)} moderators...")
        jobs = []
        for outcome in self.design.outcomes:
            rows = self._outcome_rows(panel, outcome)
            for moderator in moderators:
                task = AnalysisTask('subgroup', outcome, f"{ARM} by {moderator}", moderator=moderator)
                jobs.append((task, _subgroup_job, (
                    rows, outcome, moderator, self.design, self.fit_kwargs
                )))
        return self._execute(jobs)

    def run(
        self,
        panel: pd.DataFrame,
        analyses: Sequence[str] = ANALYSES,
        adjust_for: Sequence[str] = (),
        moderators: Optional[Sequence[str]] = None
    ) -> Dict[str, pd.DataFrame]:
        """
        Run the requested analyses.

        Returns:
            Dict mapping analysis name -> result table
        """
        unknown = [a for a in analyses if a not in ANALYSES]
        if unknown:
            raise ValueError(f"Unknown analyses: {unknown}. Valid: {list(ANALYSES)}")

        results = {}
        if 'time_course' in analyses:
            results['time_course'] = self.time_course(panel)
        if 'arm_difference' in analyses:
            results['arm_difference'] = self.arm_difference(panel, adjust_for)
        if 'subgroup' in analyses:
            results['subgroup'] = self.subgroups(panel, moderators)

        for name, table in results.items():
            n_omitted = int((table['status'] == 'omitted').sum())
            if n_omitted:
                logger.warning(f"{name}: {n_omitted}/{len(table)} rows omitted")
            else:
                logger.info(f"{name}: {len(table)} rows computed")
        return results


def _subgroup_job(rows, outcome, moderator, design, fit_kwargs):
    return analyze_subgroup(
        rows, outcome, moderator, design.phases,
        timepoints=design.timepoints, baseline=design.baseline, **fit_kwargs
    )
