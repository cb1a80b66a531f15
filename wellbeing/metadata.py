# -*- coding: utf-8 -*-
"""
Run Metadata Module

This module documents an analysis run for reproducibility: the study design,
the data-quality fixes that were applied, excluded participants, model
settings, library versions and a summary of the panel.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional
import json
import os
import platform

import joblib
import numpy as np
import pandas as pd
import scipy
import statsmodels

from . import config
from .__version__ import __version__
from .contrast_analyzer import DIRECTION
from .design import StudyDesign
from .harmonizer import HarmonizedPanel


class RunMetadata:
    """
    Generates metadata documentation for an analysis run.

    Example:
        >>> from wellbeing.metadata import RunMetadata
        >>> metadata = RunMetadata(design).generate_metadata(panel, results)
        >>> RunMetadata.save(metadata, 'results/run_metadata.json')
    """

    def __init__(self, design: StudyDesign, fit_settings: Optional[Dict[str, Any]] = None):
        self.design = design
        self.fit_settings = fit_settings or {
            'reml': config.LME_REML,
            'maxiter': config.LME_MAXITER,
            'timeout': config.FIT_TIMEOUT_SEC,
            'df_method': config.DF_METHOD,
        }

    def _design_summary(self) -> Dict[str, Any]:
        design = self.design
        return {
            'timepoints': list(design.timepoints),
            'baseline': design.baseline,
            'arms': list(design.arms),
            'instruments': {
                name: {
                    'participant_column': inst.participant_column,
                    'timepoint_column': inst.timepoint_column,
                    'n_items': len(inst.items),
                    'response_range': list(inst.response_range) if inst.response_range else None,
                }
                for name, inst in design.instruments.items()
            },
            'outcomes': {
                name: {
                    'instrument': out.instrument,
                    'items': list(out.items),
                    'reverse_items': list(out.reverse_items),
                    'scoring': 'mean of non-missing items',
                }
                for name, out in design.outcomes.items()
            },
            'covariates': {
                name: {'levels': cov.level_order, 'coding': cov.coding}
                for name, cov in design.covariates.items()
            },
            'phases': {name: list(tps) for name, tps in design.phases.phases.items()},
            'fixes': [
                {'type': type(fix).__name__, **_jsonable(asdict(fix))} for fix in design.fixes
            ],
        }

    def generate_metadata(
        self,
        panel: HarmonizedPanel,
        results: Optional[Dict[str, pd.DataFrame]] = None,
        n_jobs: int = config.N_JOBS
    ) -> Dict[str, Any]:
        """
        Generate run metadata.

        Args:
            panel: Harmonized panel the analyses were run on
            results: Analysis name -> result table
            n_jobs: Worker count used

        Returns:
            JSON-serializable dictionary
        """
        data = panel.data
        results = results or {}

        adjustments = panel.adjustments
        if len(adjustments) > 0:
            fixes_applied = {str(fix): int(n) for fix, n in adjustments.groupby('fix').size().items()}
        else:
            fixes_applied = {}

        return {
            'package_version': __version__,
            'timestamp': datetime.now().isoformat(),
            'random_seed': config.RANDOM_SEED,
            'contrast_direction': DIRECTION,
            'design': self._design_summary(),
            'data_summary': {
                'n_participants': int(data[config.PARTICIPANT_COLUMN].nunique()),
                'n_rows': len(data),
                'n_observed_values': int(data[config.VALUE_COLUMN].notna().sum()),
                'participants_per_arm': {
                    str(arm): int(n)
                    for arm, n in data.groupby(config.ARM_COLUMN, observed=False)[config.PARTICIPANT_COLUMN]
                    .nunique().items()
                },
            },
            'exclusions': panel.exclusions.to_dict(orient='records'),
            'fixes_applied': fixes_applied,
            'model_settings': {
                **self.fit_settings,
                'optimizers': list(config.LME_METHODS),
                'ci_level': config.CI_LEVEL,
                'n_jobs': n_jobs,
            },
            'results_summary': {
                name: {
                    'n_rows': len(table),
                    'n_computed': int((table['status'] == 'computed').sum()),
                    'n_omitted': int((table['status'] == 'omitted').sum()),
                }
                for name, table in results.items()
            },
            'versions': {
                'python': platform.python_version(),
                'numpy': np.__version__,
                'pandas': pd.__version__,
                'scipy': scipy.__version__,
                'statsmodels': statsmodels.__version__,
                'joblib': joblib.__version__,
            },
        }

    @staticmethod
    def save(metadata: Dict[str, Any], path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(metadata, f, indent=2)
        return path


def _jsonable(value):
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value
