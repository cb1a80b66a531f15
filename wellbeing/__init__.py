"""
Wellbeing Trial Analysis Pipeline

Longitudinal outcome modeling for a two-arm wellbeing intervention trial:
panel harmonization, baseline adjustment, mixed-effects models and contrast
extraction.
"""

from .__version__ import __version__
from .baseline import baseline_adjust
from .contrast_analyzer import DIRECTION, ContrastSpec, extract_contrasts
from .design import StudyDesign
from .errors import ContrastError, HarmonizationError, ModelingError, WellbeingAnalysisError
from .harmonizer import HarmonizedPanel, PanelHarmonizer
from .lme_analyzer import FittedModel, FormulaSpec, fit_model
from .runner import OutcomeAnalysisRunner
from .subgroup_analyzer import analyze_subgroup

__all__ = [
    '__version__',
    'DIRECTION',
    'ContrastError',
    'ContrastSpec',
    'FittedModel',
    'FormulaSpec',
    'HarmonizationError',
    'HarmonizedPanel',
    'ModelingError',
    'OutcomeAnalysisRunner',
    'PanelHarmonizer',
    'StudyDesign',
    'WellbeingAnalysisError',
    'analyze_subgroup',
    'baseline_adjust',
    'extract_contrasts',
    'fit_model',
]
