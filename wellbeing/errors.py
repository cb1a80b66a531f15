# -*- coding: utf-8 -*-
"""
Exceptions raised by the wellbeing analysis pipeline.
"""


class WellbeingAnalysisError(Exception):
    """Base class for all pipeline errors."""


class HarmonizationError(WellbeingAnalysisError):
    """
    Raised when input tables cannot be mapped onto the panel.

    Unmapped timepoint labels and duplicate keys are fatal. Participants
    without a resolvable arm are reported through this class but only
    logged and dropped.
    """

    def __init__(self, message: str, participant_id=None):
        super().__init__(message)
        self.participant_id = participant_id


class ModelingError(WellbeingAnalysisError):
    """Raised when a model for one (outcome, stratum) cannot be fitted."""


class ContrastError(WellbeingAnalysisError):
    """Raised when a requested comparison is not available in a fitted model."""
