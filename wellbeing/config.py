# -*- coding: utf-8 -*-
"""
Wellbeing trial configuration

This file holds the project-wide configuration: canonical timepoints, study
arms, default instrument and outcome declarations, and model settings used by
the analysis pipeline.
"""

import os

# =============================================================================
# PATHS
# =============================================================================

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_ROOT = os.path.abspath(os.path.join(PROJECT_ROOT, '..', 'data'))

RESULTS_DIR = os.path.join(PROJECT_ROOT, 'results')

# Input files expected in the data directory besides one <instrument>.csv each
ARM_FILE = 'arms.csv'
COVARIATE_FILE = 'demographics.csv'

# =============================================================================
# STUDY DESIGN
# =============================================================================

# Canonical timepoints in study order. Every instrument maps its own spelling
# onto these labels; the order defines the reference level of `timepoint`.
TIMEPOINTS = [
    'Baseline',
    'Intervention week 1',
    'Intervention week 2',
    'Intervention week 3',
    'Intervention week 4',
    'Day 5',
    'Week 6',
]

BASELINE_TIMEPOINT = 'Baseline'

# Study arms, control first (reference level of `arm`)
ARMS = ['Control', 'Intervention']

# Shared column names of the long-format panel
PARTICIPANT_COLUMN = 'participant_id'
TIMEPOINT_COLUMN = 'timepoint'
ARM_COLUMN = 'arm'
OUTCOME_COLUMN = 'outcome'
VALUE_COLUMN = 'value'

# =============================================================================
# INSTRUMENTS AND OUTCOMES
# =============================================================================

# Spelling variants seen in the survey exports. Canonical labels always map to
# themselves, so cleaned tables can be harmonized again.
DEFAULT_TIMEPOINT_ALIASES = {
    'pre': 'Baseline',
    'baseline': 'Baseline',
    't0': 'Baseline',
    'week 1': 'Intervention week 1',
    'week 2': 'Intervention week 2',
    'week 3': 'Intervention week 3',
    'week 4': 'Intervention week 4',
    'iw1': 'Intervention week 1',
    'iw2': 'Intervention week 2',
    'iw3': 'Intervention week 3',
    'iw4': 'Intervention week 4',
    'd5': 'Day 5',
    'day5': 'Day 5',
    'w6': 'Week 6',
    'follow-up': 'Week 6',
}

# Per-instrument declarations. `items` maps the raw export column to the item
# name used in outcome definitions.
DEFAULT_INSTRUMENTS = {
    'k6': {
        'participant_column': 'ID',
        'timepoint_column': 'Time',
        'items': {f'K6_{i}': f'k6_{i}' for i in range(1, 7)},
        'response_range': (1, 5),
    },
    'panas': {
        'participant_column': 'ID',
        'timepoint_column': 'Time',
        'items': {f'PANAS_{i}': f'panas_{i}' for i in range(1, 21)},
        'response_range': (1, 5),
    },
    'flourishing': {
        'participant_column': 'ID',
        'timepoint_column': 'Time',
        'items': {f'FS_{i}': f'fs_{i}' for i in range(1, 9)},
        'response_range': (1, 7),
    },
    'ucla3': {
        'participant_column': 'ID',
        'timepoint_column': 'Time',
        'items': {f'UCLA_{i}': f'ucla_{i}' for i in range(1, 4)},
        'response_range': (1, 3),
    },
}

# PANAS positive/negative item split follows the standard scoring key
PANAS_POSITIVE_ITEMS = [1, 3, 5, 9, 10, 12, 14, 16, 17, 19]
PANAS_NEGATIVE_ITEMS = [2, 4, 6, 7, 8, 11, 13, 15, 18, 20]

DEFAULT_OUTCOMES = {
    'distress': {
        'instrument': 'k6',
        'items': [f'k6_{i}' for i in range(1, 7)],
    },
    'positive_affect': {
        'instrument': 'panas',
        'items': [f'panas_{i}' for i in PANAS_POSITIVE_ITEMS],
    },
    'negative_affect': {
        'instrument': 'panas',
        'items': [f'panas_{i}' for i in PANAS_NEGATIVE_ITEMS],
    },
    'flourishing': {
        'instrument': 'flourishing',
        'items': [f'fs_{i}' for i in range(1, 9)],
    },
    'loneliness': {
        'instrument': 'ucla3',
        'items': [f'ucla_{i}' for i in range(1, 4)],
    },
}

# Demographic moderators. Binary indicators use contrast coding (-0.5/+0.5).
DEFAULT_COVARIATES = {
    'gender': {
        'column': 'gender',
        'levels': {'female': 'Female', 'f': 'Female', 'male': 'Male', 'm': 'Male'},
        'coding': 'contrast',
    },
    'student': {
        'column': 'student',
        'levels': {'no': 'No', '0': 'No', 'yes': 'Yes', '1': 'Yes'},
        'coding': 'contrast',
    },
}

# Subgroup analyses collapse the outcome within these phases
DEFAULT_PHASES = {
    'intervention': [
        'Intervention week 1',
        'Intervention week 2',
        'Intervention week 3',
        'Intervention week 4',
    ],
    'follow_up': ['Day 5', 'Week 6'],
}

# =============================================================================
# MODEL SETTINGS
# =============================================================================

LME_REML = True
LME_MAXITER = 200
LME_METHODS = ['lbfgs', 'bfgs', 'cg']

# Wall-clock limit for a single model fit, in seconds
FIT_TIMEOUT_SEC = 60.0

CI_LEVEL = 0.95
ALPHA = 0.05

# Degrees of freedom for mixed-model contrasts: 'satterthwaite' or 'between_within'
DF_METHOD = 'satterthwaite'

# Worker pool size for the (outcome, stratum) task matrix. 1 runs inline.
N_JOBS = 1

RANDOM_SEED = 22


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

def validate_configuration():
    """Check that the default declarations are internally consistent."""
    assert BASELINE_TIMEPOINT in TIMEPOINTS, (
        f"Baseline timepoint '{BASELINE_TIMEPOINT}' not in TIMEPOINTS"
    )
    assert len(set(TIMEPOINTS)) == len(TIMEPOINTS), "Duplicate canonical timepoints"
    assert len(ARMS) == 2, f"Expected two arms, found {len(ARMS)}"

    for alias, canonical in DEFAULT_TIMEPOINT_ALIASES.items():
        assert canonical in TIMEPOINTS, f"Alias '{alias}' maps to unknown timepoint '{canonical}'"

    for name, outcome in DEFAULT_OUTCOMES.items():
        instrument = DEFAULT_INSTRUMENTS.get(outcome['instrument'])
        assert instrument is not None, f"Outcome '{name}' uses unknown instrument"
        known_items = set(instrument['items'].values())
        unknown = [item for item in outcome['items'] if item not in known_items]
        assert not unknown, f"Outcome '{name}' references undeclared items: {unknown}"

    for phase, timepoints in DEFAULT_PHASES.items():
        assert all(tp in TIMEPOINTS for tp in timepoints), f"Phase '{phase}' has unknown timepoints"
        assert BASELINE_TIMEPOINT not in timepoints, f"Phase '{phase}' includes the baseline"

    assert DF_METHOD in ('satterthwaite', 'between_within'), f"Unknown DF_METHOD: {DF_METHOD}"
    assert 0 < CI_LEVEL < 1, "CI_LEVEL must be in (0, 1)"
