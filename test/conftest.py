# -*- coding: utf-8 -*-
"""
Shared synthetic fixtures for the wellbeing test suite.

The small design has three timepoints, one instrument with four items and two
outcomes, a contrast-coded gender covariate and two one-timepoint phases.
"""

import numpy as np
import pandas as pd
import pytest

from wellbeing.design import StudyDesign

TIMEPOINTS = ['Baseline', 'Week 1', 'Week 2']
ARMS = ['Control', 'Intervention']

SMALL_DESIGN = {
    'timepoints': TIMEPOINTS,
    'baseline': 'Baseline',
    'arms': ARMS,
    'timepoint_aliases': {'pre': 'Baseline', 'w1': 'Week 1', 'w2': 'Week 2'},
    'instruments': {
        'mood': {
            'participant_column': 'ID',
            'timepoint_column': 'Time',
            'items': {'M1': 'm1', 'M2': 'm2', 'M3': 'm3', 'M4': 'm4'},
            'response_range': [1, 5],
        },
    },
    'outcomes': {
        'mood': {'instrument': 'mood', 'items': ['m1', 'm2']},
        'calm': {'instrument': 'mood', 'items': ['m3', 'm4'], 'reverse_items': ['m4']},
    },
    'covariates': {
        'gender': {
            'column': 'gender',
            'levels': {'f': 'Female', 'female': 'Female', 'm': 'Male', 'male': 'Male'},
            'coding': 'contrast',
        },
    },
    'phases': {'intervention': ['Week 1'], 'follow_up': ['Week 2']},
    'fixes': [
        {'type': 'clamp', 'name': 'mood_range', 'instrument': 'mood', 'low': 1, 'high': 5},
    ],
    'arm_assignment': {'levels': {'ctrl': 'Control', 'tx': 'Intervention'}},
}


def make_panel(
    n_participants=20,
    effect=1.0,
    time_effect=0.2,
    noise_sd=0.3,
    subject_sd=0.5,
    outcomes=('mood', 'calm'),
    effect_timepoints=('Week 1', 'Week 2'),
    seed=22
):
    """
    Long panel with a random participant intercept and an intervention effect
    of `effect` at each of `effect_timepoints`.

    Participants alternate between arms and, in pairs, between genders, so
    every arm x gender cell is populated. Every third participant is a
    student.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for outcome in outcomes:
        intercepts = rng.normal(0, subject_sd, n_participants)
        for i in range(n_participants):
            arm = ARMS[i % 2]
            gender = 'Female' if (i // 2) % 2 == 0 else 'Male'
            for t, timepoint in enumerate(TIMEPOINTS):
                value = 3.0 + intercepts[i] + time_effect * t + rng.normal(0, noise_sd)
                if arm == 'Intervention' and timepoint in effect_timepoints:
                    value += effect
                rows.append({
                    'participant_id': f"P{i:03d}",
                    'timepoint': timepoint,
                    'arm': arm,
                    'outcome': outcome,
                    'value': value,
                    'gender': gender,
                    'student': 'Yes' if i % 3 == 0 else 'No',
                })

    panel = pd.DataFrame(rows)
    panel['timepoint'] = pd.Categorical(panel['timepoint'], categories=TIMEPOINTS, ordered=True)
    panel['arm'] = pd.Categorical(panel['arm'], categories=ARMS)
    panel['gender'] = pd.Categorical(panel['gender'], categories=['Female', 'Male'])
    panel['student'] = pd.Categorical(panel['student'], categories=['No', 'Yes'])
    return panel


@pytest.fixture
def small_design_spec():
    return {k: v for k, v in SMALL_DESIGN.items()}


@pytest.fixture(scope='session')
def small_design():
    return StudyDesign.from_dict(SMALL_DESIGN)


@pytest.fixture
def panel():
    return make_panel()


@pytest.fixture(scope='session')
def panel_factory():
    return make_panel


@pytest.fixture
def raw_tables():
    """Wide instrument export, arm table and demographics for four participants."""
    mood = pd.DataFrame({
        'ID': ['1', '1', '1', '2', '2', '2', '3', '3', '3', '4', '4', '4'],
        'Time': ['pre', 'w1', 'Week 2'] * 4,
        'M1': [2, 3, 4, 1, 2, 2, 5, 4, 4, 3, 3, 3],
        'M2': [4, np.nan, 4, 1, 2, 4, 5, 4, 2, 3, 3, 3],
        'M3': [1, 2, 3, 4, 5, 5, 2, 2, 2, 3, 3, 3],
        'M4': [5, 4, 3, 2, 1, 7, 2, 2, 2, 3, 3, 3],
    }).astype({'M1': float, 'M3': float, 'M4': float})
    arms = pd.DataFrame({
        'participant_id': ['1', '2', '3', '4'],
        'arm': ['ctrl', 'tx', 'Control', 'Intervention'],
    })
    demographics = pd.DataFrame({
        'participant_id': ['1', '2', '3', '4'],
        'gender': ['F', 'male', 'f', 'M'],
    })
    return {'mood': mood}, arms, demographics
