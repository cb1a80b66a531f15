# -*- coding: utf-8 -*-
"""
Tests for marginal means and contrast extraction.

The mirrored panel gives every control participant a twin in the
intervention arm whose values are exactly 2 points higher, so the arm
contrast is known exactly.
"""

import numpy as np
import pandas as pd
import pytest

from wellbeing.contrast_analyzer import (
    DIRECTION,
    RESULT_COLUMNS,
    ContrastSpec,
    contrast,
    extract_contrasts,
    marginal_means,
    reference_grid,
)
from wellbeing.lme_analyzer import FormulaSpec, fit_model

TIMEPOINTS = ['Baseline', 'Week 1', 'Week 2']
TIME_ARM = FormulaSpec(factors=('timepoint', 'arm'), interactions=(('timepoint', 'arm'),))


@pytest.fixture(scope='module')
def mirrored_panel():
    np.random.seed(42)
    rows = []
    for i in range(10):
        intercept = np.random.normal(0, 0.5)
        for t, timepoint in enumerate(TIMEPOINTS):
            value = 3.0 + intercept + 0.5 * t + np.random.normal(0, 0.3)
            rows.append({'participant_id': f"C{i}", 'timepoint': timepoint, 'arm': 'Control', 'value': value})
            rows.append({'participant_id': f"I{i}", 'timepoint': timepoint, 'arm': 'Intervention', 'value': value + 2.0})

    panel = pd.DataFrame(rows)
    panel['timepoint'] = pd.Categorical(panel['timepoint'], categories=TIMEPOINTS, ordered=True)
    panel['arm'] = pd.Categorical(panel['arm'], categories=['Control', 'Intervention'])
    return panel


@pytest.fixture(scope='module')
def model(mirrored_panel):
    return fit_model(mirrored_panel, TIME_ARM, label='mirrored')


class TestDirection:
    """Every difference is later level minus earlier level."""

    def test_direction_constant(self):
        assert DIRECTION == 'later_minus_earlier'

    def test_arm_contrast_sign(self, model):
        """Intervention minus control is +2 at every timepoint."""
        rows = extract_contrasts(model, ContrastSpec(factor='arm', by=('timepoint',)), 'mirror', 'arm_difference')

        assert len(rows) == 3
        for row in rows:
            assert row['comparison'] == 'Intervention - Control'
            assert row['status'] == 'computed'
            assert row['estimate'] == pytest.approx(2.0, abs=1e-6)
            assert row['standard_error'] > 0
            assert row['lower_ci'] < 2.0 < row['upper_ci']
            assert row['df'] > 0
        assert [row['stratum'] for row in rows] == [
            'timepoint=Baseline', 'timepoint=Week 1', 'timepoint=Week 2'
        ]

    def test_reversed_level_order(self, mirrored_panel):
        """Declaring the intervention first flips label and sign together."""
        spec = FormulaSpec(
            factors=('timepoint', 'arm'),
            interactions=(('timepoint', 'arm'),),
            levels={'arm': ('Intervention', 'Control')},
        )
        reversed_model = fit_model(mirrored_panel, spec, label='reversed')
        rows = extract_contrasts(reversed_model, ContrastSpec(factor='arm'), 'mirror', 'arm_difference')

        assert rows[0]['comparison'] == 'Control - Intervention'
        assert rows[0]['estimate'] == pytest.approx(-2.0, abs=1e-6)

    def test_timepoint_vs_baseline(self, model, mirrored_panel):
        """Timepoint contrasts average over arms and match the raw mean change."""
        rows = extract_contrasts(model, ContrastSpec(factor='timepoint'), 'mirror', 'time_course')

        assert [row['comparison'] for row in rows] == ['Week 1 - Baseline', 'Week 2 - Baseline']
        wide = mirrored_panel.pivot(index='participant_id', columns='timepoint', values='value')
        expected = (wide['Week 2'] - wide['Baseline']).mean()
        assert rows[1]['estimate'] == pytest.approx(expected, abs=1e-6)

    def test_contrast_function(self, model):
        result = contrast(model, 'arm', 'Control', 'Intervention', at={'timepoint': 'Week 1'})
        assert result['estimate'] == pytest.approx(2.0, abs=1e-6)


class TestContrastMethods:
    def test_pairwise(self, model):
        rows = extract_contrasts(
            model, ContrastSpec(factor='timepoint', method='pairwise'), 'mirror', 'time_course'
        )
        assert [row['comparison'] for row in rows] == [
            'Week 1 - Baseline', 'Week 2 - Baseline', 'Week 2 - Week 1'
        ]

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            ContrastSpec(factor='arm', method='dunnett')

    def test_rows_have_result_columns(self, model):
        rows = extract_contrasts(model, ContrastSpec(factor='arm'), 'mirror', 'arm_difference', stratum='all')
        assert set(rows[0]) == set(RESULT_COLUMNS)
        assert rows[0]['stratum'] == 'all'

    def test_marginal_means(self, model):
        means = marginal_means(model, 'arm')
        assert list(means['arm']) == ['Control', 'Intervention']
        diff = means['estimate'].iloc[1] - means['estimate'].iloc[0]
        assert diff == pytest.approx(2.0, abs=1e-6)


class TestOmittedComparisons:
    """Unavailable comparisons are reported, not dropped."""

    def test_unfitted_level(self, model):
        """Only the comparison involving the missing level is omitted."""
        spec = ContrastSpec(factor='arm', levels=('Control', 'Placebo', 'Intervention'))
        rows = extract_contrasts(model, spec, 'mirror', 'arm_difference')

        assert [row['comparison'] for row in rows] == ['Placebo - Control', 'Intervention - Control']
        assert rows[0]['status'] == 'omitted'
        assert 'Placebo' in rows[0]['reason']
        assert np.isnan(rows[0]['estimate'])
        assert rows[1]['status'] == 'computed'

    def test_factor_not_in_model(self, model):
        rows = extract_contrasts(model, ContrastSpec(factor='gender'), 'mirror', 'subgroup', moderator='gender')

        assert len(rows) == 1
        assert rows[0]['status'] == 'omitted'
        assert rows[0]['moderator'] == 'gender'


class TestReferenceGrid:
    def test_grid_design_rows(self, model):
        """One design row per timepoint x arm cell, in fixed-effect order."""
        grid, design = reference_grid(model)

        assert len(grid) == len(TIMEPOINTS) * 2
        assert list(design.columns) == list(model.fe_params.index)
        # Baseline x Control is the reference cell
        np.testing.assert_allclose(design.iloc[0].values, [1.0, 0.0, 0.0, 0.0, 0.0, 0.0])

    def test_cell_means_match_data(self, model, mirrored_panel):
        """In a saturated model the grid reproduces the observed cell means."""
        grid, design = reference_grid(model)
        fitted = design.values @ model.fe_params.values
        observed = mirrored_panel.groupby(['timepoint', 'arm'], observed=True)['value'].mean()

        for (timepoint, arm), value in zip(grid[['timepoint', 'arm']].itertuples(index=False), fitted):
            assert value == pytest.approx(observed[(timepoint, arm)], abs=1e-6)
