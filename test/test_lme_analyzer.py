# -*- coding: utf-8 -*-
"""
Tests for model assembly and fitting.
"""

import numpy as np
import pandas as pd
import patsy
import pytest

from wellbeing.baseline import baseline_adjust
from wellbeing.errors import ModelingError
from wellbeing.lme_analyzer import FormulaSpec, extract_fixed_effects, fit_model, prepare_data


ARM_DIFFERENCE = FormulaSpec(
    factors=('timepoint', 'arm'),
    numeric=('baseline_centered',),
    interactions=(('timepoint', 'arm'),),
)


class TestFormulaSpec:
    def test_formula(self):
        assert ARM_DIFFERENCE.formula() == 'value ~ timepoint + arm + baseline_centered + timepoint:arm'

    def test_intercept_only(self):
        assert FormulaSpec().formula() == 'value ~ 1'

    def test_columns_include_group(self):
        assert ARM_DIFFERENCE.columns == ['value', 'timepoint', 'arm', 'baseline_centered', 'participant_id']


class TestPrepareData:
    """Design preparation."""

    def test_contrast_coding(self, panel):
        """Binary covariates become -0.5/+0.5 with the first declared level low."""
        spec = FormulaSpec(factors=('timepoint',), contrast_coded=('gender',))
        data = prepare_data(panel[panel['outcome'] == 'mood'], spec)

        assert set(data['gender']) == {-0.5, 0.5}
        female = panel.loc[panel['outcome'] == 'mood', 'gender'].astype(str).values == 'Female'
        assert (data.loc[female, 'gender'] == -0.5).all()

    def test_unused_levels_removed(self, panel):
        """The first observed level in canonical order becomes the reference."""
        adjusted = baseline_adjust(panel, 'mood')
        data = prepare_data(adjusted, ARM_DIFFERENCE)

        assert list(data['timepoint'].cat.categories) == ['Week 1', 'Week 2']
        assert list(data['arm'].cat.categories) == ['Control', 'Intervention']

    def test_single_participant(self, panel):
        rows = panel[(panel['outcome'] == 'mood') & (panel['participant_id'] == 'P000')]
        with pytest.raises(ModelingError, match='participant'):
            prepare_data(rows, FormulaSpec(factors=('timepoint',)))

    def test_single_level_factor(self, panel):
        rows = panel[(panel['outcome'] == 'mood') & (panel['arm'] == 'Control')]
        with pytest.raises(ModelingError, match="factor 'arm'"):
            prepare_data(rows, FormulaSpec(factors=('timepoint', 'arm')))

    def test_missing_column(self, panel):
        with pytest.raises(ModelingError, match='columns not in data'):
            prepare_data(panel, FormulaSpec(numeric=('age',)))


class TestFitModel:
    """Model fitting."""

    def test_mixed_model(self, panel):
        adjusted = baseline_adjust(panel, 'mood')
        model = fit_model(adjusted, ARM_DIFFERENCE, label='mood')

        assert model.n_groups == 20
        assert model.n_obs == 40
        assert model.df_method == 'satterthwaite'
        assert model.re_variance >= 0
        assert np.all(np.isfinite(model.fe_params))
        assert list(model.cov_fe.index) == list(model.fe_params.index)

    def test_ols_without_random_intercept(self, panel):
        """One row per participant is fitted by OLS with residual df."""
        rows = baseline_adjust(panel, 'mood')
        rows = rows[rows['timepoint'] == 'Week 2']
        spec = FormulaSpec(factors=('arm',), numeric=('baseline_centered',), random_intercept=False)

        model = fit_model(rows, spec, label='mood week 2')

        assert model.df_method == 'residual'
        assert model.re_variance == 0.0
        assert model.contrast_df(np.array([0.0, 1.0, 0.0])) == pytest.approx(20 - 3)

    def test_rank_deficient_design(self, panel):
        """A covariate identical to a factor makes the design rank-deficient."""
        rows = baseline_adjust(panel, 'mood')
        rows['arm_copy'] = (rows['arm'] == 'Intervention').astype(float)
        spec = FormulaSpec(factors=('timepoint', 'arm'), numeric=('arm_copy',))

        with pytest.raises(ModelingError, match='rank-deficient'):
            fit_model(rows, spec, label='collinear')

    def test_too_few_rows(self, panel):
        rows = baseline_adjust(panel, 'mood')
        rows = rows[rows['participant_id'].isin(['P000', 'P001'])]
        spec = FormulaSpec(
            factors=('timepoint', 'arm'), numeric=('baseline_centered',), interactions=(('timepoint', 'arm'),)
        )

        with pytest.raises(ModelingError):
            fit_model(rows, spec, label='tiny')

    def test_timeout(self, panel):
        adjusted = baseline_adjust(panel, 'mood')
        with pytest.raises(ModelingError, match='timeout'):
            fit_model(adjusted, ARM_DIFFERENCE, label='slow', timeout=1e-9)

    def test_deadline_cleared_after_fit(self, panel):
        """The deadline bounds the optimizer only, not later use of the result."""
        model = fit_model(baseline_adjust(panel, 'mood'), ARM_DIFFERENCE, label='mood', timeout=60)

        assert model.result.model.deadline is None
        assert np.isfinite(model.result.llf)

    def test_owns_design_info(self, panel):
        """The patsy design kept on the model rebuilds the fitted design matrix."""
        model = fit_model(baseline_adjust(panel, 'mood'), ARM_DIFFERENCE, label='mood')

        assert isinstance(model.design_info, patsy.DesignInfo)
        (rebuilt,) = patsy.build_design_matrices([model.design_info], model.data, return_type='dataframe')
        assert list(rebuilt.columns) == list(model.fe_params.index)
        np.testing.assert_allclose(rebuilt.values, model.exog)

    def test_fixed_effect_table(self, panel):
        model = fit_model(baseline_adjust(panel, 'mood'), ARM_DIFFERENCE, label='mood')
        table = extract_fixed_effects(model)

        assert list(table['effect']) == list(model.fe_params.index)
        assert (table['ci_lower'] <= table['beta']).all()
        assert (table['beta'] <= table['ci_upper']).all()
