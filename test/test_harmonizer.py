# -*- coding: utf-8 -*-
"""
Tests for panel harmonization: timepoint mapping, composite scoring, arm
resolution, covariate encoding and idempotence.
"""

import numpy as np
import pandas as pd
import pytest

from wellbeing.errors import HarmonizationError
from wellbeing.harmonizer import PanelHarmonizer


def _value(panel, pid, timepoint, outcome):
    data = panel.data
    row = data[(data['participant_id'] == pid) & (data['timepoint'] == timepoint) & (data['outcome'] == outcome)]
    assert len(row) == 1
    return row['value'].iloc[0]


class TestPanelLayout:
    """Structure of the harmonized panel."""

    def test_columns_and_types(self, small_design, raw_tables):
        """Panel has the canonical columns with ordered timepoints."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        assert list(panel.data.columns) == ['participant_id', 'timepoint', 'arm', 'outcome', 'value', 'gender']
        assert panel.data['timepoint'].cat.ordered
        assert list(panel.data['timepoint'].cat.categories) == ['Baseline', 'Week 1', 'Week 2']
        assert list(panel.data['arm'].cat.categories) == ['Control', 'Intervention']
        # 4 participants x 3 timepoints x 2 outcomes
        assert len(panel.data) == 24

    def test_rows_sorted_deterministically(self, small_design, raw_tables):
        """Rows are ordered by participant, timepoint and declared outcome order."""
        tables, arms, demographics = raw_tables
        shuffled = {'mood': tables['mood'].sample(frac=1.0, random_state=3)}

        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)
        panel_shuffled = PanelHarmonizer(small_design).harmonize(shuffled, arms, demographics)

        pd.testing.assert_frame_equal(panel.data, panel_shuffled.data)
        first = panel.data.iloc[:2]
        assert list(first['outcome']) == ['mood', 'calm']
        assert list(first['timepoint'].astype(str)) == ['Baseline', 'Baseline']

    def test_arm_labels_resolved(self, small_design, raw_tables):
        """Declared arm spellings map onto canonical arm levels."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        by_pid = panel.data.groupby('participant_id')['arm'].first().astype(str)
        assert by_pid.to_dict() == {'1': 'Control', '2': 'Intervention', '3': 'Control', '4': 'Intervention'}

    def test_covariates_encoded(self, small_design, raw_tables):
        """Covariate values are matched case-insensitively onto declared levels."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        by_pid = panel.data.groupby('participant_id')['gender'].first().astype(str)
        assert by_pid.to_dict() == {'1': 'Female', '2': 'Male', '3': 'Female', '4': 'Male'}


class TestCompositeScores:
    """Outcome composites."""

    def test_mean_of_available_items(self, small_design, raw_tables):
        """A missing item does not make the composite missing."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        assert _value(panel, '1', 'Baseline', 'mood') == pytest.approx(3.0)
        # M2 missing at week 1: mean of M1 only
        assert _value(panel, '1', 'Week 1', 'mood') == pytest.approx(3.0)

    def test_all_items_missing_gives_missing(self, small_design, raw_tables):
        """The composite is missing only when every item is missing."""
        tables, arms, demographics = raw_tables
        tables['mood'].loc[0, ['M1', 'M2']] = np.nan
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        assert np.isnan(_value(panel, '1', 'Baseline', 'mood'))

    def test_reverse_keyed_items(self, small_design, raw_tables):
        """Reverse-keyed items are rescored as (min + max) - x."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        # m3 = 1, m4 = 5 -> 6 - 5 = 1
        assert _value(panel, '1', 'Baseline', 'calm') == pytest.approx(1.0)
        # m3 = 2, m4 = 4 -> 6 - 4 = 2
        assert _value(panel, '1', 'Week 1', 'calm') == pytest.approx(2.0)

    def test_declared_fix_applied_and_logged(self, small_design, raw_tables):
        """Out-of-range response is clamped before scoring and logged."""
        tables, arms, demographics = raw_tables
        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        # M4 = 7 clamped to 5, reversed to 1; m3 = 5
        assert _value(panel, '2', 'Week 2', 'calm') == pytest.approx(3.0)
        assert len(panel.adjustments) == 1
        log = panel.adjustments.iloc[0]
        assert log['fix'] == 'mood_range'
        assert log['item'] == 'M4'
        assert log['original_value'] == 7
        assert log['new_value'] == 5


class TestHarmonizationErrors:
    """Fatal input problems."""

    def test_unmapped_timepoint(self, small_design, raw_tables):
        """A timepoint label with no mapping is fatal."""
        tables, arms, demographics = raw_tables
        tables['mood'].loc[4, 'Time'] = 'week seven'

        with pytest.raises(HarmonizationError, match='week seven'):
            PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

    def test_duplicate_key(self, small_design, raw_tables):
        """Two rows for the same participant and timepoint are fatal."""
        tables, arms, demographics = raw_tables
        # 'w1' and 'Week 1' both map to Week 1
        tables['mood'].loc[2, 'Time'] = 'w1'

        with pytest.raises(HarmonizationError, match='duplicate'):
            PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

    def test_conflicting_arm_assignment(self, small_design, raw_tables):
        """A participant assigned to both arms is fatal."""
        tables, arms, demographics = raw_tables
        arms = pd.concat([arms, pd.DataFrame({'participant_id': ['1'], 'arm': ['tx']})], ignore_index=True)

        with pytest.raises(HarmonizationError, match='conflicting'):
            PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

    def test_undeclared_instrument(self, small_design, raw_tables):
        """Tables must belong to declared instruments."""
        tables, arms, demographics = raw_tables
        tables['sleep'] = tables['mood']

        with pytest.raises(HarmonizationError, match='Undeclared'):
            PanelHarmonizer(small_design).harmonize(tables, arms, demographics)


class TestArmExclusion:
    """Participants without an arm assignment."""

    def test_participant_without_arm_dropped(self, small_design, raw_tables):
        """Unassigned participants are dropped and recorded, not fatal."""
        tables, arms, demographics = raw_tables
        arms = arms[arms['participant_id'] != '3']

        panel = PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        assert '3' not in set(panel.data['participant_id'])
        assert list(panel.exclusions['participant_id']) == ['3']
        assert 'No arm assignment' in panel.exclusions['reason'].iloc[0]


class TestIdempotence:
    """Harmonizing cleaned tables again changes nothing."""

    def test_reharmonize_cleaned_tables(self, small_design, raw_tables):
        """Second pass yields the same panel and applies no fixes."""
        tables, arms, demographics = raw_tables
        harmonizer = PanelHarmonizer(small_design)

        first = harmonizer.harmonize(tables, arms, demographics)
        second = harmonizer.harmonize(first.cleaned_tables, arms, demographics)

        pd.testing.assert_frame_equal(first.data, second.data)
        assert len(second.adjustments) == 0
        for name in first.cleaned_tables:
            pd.testing.assert_frame_equal(first.cleaned_tables[name], second.cleaned_tables[name])

    def test_input_tables_not_modified(self, small_design, raw_tables):
        """Harmonization works on copies."""
        tables, arms, demographics = raw_tables
        original = tables['mood'].copy()

        PanelHarmonizer(small_design).harmonize(tables, arms, demographics)

        pd.testing.assert_frame_equal(tables['mood'], original)
