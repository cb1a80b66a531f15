# -*- coding: utf-8 -*-
"""
Panel Harmonization Module

This module merges per-instrument wide survey tables (one row per participant x
timepoint, one column per item) into a single long-format measurement panel
with canonical timepoint labels, study arm and demographic covariates, and
computes the composite score of every declared outcome.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from . import config
from .data_fixes import ADJUSTMENT_LOG_COLUMNS, apply_fixes
from .design import Instrument, OutcomeDefinition, StudyDesign, normalize_label
from .errors import HarmonizationError

logger = logging.getLogger(__name__)

PID = config.PARTICIPANT_COLUMN
TIMEPOINT = config.TIMEPOINT_COLUMN
ARM = config.ARM_COLUMN
OUTCOME = config.OUTCOME_COLUMN
VALUE = config.VALUE_COLUMN

EXCLUSION_COLUMNS = [PID, 'reason']


@dataclass
class HarmonizedPanel:
    """
    Output of the harmonizer.

    Attributes:
        data: Long panel with columns participant_id, timepoint (ordered
            categorical), arm, outcome, value and one column per covariate
        exclusions: Participants dropped during harmonization, with reason
        adjustments: Audit log of every data-quality fix applied
        cleaned_tables: Instrument tables after timepoint normalization and
            fixes, in their original column layout
    """

    data: pd.DataFrame
    exclusions: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=EXCLUSION_COLUMNS))
    adjustments: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=ADJUSTMENT_LOG_COLUMNS))
    cleaned_tables: Dict[str, pd.DataFrame] = field(default_factory=dict)


class PanelHarmonizer:
    """
    Builds the longitudinal measurement panel from instrument tables.

    Attributes:
        design (StudyDesign): Declared instruments, outcomes, covariates and fixes

    Example:
        >>> from wellbeing.design import StudyDesign
        >>> from wellbeing.harmonizer import PanelHarmonizer
        >>>
        >>> harmonizer = PanelHarmonizer(StudyDesign.default())
        >>> panel = harmonizer.harmonize(
        ...     {'k6': k6_table, 'panas': panas_table},
        ...     arm_table=arms,
        ...     covariate_table=demographics,
        ... )
        >>> panel.data.head()
    """

    def __init__(self, design: StudyDesign):
        self.design = design

    # ------------------------------------------------------------------
    # Timepoints and identifiers
    # ------------------------------------------------------------------

    def _timepoint_lookup(self, instrument: Instrument) -> Dict[str, str]:
        lookup = {normalize_label(tp): tp for tp in self.design.timepoints}
        for alias, canonical in instrument.timepoint_aliases.items():
            if canonical not in self.design.timepoints:
                raise HarmonizationError(
                    f"{instrument.name}: alias '{alias}' maps to unknown timepoint '{canonical}'"
                )
            lookup[normalize_label(alias)] = canonical
        return lookup

    def normalize_timepoints(self, instrument: Instrument, labels: pd.Series) -> pd.Series:
        """
        Map instrument-specific timepoint spellings onto canonical labels.

        Raises:
            HarmonizationError: If any label has no mapping
        """
        lookup = self._timepoint_lookup(instrument)
        canonical = labels.map(lambda v: lookup.get(normalize_label(v)) if pd.notna(v) else None)

        unmapped = sorted({str(v) for v, c in zip(labels, canonical) if c is None})
        if unmapped:
            raise HarmonizationError(
                f"{instrument.name}: unmapped timepoint labels {unmapped}. "
                f"Add them to the instrument's timepoint_aliases."
            )
        return canonical

    @staticmethod
    def normalize_ids(ids: pd.Series) -> pd.Series:
        return ids.astype(str).str.strip()

    # ------------------------------------------------------------------
    # Instrument tables
    # ------------------------------------------------------------------

    def clean_instrument(self, name: str, table: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Normalize timepoints and apply declared fixes to one instrument table.

        The returned table keeps the input column layout, so it can be passed
        through the harmonizer again with no further changes.

        Returns:
            Tuple of (cleaned_table, adjustment_log)
        """
        instrument = self.design.instruments[name]

        required = [instrument.participant_column, instrument.timepoint_column]
        missing = [c for c in required if c not in table.columns]
        if missing:
            raise HarmonizationError(f"{name}: missing key columns {missing}")

        cleaned = table.copy()
        cleaned[instrument.participant_column] = self.normalize_ids(cleaned[instrument.participant_column])
        cleaned[instrument.timepoint_column] = self.normalize_timepoints(
            instrument, cleaned[instrument.timepoint_column]
        )

        item_columns = [c for c in instrument.items if c in cleaned.columns]
        for col in item_columns:
            numeric = pd.to_numeric(cleaned[col], errors='coerce')
            n_coerced = int((numeric.isna() & cleaned[col].notna()).sum())
            if n_coerced:
                logger.warning(f"  {name}.{col}: {n_coerced} non-numeric responses set to missing")
            cleaned[col] = numeric.astype(float)

        duplicated = cleaned.duplicated(subset=required, keep=False)
        if duplicated.any():
            keys = cleaned.loc[duplicated, required].drop_duplicates().values.tolist()
            raise HarmonizationError(f"{name}: duplicate (participant, timepoint) rows: {keys[:5]}")

        cleaned, adjustments = apply_fixes(cleaned, name, item_columns, self.design.fixes)
        return cleaned, adjustments

    def score_outcome(
        self,
        outcome: OutcomeDefinition,
        cleaned: pd.DataFrame
    ) -> pd.DataFrame:
        """
        Compute the composite score of one outcome from a cleaned table.

        The composite is the mean of the available items; it is missing only
        when every item is missing.

        Returns:
            pd.DataFrame: participant_id, timepoint, outcome, value
        """
        instrument = self.design.instruments[outcome.instrument]
        item_names = {raw: item for raw, item in instrument.items.items() if raw in cleaned.columns}
        items = cleaned[list(item_names)].rename(columns=item_names)

        absent = [item for item in outcome.items if item not in items.columns]
        if absent:
            logger.warning(f"  {outcome.name}: items not in export, treated as missing: {absent}")
        items = items.reindex(columns=list(outcome.items))

        if outcome.reverse_items:
            low, high = instrument.response_range
            rev = list(outcome.reverse_items)
            items[rev] = (low + high) - items[rev]

        return pd.DataFrame({
            PID: cleaned[instrument.participant_column].values,
            TIMEPOINT: cleaned[instrument.timepoint_column].values,
            OUTCOME: outcome.name,
            VALUE: items.mean(axis=1, skipna=True).values,
        })

    # ------------------------------------------------------------------
    # Arm and covariates
    # ------------------------------------------------------------------

    def resolve_arms(self, arm_table: pd.DataFrame) -> pd.Series:
        """
        Participant -> arm from the authoritative assignment table.

        Unrecognized arm labels resolve to missing; conflicting assignments
        for one participant are fatal.
        """
        cols = [self.design.arm_participant_column, self.design.arm_column]
        missing = [c for c in cols if c not in arm_table.columns]
        if missing:
            raise HarmonizationError(f"Arm table is missing columns {missing}")

        lookup = self.design.arm_lookup()
        arms = pd.DataFrame({
            PID: self.normalize_ids(arm_table[cols[0]]),
            ARM: arm_table[cols[1]].map(lambda v: lookup.get(normalize_label(v)) if pd.notna(v) else None),
        }).dropna(subset=[ARM]).drop_duplicates()

        conflicting = arms[PID][arms[PID].duplicated()].unique()
        if len(conflicting) > 0:
            raise HarmonizationError(
                f"Participants with conflicting arm assignments: {sorted(conflicting)[:5]}"
            )
        return arms.set_index(PID)[ARM]

    def encode_covariates(self, covariate_table: Optional[pd.DataFrame]) -> pd.DataFrame:
        """Participant-indexed covariate levels, validated against declarations."""
        names = list(self.design.covariates)
        if covariate_table is None or not names:
            return pd.DataFrame(columns=names)

        pid_col = self.design.covariate_participant_column
        if pid_col not in covariate_table.columns:
            raise HarmonizationError(f"Covariate table is missing column '{pid_col}'")

        table = covariate_table.copy()
        table.index = self.normalize_ids(table[pid_col])
        if table.index.duplicated().any():
            dup = sorted(table.index[table.index.duplicated()].unique())[:5]
            raise HarmonizationError(f"Duplicate participants in covariate table: {dup}")

        encoded = {}
        for name, covariate in self.design.covariates.items():
            if covariate.column not in table.columns:
                raise HarmonizationError(
                    f"Covariate '{name}': column '{covariate.column}' not in covariate table"
                )
            raw = table[covariate.column]
            levels = covariate.encode(raw)
            n_unmapped = int((levels.isna() & raw.notna()).sum())
            if n_unmapped:
                unknown = sorted({str(v) for v in raw[levels.isna() & raw.notna()]})
                logger.warning(
                    f"  Covariate '{name}': {n_unmapped} undeclared values set to missing {unknown}"
                )
            encoded[name] = levels
        return pd.DataFrame(encoded, index=table.index)

    # ------------------------------------------------------------------
    # Panel
    # ------------------------------------------------------------------

    def harmonize(
        self,
        tables: Dict[str, pd.DataFrame],
        arm_table: pd.DataFrame,
        covariate_table: Optional[pd.DataFrame] = None
    ) -> HarmonizedPanel:
        """
        Build the long-format measurement panel.

        Args:
            tables: Instrument name -> wide table
            arm_table: Participant -> arm assignment
            covariate_table: Participant -> demographic covariates

        Returns:
            HarmonizedPanel

        Raises:
            HarmonizationError: On unmapped timepoints, duplicate keys or
                missing key columns
        """
        logger.info(f"Harmonizing {len(tables)} instrument tables...")

        unknown = [name for name in tables if name not in self.design.instruments]
        if unknown:
            raise HarmonizationError(f"Undeclared instruments: {unknown}")

        cleaned_tables = {}
        adjustment_logs = []
        scored = []

        for name in self.design.instruments:
            if name not in tables:
                continue
            cleaned, adjustments = self.clean_instrument(name, tables[name])
            cleaned_tables[name] = cleaned
            if len(adjustments) > 0:
                adjustment_logs.append(adjustments)

            for outcome in self.design.outcomes.values():
                if outcome.instrument == name:
                    scored.append(self.score_outcome(outcome, cleaned))
            logger.info(f"  {name}: {len(cleaned)} rows")

        missing_outcomes = [
            o.name for o in self.design.outcomes.values() if o.instrument not in tables
        ]
        if missing_outcomes:
            logger.warning(f"  No table supplied for outcomes: {missing_outcomes}")

        if scored:
            long = pd.concat(scored, ignore_index=True)
        else:
            long = pd.DataFrame(columns=[PID, TIMEPOINT, OUTCOME, VALUE])

        # Arm assignment
        arms = self.resolve_arms(arm_table)
        long[ARM] = long[PID].map(arms)
        unresolved = sorted(long.loc[long[ARM].isna(), PID].unique())
        exclusions = []
        for pid in unresolved:
            err = HarmonizationError(f"No arm assignment for participant '{pid}'", participant_id=pid)
            logger.warning(f"  Dropping participant: {err}")
            exclusions.append({PID: pid, 'reason': str(err)})
        long = long[long[ARM].notna()].copy()

        # Covariates
        covariates = self.encode_covariates(covariate_table)
        for name in self.design.covariates:
            covariate = self.design.covariates[name]
            if name in covariates.columns:
                levels = long[PID].map(covariates[name].astype(object))
            else:
                levels = pd.Series(np.nan, index=long.index)
            long[name] = pd.Categorical(levels, categories=covariate.level_order)
        if covariate_table is not None and self.design.covariates:
            absent = sorted(set(long[PID]) - set(covariates.index))
            if absent:
                logger.warning(f"  {len(absent)} participants have no covariate record")

        long[TIMEPOINT] = pd.Categorical(long[TIMEPOINT], categories=list(self.design.timepoints), ordered=True)
        long[ARM] = pd.Categorical(long[ARM], categories=list(self.design.arms))
        long[VALUE] = long[VALUE].astype(float)

        outcome_order = {name: i for i, name in enumerate(self.design.outcomes)}
        long['_outcome_order'] = long[OUTCOME].map(outcome_order)
        long = (
            long.sort_values([PID, TIMEPOINT, '_outcome_order'], kind='mergesort')
            .drop(columns='_outcome_order')
            .reset_index(drop=True)
        )
        long = long[[PID, TIMEPOINT, ARM, OUTCOME, VALUE] + list(self.design.covariates)]

        logger.info(
            f"  Panel: {len(long)} rows, {long[PID].nunique()} participants, "
            f"{long[OUTCOME].nunique()} outcomes"
        )

        adjustments = (
            pd.concat(adjustment_logs, ignore_index=True)
            if adjustment_logs else pd.DataFrame(columns=ADJUSTMENT_LOG_COLUMNS)
        )
        return HarmonizedPanel(
            data=long,
            exclusions=pd.DataFrame(exclusions, columns=EXCLUSION_COLUMNS),
            adjustments=adjustments,
            cleaned_tables=cleaned_tables,
        )
