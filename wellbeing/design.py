# -*- coding: utf-8 -*-
"""
Study Design Declarations

Typed declarations for everything the pipeline needs to know about the study:
instruments and their column names, outcome scoring keys, demographic
covariates with fixed level encodings, analysis phases, and data-quality
fixes. Declarations are validated once, when the design is built, so the
modeling code never has to discover levels or columns on its own.

Example:
    >>> from wellbeing.design import StudyDesign
    >>> design = StudyDesign.default()
    >>> design.outcome_names
    ['distress', 'positive_affect', 'negative_affect', 'flourishing', 'loneliness']
    >>> design = StudyDesign.from_file('design.yaml')
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
import yaml

from . import config
from .data_fixes import DataFix, fix_from_dict


def normalize_label(value: Any) -> str:
    """Lower-case, strip and collapse whitespace for label matching."""
    return ' '.join(str(value).strip().lower().split())


@dataclass(frozen=True)
class Instrument:
    """One questionnaire export: its key columns and item columns."""

    name: str
    items: Mapping[str, str]
    participant_column: str = 'participant_id'
    timepoint_column: str = 'timepoint'
    response_range: Optional[Tuple[float, float]] = None
    timepoint_aliases: Mapping[str, str] = field(default_factory=dict)

    @property
    def item_names(self) -> List[str]:
        return list(self.items.values())


@dataclass(frozen=True)
class OutcomeDefinition:
    """
    Composite score of one outcome.

    The score is the mean of the non-missing items. Reverse-keyed items are
    rescored as (min + max) - x using the instrument's response range first.
    """

    name: str
    instrument: str
    items: Tuple[str, ...]
    reverse_items: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Covariate:
    """
    Demographic covariate with a fixed level encoding.

    Attributes:
        name: Column name used in the panel and in model formulas
        column: Column name in the covariate table
        levels: Normalized raw value -> level label. The first level label
            in declaration order is the reference (coded -0.5 under
            contrast coding).
        coding: 'contrast' (binary, -0.5/+0.5) or 'factor' (categorical)
    """

    name: str
    column: str
    levels: Mapping[str, str]
    coding: str = 'factor'

    def __post_init__(self):
        if self.coding not in ('contrast', 'factor'):
            raise ValueError(f"Covariate '{self.name}': unknown coding '{self.coding}'")
        if self.coding == 'contrast' and len(self.level_order) != 2:
            raise ValueError(
                f"Covariate '{self.name}': contrast coding needs exactly 2 levels, "
                f"found {self.level_order}"
            )

    @property
    def level_order(self) -> List[str]:
        order = []
        for level in self.levels.values():
            if level not in order:
                order.append(level)
        return order

    def contrast_codes(self) -> Dict[str, float]:
        low, high = self.level_order
        return {low: -0.5, high: 0.5}

    def encode(self, values: pd.Series) -> pd.Series:
        """Map raw values onto declared levels; unmapped values become NaN."""
        lookup = {normalize_label(raw): level for raw, level in self.levels.items()}
        mapped = values.map(lambda v: lookup.get(normalize_label(v)) if pd.notna(v) else None)
        return pd.Series(
            pd.Categorical(mapped, categories=self.level_order),
            index=values.index,
            name=self.name,
        )


@dataclass(frozen=True)
class PhaseSpec:
    """Named study phases, each a fixed set of canonical timepoints."""

    phases: Mapping[str, Tuple[str, ...]]

    @property
    def names(self) -> List[str]:
        return list(self.phases)

    def phase_of(self) -> Dict[str, str]:
        return {tp: phase for phase, tps in self.phases.items() for tp in tps}

    def timepoints(self, order: Sequence[str]) -> List[str]:
        """All included timepoints, in canonical study order."""
        included = set(self.phase_of())
        return [tp for tp in order if tp in included]


@dataclass(frozen=True)
class StudyDesign:
    """Complete declaration of the study consumed by the pipeline."""

    timepoints: Tuple[str, ...]
    baseline: str
    arms: Tuple[str, ...]
    instruments: Mapping[str, Instrument]
    outcomes: Mapping[str, OutcomeDefinition]
    covariates: Mapping[str, Covariate] = field(default_factory=dict)
    phases: PhaseSpec = field(default_factory=lambda: PhaseSpec({}))
    fixes: Tuple[DataFix, ...] = ()
    arm_participant_column: str = 'participant_id'
    arm_column: str = 'arm'
    arm_levels: Mapping[str, str] = field(default_factory=dict)
    covariate_participant_column: str = 'participant_id'

    def __post_init__(self):
        if self.baseline not in self.timepoints:
            raise ValueError(f"Baseline '{self.baseline}' is not a declared timepoint")
        if len(self.arms) != 2:
            raise ValueError(f"Expected two arms, found {list(self.arms)}")
        for outcome in self.outcomes.values():
            instrument = self.instruments.get(outcome.instrument)
            if instrument is None:
                raise ValueError(
                    f"Outcome '{outcome.name}' uses undeclared instrument '{outcome.instrument}'"
                )
            unknown = set(outcome.items) - set(instrument.item_names)
            if unknown:
                raise ValueError(f"Outcome '{outcome.name}' uses undeclared items: {sorted(unknown)}")
            if not set(outcome.reverse_items) <= set(outcome.items):
                raise ValueError(f"Outcome '{outcome.name}': reverse items must be scored items")
            if outcome.reverse_items and instrument.response_range is None:
                raise ValueError(
                    f"Outcome '{outcome.name}' has reverse items but instrument "
                    f"'{instrument.name}' declares no response range"
                )
        for phase, tps in self.phases.phases.items():
            unknown = [tp for tp in tps if tp not in self.timepoints]
            if unknown:
                raise ValueError(f"Phase '{phase}' uses unknown timepoints: {unknown}")
            if self.baseline in tps:
                raise ValueError(f"Phase '{phase}' must not include the baseline")
        for fix in self.fixes:
            if fix.instrument not in self.instruments:
                raise ValueError(f"Fix '{fix.name}' targets undeclared instrument '{fix.instrument}'")

    @property
    def outcome_names(self) -> List[str]:
        return list(self.outcomes)

    @property
    def post_baseline_timepoints(self) -> List[str]:
        return [tp for tp in self.timepoints if tp != self.baseline]

    def arm_lookup(self) -> Dict[str, str]:
        lookup = {normalize_label(arm): arm for arm in self.arms}
        lookup.update({normalize_label(raw): arm for raw, arm in self.arm_levels.items()})
        return lookup

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> 'StudyDesign':
        """
        Build a design from a plain mapping (as loaded from YAML or JSON).

        Missing sections fall back to the defaults in `wellbeing.config`.
        """
        timepoints = tuple(spec.get('timepoints', config.TIMEPOINTS))
        shared_aliases = dict(spec.get('timepoint_aliases', config.DEFAULT_TIMEPOINT_ALIASES))

        instruments = {}
        for name, inst in spec.get('instruments', config.DEFAULT_INSTRUMENTS).items():
            aliases = dict(shared_aliases)
            aliases.update(inst.get('timepoint_aliases', {}))
            response_range = inst.get('response_range')
            instruments[name] = Instrument(
                name=name,
                items=dict(inst['items']),
                participant_column=inst.get('participant_column', config.PARTICIPANT_COLUMN),
                timepoint_column=inst.get('timepoint_column', config.TIMEPOINT_COLUMN),
                response_range=tuple(response_range) if response_range is not None else None,
                timepoint_aliases=aliases,
            )

        outcomes = {
            name: OutcomeDefinition(
                name=name,
                instrument=out['instrument'],
                items=tuple(out['items']),
                reverse_items=tuple(out.get('reverse_items', ())),
            )
            for name, out in spec.get('outcomes', config.DEFAULT_OUTCOMES).items()
        }

        covariates = {
            name: Covariate(
                name=name,
                column=cov.get('column', name),
                levels=dict(cov['levels']),
                coding=cov.get('coding', 'factor'),
            )
            for name, cov in spec.get('covariates', config.DEFAULT_COVARIATES).items()
        }

        phases = PhaseSpec({
            name: tuple(tps) for name, tps in spec.get('phases', config.DEFAULT_PHASES).items()
        })

        fixes = tuple(fix_from_dict(fix) for fix in spec.get('fixes', []))

        arm_spec = spec.get('arm_assignment', {})
        return cls(
            timepoints=timepoints,
            baseline=spec.get('baseline', config.BASELINE_TIMEPOINT),
            arms=tuple(spec.get('arms', config.ARMS)),
            instruments=instruments,
            outcomes=outcomes,
            covariates=covariates,
            phases=phases,
            fixes=fixes,
            arm_participant_column=arm_spec.get('participant_column', config.PARTICIPANT_COLUMN),
            arm_column=arm_spec.get('arm_column', config.ARM_COLUMN),
            arm_levels=dict(arm_spec.get('levels', {})),
            covariate_participant_column=spec.get(
                'covariate_participant_column', config.PARTICIPANT_COLUMN
            ),
        )

    @classmethod
    def from_file(cls, path: str) -> 'StudyDesign':
        """Load a design declaration from a .yaml/.yml or .json file."""
        ext = os.path.splitext(path)[1].lower()
        with open(path, 'r', encoding='utf-8') as f:
            if ext in ('.yaml', '.yml'):
                spec = yaml.safe_load(f) or {}
            elif ext == '.json':
                spec = json.load(f)
            else:
                raise ValueError(f"Unsupported design file type: {ext}")
        return cls.from_dict(spec)

    @classmethod
    def default(cls) -> 'StudyDesign':
        return cls.from_dict({})
