# -*- coding: utf-8 -*-
"""Data Quality Fixes

Named, auditable corrections applied to instrument tables before scoring.

Each fix is idempotent: every value it writes is already a valid response, so
applying the same fix to cleaned data changes nothing and logs nothing.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

ADJUSTMENT_LOG_COLUMNS = [
    'fix', 'instrument', 'row', 'item', 'original_value', 'new_value'
]


@dataclass(frozen=True)
class DataFix:
    """Base declaration shared by all fixes."""

    name: str
    instrument: str
    items: Optional[Tuple[str, ...]] = None

    def target_columns(self, table: pd.DataFrame, item_columns: Sequence[str]) -> List[str]:
        columns = list(item_columns) if self.items is None else list(self.items)
        return [c for c in columns if c in table.columns]

    def apply(self, table: pd.DataFrame, item_columns: Sequence[str]) -> Tuple[pd.DataFrame, pd.DataFrame]:
        raise NotImplementedError


@dataclass(frozen=True)
class RecodeFix(DataFix):
    """
    Replace specific response codes with valid categories.

    Used for known export errors, e.g. a Likert item exported on a 0-5 scale
    where 0 should have been 1. Targets must not themselves be recoded again.
    """

    mapping: Mapping[float, float] = None

    def __post_init__(self):
        if not self.mapping:
            raise ValueError(f"RecodeFix '{self.name}' needs a non-empty mapping")
        chained = set(self.mapping) & set(self.mapping.values())
        if chained:
            raise ValueError(
                f"RecodeFix '{self.name}' is not idempotent: {sorted(chained)} "
                "are both sources and targets"
            )

    def apply(self, table, item_columns):
        fixed = table.copy()
        adjustments = []

        for item in self.target_columns(fixed, item_columns):
            mask = fixed[item].isin(list(self.mapping))
            if not mask.any():
                continue
            for idx in fixed.index[mask]:
                original = fixed.at[idx, item]
                adjustments.append({
                    'fix': self.name,
                    'instrument': self.instrument,
                    'row': idx,
                    'item': item,
                    'original_value': original,
                    'new_value': self.mapping[original],
                })
            fixed.loc[mask, item] = fixed.loc[mask, item].map(self.mapping)

        return fixed, pd.DataFrame(adjustments, columns=ADJUSTMENT_LOG_COLUMNS)


@dataclass(frozen=True)
class ClampFix(DataFix):
    """Clamp item values outside [low, high] to the nearest boundary."""

    low: float = None
    high: float = None

    def __post_init__(self):
        if self.low is None or self.high is None or self.low > self.high:
            raise ValueError(f"ClampFix '{self.name}' needs low <= high")

    def apply(self, table, item_columns):
        fixed = table.copy()
        adjustments = []

        for item in self.target_columns(fixed, item_columns):
            mask = (fixed[item] < self.low) | (fixed[item] > self.high)
            if not mask.any():
                continue
            for idx in fixed.index[mask]:
                original = fixed.at[idx, item]
                adjustments.append({
                    'fix': self.name,
                    'instrument': self.instrument,
                    'row': idx,
                    'item': item,
                    'original_value': original,
                    'new_value': float(np.clip(original, self.low, self.high)),
                })
            fixed[item] = fixed[item].clip(lower=self.low, upper=self.high)

        return fixed, pd.DataFrame(adjustments, columns=ADJUSTMENT_LOG_COLUMNS)


def fix_from_dict(spec: Dict[str, Any]) -> DataFix:
    """Build a fix from its declaration, e.g. loaded from the design file."""
    kind = spec.get('type')
    items = tuple(spec['items']) if spec.get('items') is not None else None
    if kind == 'recode':
        mapping = {float(k): float(v) for k, v in spec['mapping'].items()}
        return RecodeFix(name=spec['name'], instrument=spec['instrument'], items=items, mapping=mapping)
    if kind == 'clamp':
        return ClampFix(
            name=spec['name'],
            instrument=spec['instrument'],
            items=items,
            low=float(spec['low']),
            high=float(spec['high']),
        )
    raise ValueError(f"Unknown fix type: {kind!r}")


def apply_fixes(
    table: pd.DataFrame,
    instrument: str,
    item_columns: Sequence[str],
    fixes: Sequence[DataFix],
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Apply every fix declared for `instrument`, in declaration order.

    Returns:
        Tuple of (fixed_table, adjustment_log)
    """
    fixed = table
    logs = []
    for fix in fixes:
        if fix.instrument != instrument:
            continue
        fixed, log = fix.apply(fixed, item_columns)
        if len(log) > 0:
            logger.info(f"  Fix '{fix.name}' changed {len(log)} values in {instrument}")
            logs.append(log)

    if logs:
        return fixed, pd.concat(logs, ignore_index=True)
    return fixed, pd.DataFrame(columns=ADJUSTMENT_LOG_COLUMNS)
