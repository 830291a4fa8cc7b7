"""
Data Processor Module

This module handles raw telemetry rows: loading them from CSV files or DataFrames,
coercing loosely-typed cell values, and resolving which column plays which role
(user id, timestamp, revenue, level, duration) when games name their columns
differently.
"""

import math
import numbers
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .models import ColumnMapping


# A raw cell is one of Number | String | Bool | Null
Scalar = Union[bool, int, float, str, None]
RawRow = Mapping[str, Any]


# ============================================================================
# Scalar coercion
# ============================================================================

def utc_now() -> pd.Timestamp:
    """Current time as a timezone-naive UTC timestamp."""
    return pd.Timestamp.now(tz="UTC").tz_localize(None)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT


def to_number(value: Any) -> Optional[float]:
    """
    Coerce a raw cell to a finite float.

    Booleans map to 1/0, numeric strings are parsed, anything else
    (blank strings, garbage, NaN, infinities) becomes None.
    """
    if _is_missing(value):
        return None
    if isinstance(value, (bool, np.bool_)):
        return 1.0 if value else 0.0
    if isinstance(value, numbers.Number):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_text(value: Any) -> Optional[str]:
    """Coerce a raw cell to a string; None/NaN stay None."""
    if _is_missing(value):
        return None
    if isinstance(value, (bool, np.bool_)):
        return "true" if value else "false"
    if isinstance(value, numbers.Integral):
        return str(int(value))
    if isinstance(value, numbers.Real):
        number = float(value)
        if math.isnan(number):
            return None
        if number.is_integer():
            return str(int(number))
        return str(number)
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    return str(value)


def to_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """
    Coerce a raw cell to a timezone-naive UTC timestamp.

    Numbers are read as epoch milliseconds; strings and datetime objects
    are parsed by pandas. Unparseable values become None.
    """
    if _is_missing(value) or isinstance(value, (bool, np.bool_)):
        return None
    try:
        if isinstance(value, numbers.Real):
            if not math.isfinite(float(value)):
                return None
            ts = pd.Timestamp(float(value), unit="ms")
        elif isinstance(value, (str, pd.Timestamp, datetime, date, np.datetime64)):
            ts = pd.to_datetime(value, utc=True, errors="coerce")
        else:
            return None
    except (ValueError, OverflowError, TypeError):
        return None
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


# ============================================================================
# Column resolution
# ============================================================================

class ColumnResolver:
    """
    Resolves canonical column roles to actual column names.

    Resolution order:
    1. Declared column mappings (canonical name compared case-insensitively)
    2. Role table built from the mappings, with default aliases filled in
       only where a name is not already claimed
    3. Case-insensitive literal match against the first row's keys
    """

    DEFAULT_ALIASES: Dict[str, List[str]] = {
        "user_id": ["userid", "user", "player_id", "playerid", "id"],
        "timestamp": ["date", "datetime", "time", "created_at", "event_time"],
        "revenue": ["amount", "price", "purchase_amount", "spend", "value"],
        "level": ["lvl", "stage", "wave", "floor"],
        "duration": ["session_length", "time_played", "playtime", "session_duration"],
    }

    def __init__(self, column_mappings: Iterable[Union[ColumnMapping, Mapping[str, str]]] = (), columns: Iterable[str] = ()):
        """
        Parameters:
        -----------
        column_mappings : iterable of ColumnMapping or dict
            Declared mappings from dataset columns to canonical roles
        columns : iterable of str
            Keys of the first raw row, in order
        """
        self.mappings = [
            m if isinstance(m, ColumnMapping) else ColumnMapping.model_validate(m)
            for m in column_mappings
        ]
        self.columns = list(columns)

        self._roles: Dict[str, str] = {}
        for mapping in self.mappings:
            canonical = mapping.canonical_name.lower()
            self._roles[mapping.original_name.lower()] = canonical
            self._roles[canonical] = canonical
        for canonical, aliases in self.DEFAULT_ALIASES.items():
            for alias in [canonical] + aliases:
                self._roles.setdefault(alias, canonical)

        self._cache: Dict[str, Optional[str]] = {}

    def role_of(self, column: str) -> Optional[str]:
        """Canonical role a column name maps to, if any."""
        return self._roles.get(column.lower())

    def resolve(self, canonical: str) -> Optional[str]:
        """Return the dataset column that plays the given canonical role, or None."""
        if canonical in self._cache:
            return self._cache[canonical]

        target = canonical.lower()
        found: Optional[str] = None
        for mapping in self.mappings:
            if mapping.canonical_name.lower() == target:
                found = mapping.original_name
                break

        if found is None:
            for column in self.columns:
                if self.role_of(column) == target or column.lower() == target:
                    found = column
                    break

        self._cache[canonical] = found
        return found


# ============================================================================
# Dataset container
# ============================================================================

@dataclass(frozen=True)
class GameDataset:
    """Immutable snapshot of raw telemetry rows plus declared column mappings"""
    rows: Sequence[RawRow]
    column_mappings: Sequence[ColumnMapping] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, "rows", tuple(self.rows))
        object.__setattr__(self, "column_mappings", tuple(
            m if isinstance(m, ColumnMapping) else ColumnMapping.model_validate(m)
            for m in self.column_mappings
        ))

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def columns(self) -> List[str]:
        """Keys of the first row, which drive column resolution."""
        return list(self.rows[0].keys()) if self.rows else []

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        column_mappings: Iterable[Union[ColumnMapping, Mapping[str, str]]] = (),
        dataset_id: Optional[str] = None,
    ) -> "GameDataset":
        """
        Build a dataset from a DataFrame (one row per event).

        NaN cells become None so they coerce like absent values.
        """
        clean = df.astype(object).where(pd.notna(df), None)
        rows = clean.to_dict(orient="records")
        kwargs = {"id": dataset_id} if dataset_id else {}
        return cls(rows=rows, column_mappings=tuple(column_mappings), **kwargs)

    @classmethod
    def from_csv(
        cls,
        path: Union[str, Path],
        column_mappings: Iterable[Union[ColumnMapping, Mapping[str, str]]] = (),
        dataset_id: Optional[str] = None,
    ) -> "GameDataset":
        """
        Load a dataset from a CSV file.

        Raises:
        -------
        FileNotFoundError if the CSV file does not exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Dataset not found at {path}")

        df = pd.read_csv(path)
        print(f"  ✅ Loaded {len(df):,} rows from {path.name}")
        return cls.from_dataframe(df, column_mappings, dataset_id=dataset_id or path.stem)
