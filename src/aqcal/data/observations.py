# src/aqcal/data/observations.py
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from aqcal.model.errors import InvalidSpecification

REQUIRED_COLUMNS = ("log_satellite", "log_ground_pm25", "country", "super_region")


class ObservationStore:
    """
    Immutable table of ground/satellite pairings.

    The frame is copied on the way in and on the way out, so callers never
    hold a reference to the internal data. Rows whose target is NaN are
    prediction targets: they carry no likelihood term but still receive a
    posterior predictive marginal. The only "mutation" is `mask_targets`,
    which returns a new store.
    """

    def __init__(self, frame: pd.DataFrame, target: str = "log_ground_pm25"):
        if not isinstance(frame, pd.DataFrame):
            raise TypeError(f"frame must be pandas.DataFrame, got {type(frame)}")
        if target not in frame.columns:
            raise InvalidSpecification(f"target column '{target}' not found in observations")

        df = frame.reset_index(drop=True).copy()
        df[target] = pd.to_numeric(df[target], errors="raise").astype(np.float64)
        self._frame = df
        self._target = target

    # ----------------------------
    # Constructors
    # ----------------------------
    @classmethod
    def from_frame(cls, frame: pd.DataFrame, target: str = "log_ground_pm25",
                   required: Sequence[str] = REQUIRED_COLUMNS) -> "ObservationStore":
        """Build a store, checking the loader contract columns are present."""
        missing = [c for c in required if c not in frame.columns]
        if missing:
            raise InvalidSpecification(f"observations are missing required columns: {missing}")
        return cls(frame, target=target)

    # ----------------------------
    # Read-only accessors
    # ----------------------------
    @property
    def target_name(self) -> str:
        return self._target

    @property
    def schema(self) -> tuple:
        return tuple(self._frame.columns)

    @property
    def n_rows(self) -> int:
        return int(self._frame.shape[0])

    def __len__(self) -> int:
        return self.n_rows

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def target(self) -> np.ndarray:
        return self._frame[self._target].to_numpy(dtype=np.float64, copy=True)

    @property
    def observed_mask(self) -> np.ndarray:
        return ~np.isnan(self._frame[self._target].to_numpy(dtype=np.float64))

    @property
    def n_observed(self) -> int:
        return int(self.observed_mask.sum())

    def has_column(self, name: str) -> bool:
        return name in self._frame.columns

    def column(self, name: str) -> np.ndarray:
        if name not in self._frame.columns:
            raise KeyError(f"column '{name}' not found in observations")
        return self._frame[name].to_numpy(copy=True)

    def covariate(self, name: str) -> np.ndarray:
        """Numeric column as float64; NaNs are rejected since they have no design value."""
        values = pd.to_numeric(self._frame[name], errors="raise").to_numpy(dtype=np.float64)
        if np.isnan(values).any():
            raise InvalidSpecification(f"covariate '{name}' contains NaNs")
        return values

    def levels(self, key: str) -> list:
        """Sorted unique levels of a grouping column."""
        if key not in self._frame.columns:
            raise KeyError(f"grouping key '{key}' not found in observations")
        return sorted(pd.unique(self._frame[key]).tolist(), key=str)

    # ----------------------------
    # Views (always new stores)
    # ----------------------------
    def mask_targets(self, mask) -> "ObservationStore":
        """Return a copy with the targets of `mask` rows set to missing."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_rows,):
            raise ValueError(f"mask must have shape ({self.n_rows},), got {mask.shape}")
        df = self._frame.copy()
        df.loc[mask, self._target] = np.nan
        return ObservationStore(df, target=self._target)

    def rows_in(self, key: str, values: Iterable) -> np.ndarray:
        values = list(values)
        return self._frame[key].isin(values).to_numpy()

    def hold_out(self, key: str, values: Iterable) -> "ObservationStore":
        """Mask the target of every row whose `key` is one of `values`."""
        return self.mask_targets(self.rows_in(key, values))

    def subset(self, key: str, values: Iterable) -> "ObservationStore":
        """Keep only rows whose `key` is one of `values`."""
        keep = self.rows_in(key, values)
        return ObservationStore(self._frame.loc[keep], target=self._target)

    def __repr__(self) -> str:
        return (f"ObservationStore(n_rows={self.n_rows}, observed={self.n_observed}, "
                f"target='{self._target}')")
