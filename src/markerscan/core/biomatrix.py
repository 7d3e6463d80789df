"""
Expression matrix container that keeps probe and sample identifiers aligned.

A BioMatrix couples the numeric intensities of a microarray experiment with
the identifiers of both axes, the phenotype/covariate table of its samples and
a per-value provenance flag matrix.

Biological Context:
    Microarray expression data is a probes x samples matrix of intensities.
    Every downstream step (normalization, model fitting, enrichment) refers
    back to probe identifiers and to sample phenotypes, so the identifiers
    must stay attached to the numbers. Reordering the columns of the data
    without reordering the phenotype table silently swaps group labels.

Engineering Design:
    - Immutable by convention: transforms return new instances
    - Constructor validates shapes and that metadata rows match sample_ids
    - ``with_data`` is the only way to swap values, and it keeps both axes

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from markerscan.core.biomatrix import BioMatrix
    >>> matrix = BioMatrix.from_frame(
    ...     pd.DataFrame({"GSM1": [7.1, 3.2], "GSM2": [7.4, 3.0]},
    ...                  index=["1007_s_at", "1053_at"]),
    ... )
    >>> matrix.shape
    (2, 2)
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from markerscan.core.quality import QualityFlag

__all__ = ['BioMatrix']


class BioMatrix:
    """
    Features x samples matrix with identifiers, sample metadata and flags.

    Attributes:
        data: Float matrix (n_features, n_samples)
        feature_ids: Row identifiers (probe set ids, gene ids)
        sample_ids: Column identifiers (GSM accessions, array names)
        sample_metadata: Phenotype/covariate table indexed by sample_ids
        quality_flags: Integer QualityFlag matrix, same shape as data

    Shape Invariants:
        - data.shape == (len(feature_ids), len(sample_ids))
        - quality_flags.shape == data.shape
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
        quality_flags: Optional[np.ndarray] = None,
    ):
        """
        Validate and store matrix components.

        Args:
            data: Numeric matrix (features x samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers
            sample_metadata: Table indexed by sample_ids. Empty table if None.
            quality_flags: Flag matrix. All ORIGINAL (with MISSING_ORIGINAL
                where data is NaN) if None.

        Raises:
            TypeError: If components have the wrong type
            ValueError: If shapes or indices disagree
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape
        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        if quality_flags is None:
            quality_flags = np.full(data.shape, int(QualityFlag.ORIGINAL), dtype=np.int32)
            quality_flags[np.isnan(data)] |= int(QualityFlag.MISSING_ORIGINAL)
        if quality_flags.shape != data.shape:
            raise ValueError(
                f"quality_flags shape {quality_flags.shape} must match data shape {data.shape}"
            )

        self._data = data.astype(np.float64, copy=False)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._quality_flags = quality_flags

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> BioMatrix:
        """Build from a DataFrame with features as rows and samples as columns."""
        sample_ids = pd.Index(frame.columns.astype(str))
        if sample_metadata is not None:
            sample_metadata = sample_metadata.copy()
            sample_metadata.index = sample_metadata.index.astype(str)
            sample_metadata = sample_metadata.loc[sample_ids]
        return cls(
            data=frame.to_numpy(dtype=np.float64),
            feature_ids=pd.Index(frame.index.astype(str)),
            sample_ids=sample_ids,
            sample_metadata=sample_metadata,
        )

    @property
    def data(self) -> np.ndarray:
        """Expression matrix (features x samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def quality_flags(self) -> np.ndarray:
        return self._quality_flags

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def with_data(
        self,
        data: np.ndarray,
        quality_flags: Optional[np.ndarray] = None,
    ) -> BioMatrix:
        """
        Return a new matrix with replaced values and the same identifiers.

        Raises:
            ValueError: If the new data does not have the same shape
        """
        if data.shape != self.shape:
            raise ValueError(f"New data shape {data.shape} differs from {self.shape}")
        return BioMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags.copy() if quality_flags is None else quality_flags,
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> BioMatrix:
        """Attach a phenotype table, reordered to match sample_ids."""
        missing = self._sample_ids.difference(sample_metadata.index)
        if len(missing) > 0:
            raise ValueError(
                f"{len(missing)} samples have no phenotype row, e.g. {list(missing[:3])}"
            )
        return BioMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata.loc[self._sample_ids],
            quality_flags=self._quality_flags,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> BioMatrix:
        """Subset columns by boolean mask, keeping metadata rows in step."""
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )
        kept = self._sample_ids[mask]
        return BioMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=kept,
            sample_metadata=self._sample_metadata.loc[kept],
            quality_flags=self._quality_flags[:, mask],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> BioMatrix:
        """Subset rows by boolean mask."""
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )
        return BioMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags[mask, :],
        )

    def to_frame(self) -> pd.DataFrame:
        """Expression values as a DataFrame (features x samples)."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def count_flag(self, flag: QualityFlag) -> int:
        """Number of values carrying ``flag``."""
        return int(np.sum((self._quality_flags & int(flag)) != 0))

    def copy(self) -> BioMatrix:
        return BioMatrix(
            data=self._data.copy(),
            feature_ids=self._feature_ids.copy(),
            sample_ids=self._sample_ids.copy(),
            sample_metadata=self._sample_metadata.copy(),
            quality_flags=self._quality_flags.copy(),
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"BioMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"BioMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )
