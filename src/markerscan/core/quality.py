"""
Per-value provenance flags for expression matrices.

Each value of a BioMatrix carries an integer flag recording what happened to it
between loading and testing. This answers questions such as "which intensities
were missing on the array?" or "which values were filled in after quantile
normalization?" without keeping every intermediate matrix around.

Flags combine with ``|`` and are checked with ``&``:

    >>> from markerscan.core.quality import QualityFlag
    >>> flag = QualityFlag.MISSING_ORIGINAL | QualityFlag.IMPUTED
    >>> bool(flag & QualityFlag.IMPUTED)
    True
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['QualityFlag']


class QualityFlag(IntFlag):
    """
    Bitwise flags for per-value provenance in expression matrices.

    Attributes:
        ORIGINAL: Value as read from the input file (0)
        MISSING_ORIGINAL: Value was NaN in the input (1)
        IMPUTED: Value was filled in by a missing-value policy (2)
        QUANTILE_NORMALIZED: Value was replaced by a reference quantile (4)
        LOG_TRANSFORMED: Value is on the log2 scale (8)
        NONPOSITIVE: Intensity was <= 0 before log transform and became NaN (16)
    """

    ORIGINAL = 0
    MISSING_ORIGINAL = 1
    IMPUTED = 2
    QUANTILE_NORMALIZED = 4
    LOG_TRANSFORMED = 8
    NONPOSITIVE = 16

    @classmethod
    def describe(cls, flag: int) -> str:
        """Readable list of set flags, e.g. ``"MISSING_ORIGINAL|IMPUTED"``."""
        if flag == 0:
            return cls.ORIGINAL.name
        names = [member.name for member in cls if member.value and flag & member.value]
        return "|".join(names)
