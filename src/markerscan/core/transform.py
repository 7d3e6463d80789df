"""
Base class for immutable matrix transformations.

Normalization steps are expressed as Transform subclasses: each takes a
BioMatrix and returns a new one, never touching its input. Parameters are kept
on the instance so that a chain of transforms can be logged and reproduced.

Examples:
    >>> from markerscan.stats.normalization import QuantileNormalize, Log2Transform
    >>> steps = [QuantileNormalize(), Log2Transform(pseudocount=0.0)]
    >>> " -> ".join(str(step) for step in steps)
    'QuantileNormalize(missing=propagate) -> Log2Transform(pseudocount=0.0)'
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from markerscan.core.biomatrix import BioMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for matrix transformations.

    Attributes:
        name: Human-readable transformation name
        params: Parameters used (JSON-serializable)
        timestamp: When this instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: BioMatrix) -> BioMatrix:
        """
        Return a transformed copy of ``matrix``.

        Raises:
            ValueError: If the transform cannot be applied (see validate())
        """

    def validate(self, matrix: BioMatrix) -> list[str]:
        """
        Check preconditions. Returns a list of problems (empty when valid).

        Subclasses extend this and call ``super().validate()`` first.
        """
        errors: list[str] = []
        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")
        return errors

    def __call__(self, matrix: BioMatrix) -> BioMatrix:
        errors = self.validate(matrix)
        if errors:
            raise ValueError(f"{self.name} cannot be applied: " + "; ".join(errors))
        return self.apply(matrix)

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
