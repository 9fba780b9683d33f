"""
Base class for immutable count-matrix transformations.

Pipeline stages that map a CountMatrix to a new CountMatrix (filtering, sample
subsetting) derive from Transform. Each stage is a pure function: it never
modifies its input, records its parameters for provenance, and can report
precondition failures before it runs.

Examples:
    >>> from voomde.core.transform import Transform
    >>>
    >>> class DropAllZero(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="DropAllZero", params={})
    ...
    ...     def apply(self, matrix):
    ...         return matrix.select_features(matrix.data.sum(axis=1) > 0)
    >>>
    >>> nonzero = DropAllZero().apply(counts)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from voomde.core.countmatrix import CountMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for CountMatrix transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "ExpressionFilter")
        params: Parameters used for this transformation (JSON-serializable)
        timestamp: When this transform instance was created (audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """
        Execute the transformation and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If the transformation cannot be applied
        """

    def validate(self, matrix: CountMatrix) -> list[str]:
        """
        Check preconditions before applying the transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
