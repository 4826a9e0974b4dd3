"""
Result serialization module.

Exports analysis results to JSON.  Debug payloads may hold numpy scalars,
arrays and non-finite floats; everything is converted to plain JSON types,
with NaN and infinity written as null.
"""

import json
from pathlib import Path
from typing import Any, Union

import numpy as np

from keyscope.core.key import relative_key
from keyscope.pipeline import AnalysisResult


class ResultExporter:
    """Converts AnalysisResult objects to JSON-safe dictionaries and files."""

    def __init__(self, precision: int = 4, include_debug: bool = True):
        """
        Initialize the exporter.

        Args:
            precision: Decimal places for floating point values.
            include_debug: Keep the diagnostic ``debug`` block.
        """
        self.precision = precision
        self.include_debug = include_debug

    def _round(self, value: float) -> float:
        """Round to configured precision."""
        return round(float(value), self.precision)

    def _safe_float(self, value: Any) -> Any:
        """Round a float, mapping NaN/inf to None."""
        f = float(value)
        if np.isnan(f) or np.isinf(f):
            return None
        return self._round(f)

    def _clean(self, value: Any) -> Any:
        """Recursively convert a value to JSON-compatible types."""
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, np.bool_):
            return bool(value)
        if isinstance(value, (int, np.integer)):
            return int(value)
        if isinstance(value, (float, np.floating)):
            return self._safe_float(value)
        if isinstance(value, np.ndarray):
            return [self._clean(v) for v in value.tolist()]
        if isinstance(value, dict):
            return {str(k): self._clean(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._clean(v) for v in value]
        return str(value)

    def to_dict(self, result: AnalysisResult) -> dict[str, Any]:
        """
        Build a JSON-safe dictionary for a result.

        Args:
            result: Analysis result.

        Returns:
            Dictionary with bpm, key, relative_key, confidence and
            (optionally) debug.
        """
        data: dict[str, Any] = {
            "bpm": int(result.bpm) if result.bpm is not None else None,
            "key": result.key,
            "relative_key": relative_key(result.key) if result.key else None,
            "confidence": self._safe_float(result.confidence) or 0.0,
        }
        if self.include_debug:
            data["debug"] = self._clean(result.debug)
        return data

    def to_json(self, result: AnalysisResult, indent: int = 2) -> str:
        """Serialize a result to a JSON string."""
        return json.dumps(self.to_dict(result), indent=indent)

    def export_json(
        self,
        result: AnalysisResult,
        output_path: Union[str, Path],
        indent: int = 2,
    ) -> Path:
        """
        Export a result to a JSON file.

        Args:
            result: Analysis result.
            output_path: Path for output JSON file.
            indent: JSON indentation level.

        Returns:
            Path to written file.
        """
        output_path = Path(output_path)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(result), f, indent=indent)

        return output_path
