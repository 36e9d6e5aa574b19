"""Pydantic models for WinDiff analysis configuration."""

from .schemas import AnalysisConfig, FilterModeEnum, InferenceMethodEnum, NormalizationStrategyEnum

__all__ = ["AnalysisConfig", "FilterModeEnum", "InferenceMethodEnum", "NormalizationStrategyEnum"]
