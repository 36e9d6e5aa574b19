"""
Pydantic schemas for WinDiff analysis configuration.

Every stage of the pipeline reads its parameters from one AnalysisConfig, so
invalid values are rejected before any counting starts.
"""

import math
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from ..config import Settings


# Enums for validation
class FilterModeEnum(str, Enum):
    GLOBAL = "global"
    LOCAL = "local"
    PROPORTIONAL = "proportional"
    NONE = "none"


class NormalizationStrategyEnum(str, Enum):
    BACKGROUND = "background"
    FILTERED = "filtered"
    TRENDED = "trended"


class InferenceMethodEnum(str, Enum):
    AUTO = "auto"
    QL = "ql"
    LRT = "lrt"


# ============================================================================
# Analysis Configuration
# ============================================================================


class AnalysisConfig(BaseModel):
    """Parameters for one differential binding analysis."""

    comparison_name: str = Field(default="comparison", description="Name used in logs and output files")

    # Counting
    window_width: int = Field(default=10, gt=0, description="Window width in bp")
    spacing: int = Field(default=50, gt=0, description="Distance between window starts in bp")
    extension_length: int = Field(default=100, gt=0, description="Fragment length for read extension")
    min_mapping_quality: int = Field(default=0, ge=0)
    chromosome_restriction: Optional[List[str]] = Field(default=None, description="Only count these chromosomes")
    strand_specific: bool = False
    min_count: int = Field(default=0, ge=0, description="Drop windows with fewer total fragments")

    # Filtering
    filter_mode: FilterModeEnum = FilterModeEnum.GLOBAL
    filter_threshold: float = Field(default=math.log2(3), description="Minimum log2 enrichment over background")
    filter_proportion: float = Field(default=0.01, gt=0, le=1, description="Fraction kept in proportional mode")
    background_bin_width: int = Field(default=10000, gt=0)
    local_surround: int = Field(default=2000, gt=0, description="Flank on each side for local background")
    prior_count: float = Field(default=2.0, ge=0, description="Prior count for abundances")

    # Normalization
    normalization_strategy: NormalizationStrategyEnum = NormalizationStrategyEnum.BACKGROUND
    trim_fractions: Tuple[float, float] = Field(default=(0.3, 0.05), description="TMM log-ratio and abundance trims")

    # Model
    groups: Optional[List[str]] = Field(default=None, description="Group label per library")
    group1: Optional[str] = Field(default=None, description="Treatment group")
    group2: Optional[str] = Field(default=None, description="Control group")
    design: Optional[List[List[float]]] = Field(default=None, description="Design matrix, one row per library")
    contrast: Optional[Union[int, List[float]]] = Field(default=None, description="Coefficient index or vector")
    dispersion: Optional[float] = Field(default=None, ge=0, description="Fixed NB dispersion")
    robust: bool = True
    test_method: InferenceMethodEnum = InferenceMethodEnum.AUTO

    # Clustering and error control
    tol: int = Field(default=100, ge=0, description="Maximum gap between clustered windows")
    max_cluster_width: Optional[int] = Field(default=None, gt=0)
    window_significance: float = Field(default=0.05, gt=0, le=1)
    fdr_threshold: float = Field(default=0.05, gt=0, le=1)

    # Resources and output
    n_workers: int = Field(default=1, ge=1)
    output_dir: Optional[str] = None

    class Config:
        validate_assignment = True

    @field_validator("trim_fractions")
    @classmethod
    def check_trim_fractions(cls, value):
        for fraction in value:
            if not 0 <= fraction < 0.5:
                raise ValueError("trim fractions must lie in [0, 0.5)")
        return value

    @field_validator("chromosome_restriction")
    @classmethod
    def check_restriction(cls, value):
        if value is not None and not value:
            raise ValueError("chromosome_restriction must name at least one chromosome")
        return value

    @model_validator(mode="after")
    def check_model(self):
        if self.design is not None:
            if self.contrast is None:
                raise ValueError("an explicit design needs a contrast")
            widths = {len(row) for row in self.design}
            if len(widths) != 1:
                raise ValueError("design rows must all have the same length")
        elif self.groups is not None:
            if self.group1 is None or self.group2 is None:
                raise ValueError("groups need group1 and group2")
            for group in (self.group1, self.group2):
                if group not in self.groups:
                    raise ValueError(f"group '{group}' not found in groups")
            if self.group1 == self.group2:
                raise ValueError("group1 and group2 must differ")
        else:
            raise ValueError("either design and contrast, or groups with group1 and group2, must be given")
        return self

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "AnalysisConfig":
        """Build a config from Settings defaults, overridden by ``kwargs``."""
        values = (settings or Settings()).analysis_defaults()
        values.update(kwargs)
        return cls(**values)
