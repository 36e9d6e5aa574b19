"""
Configuration settings for WinDiff.

Default analysis parameters can be overridden with ``WINDIFF_``-prefixed
environment variables or a ``.env`` file, e.g. ``WINDIFF_LOG_LEVEL=DEBUG``.
"""

from typing import Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Package settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Window counting defaults
    default_window_width: int = 10
    default_spacing: int = 50
    default_extension_length: int = 100
    default_min_mapping_quality: int = 0

    # Filtering defaults
    default_background_bin_width: int = 10000
    default_local_surround: int = 2000

    # Clustering and error control
    default_tol: int = 100
    default_fdr_threshold: float = 0.05

    # Resources
    n_workers: int = 1

    class Config:
        env_prefix = "WINDIFF_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    def analysis_defaults(self) -> Dict:
        """Keyword defaults for AnalysisConfig."""
        return {
            "window_width": self.default_window_width,
            "spacing": self.default_spacing,
            "extension_length": self.default_extension_length,
            "min_mapping_quality": self.default_min_mapping_quality,
            "background_bin_width": self.default_background_bin_width,
            "local_surround": self.default_local_surround,
            "tol": self.default_tol,
            "fdr_threshold": self.default_fdr_threshold,
            "n_workers": self.n_workers,
        }


# Global settings instance
settings = Settings()
