"""
Exception types raised by WinDiff.

Errors are split by stage: reading fragments from alignment files,
validating intervals and parameters, and the statistical steps from
normalization through region-level testing. Catch ``WinDiffError`` to
handle all of them.
"""


class WinDiffError(Exception):
    """Root of the WinDiff exception tree."""
    pass


# ============================================================================
# Reading fragments
# ============================================================================

class FileFormatError(WinDiffError):
    """An input table or file could not be interpreted."""
    pass


class AlignmentFileError(FileFormatError):
    """A BAM/SAM file is missing, unindexed or unreadable."""
    pass


# ============================================================================
# Input checks
# ============================================================================

class ValidationError(WinDiffError):
    """Inputs are inconsistent with each other or with the analysis."""
    pass


class InvalidIntervalError(ValidationError):
    """Coordinates that do not describe a 1-based closed interval."""

    def __init__(self, chrom: str, start, end, reason: str = ""):
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Invalid interval {chrom}:{start}-{end}{detail}")
        self.chrom = chrom
        self.start = start
        self.end = end


class MissingColumnError(ValidationError):
    """A table lacks a column the caller depends on."""

    def __init__(self, column: str, dataframe_name: str = "DataFrame", available: list = None):
        message = f"Column '{column}' is required in {dataframe_name} but was not found."
        if available:
            message += f" Present: {available}"
        super().__init__(message)
        self.column = column
        self.available = available


class InsufficientSamplesError(ValidationError):
    """Too few libraries were supplied."""

    def __init__(self, required: int, actual: int, context: str = "analysis"):
        super().__init__(f"{context} needs at least {required} libraries, received {actual}")
        self.required = required
        self.actual = actual


class EmptyDataError(ValidationError):
    """A required input has no entries."""

    def __init__(self, data_name: str = "data"):
        super().__init__(f"No entries in {data_name}")
        self.data_name = data_name


class InvalidParameterError(ValidationError):
    """An option lies outside its permitted values."""

    def __init__(self, param: str, value, valid_range: str = ""):
        message = f"Parameter '{param}' cannot be {value!r}"
        if valid_range:
            message += f" (allowed: {valid_range})"
        super().__init__(message)
        self.param = param
        self.value = value


# ============================================================================
# Statistical stages
# ============================================================================

class AnalysisError(WinDiffError):
    """Parent of errors raised while modelling counts."""
    pass


class NormalizationError(AnalysisError):
    """Scaling factors or offsets could not be computed."""
    pass


class DispersionUndefinedError(AnalysisError):
    """The design leaves no residual degrees of freedom.

    Without replication the NB dispersion is not estimable, so the caller
    must provide one.
    """

    def __init__(self, n_libraries: int, n_coefficients: int):
        super().__init__(
            f"Cannot estimate dispersion with {n_libraries} libraries and "
            f"{n_coefficients} coefficients (zero residual df); pass a fixed dispersion"
        )
        self.n_libraries = n_libraries
        self.n_coefficients = n_coefficients


class DifferentialAnalysisError(AnalysisError):
    """Window-level hypothesis testing could not proceed."""
    pass


# ============================================================================
# Helpers
# ============================================================================

def validate_dataframe(
    df,
    name: str = "DataFrame",
    required_columns: list = None,
    min_rows: int = 0,
) -> None:
    """Check that ``df`` is a DataFrame with enough rows and the given columns.

    Raises:
        EmptyDataError: ``df`` is None, or empty while ``min_rows`` > 0.
        ValidationError: ``df`` is not a DataFrame or has too few rows.
        MissingColumnError: The first absent entry of ``required_columns``.
    """
    import pandas as pd

    if df is None:
        raise EmptyDataError(name)
    if not isinstance(df, pd.DataFrame):
        raise ValidationError(f"Expected DataFrame for {name}, got {type(df).__name__}")

    n_rows = len(df)
    if n_rows < min_rows:
        if n_rows == 0:
            raise EmptyDataError(name)
        raise ValidationError(f"{name} needs at least {min_rows} rows, found {n_rows}")

    missing = [col for col in (required_columns or []) if col not in df.columns]
    if missing:
        raise MissingColumnError(missing[0], name, available=list(df.columns))


def validate_numeric_param(value, name: str, min_val=None, max_val=None) -> None:
    """Raise InvalidParameterError unless ``min_val <= value <= max_val``."""
    if min_val is not None and value < min_val:
        raise InvalidParameterError(name, value, f">= {min_val}")
    if max_val is not None and value > max_val:
        raise InvalidParameterError(name, value, f"<= {max_val}")
