"""
Custom exception classes for EnhancerLink.

Structural problems with reference data (genome table, transcript model)
abort a run. Per-record anomalies are counted in a QCReport instead of
being raised; see ``enhancerlink.core.qc``.
"""


class EnhancerLinkError(Exception):
    """Base exception for all EnhancerLink errors."""
    pass


# ============================================================================
# Reference data errors (fatal)
# ============================================================================

class ReferenceDataError(EnhancerLinkError):
    """Raised when shared reference data cannot be constructed."""
    pass


class GenomeInfoError(ReferenceDataError):
    """Raised when a chromosome-length table is malformed."""
    pass


class UnknownChromosomeError(ReferenceDataError):
    """Raised when a chromosome is not part of the genome table."""

    def __init__(self, chrom: str, known: list = None):
        known_str = f" Known chromosomes: {known[:10]}" if known else ""
        super().__init__(f"Unknown chromosome '{chrom}'.{known_str}")
        self.chrom = chrom


class TranscriptModelError(ReferenceDataError):
    """Raised when a transcript model record is malformed."""
    pass


# ============================================================================
# Data validation errors
# ============================================================================

class ValidationError(EnhancerLinkError):
    """Raised when input data fails validation checks."""
    pass


class MalformedIntervalError(ValidationError):
    """Raised when an interval has start > end."""

    def __init__(self, chrom: str, start: int, end: int):
        super().__init__(f"Malformed interval {chrom}:{start}-{end} (start > end)")
        self.chrom = chrom
        self.start = start
        self.end = end


class MissingColumnError(ValidationError):
    """Raised when a required column is missing from a DataFrame."""

    def __init__(self, column: str, dataframe_name: str = "DataFrame", available: list = None):
        available_str = f" Available columns: {available}" if available else ""
        super().__init__(
            f"Required column '{column}' not found in {dataframe_name}.{available_str}"
        )
        self.column = column
        self.available = available


class EmptyDataError(ValidationError):
    """Raised when data is empty where it should not be."""

    def __init__(self, data_name: str = "data"):
        super().__init__(f"Empty {data_name} provided where non-empty data is required")
        self.data_name = data_name


class InvalidParameterError(ValidationError):
    """Raised when a parameter value is out of valid range."""

    def __init__(self, param: str, value, valid_range: str = ""):
        msg = f"Invalid value for '{param}': {value}"
        if valid_range:
            msg += f". Expected: {valid_range}"
        super().__init__(msg)
        self.param = param
        self.value = value


# ============================================================================
# Analysis errors
# ============================================================================

class AnalysisError(EnhancerLinkError):
    """Base class for analysis-specific errors."""
    pass


class ClusteringError(AnalysisError):
    """Raised when signal clustering fails."""
    pass


class AnnotationError(AnalysisError):
    """Raised when transcript-type annotation fails."""
    pass


class InteractionJoinError(AnalysisError):
    """Raised when contacts cannot be joined to called regions."""
    pass


# ============================================================================
# Validation helpers
# ============================================================================

def validate_dataframe(
    df,
    name: str = "DataFrame",
    required_columns: list = None,
    min_rows: int = 0,
) -> None:
    """Validate a DataFrame has expected shape and columns.

    Parameters
    ----------
    df : pd.DataFrame
        The DataFrame to validate.
    name : str
        Human-readable name for error messages.
    required_columns : list, optional
        Columns that must be present.
    min_rows : int
        Minimum number of rows required.

    Raises
    ------
    EmptyDataError
        If df is None or empty and min_rows > 0.
    MissingColumnError
        If a required column is missing.
    """
    import pandas as pd

    if df is None:
        raise EmptyDataError(name)

    if not isinstance(df, pd.DataFrame):
        raise ValidationError(f"Expected DataFrame for {name}, got {type(df).__name__}")

    if min_rows > 0 and len(df) < min_rows:
        if len(df) == 0:
            raise EmptyDataError(name)
        raise ValidationError(
            f"{name} has {len(df)} rows but at least {min_rows} are required"
        )

    if required_columns:
        for col in required_columns:
            if col not in df.columns:
                raise MissingColumnError(col, name, available=list(df.columns))


def validate_numeric_param(value, name: str, min_val=None, max_val=None) -> None:
    """Validate a numeric parameter is within acceptable bounds.

    Raises
    ------
    InvalidParameterError
        If the value is out of range.
    """
    if min_val is not None and value < min_val:
        raise InvalidParameterError(name, value, f">= {min_val}")
    if max_val is not None and value > max_val:
        raise InvalidParameterError(name, value, f"<= {max_val}")
