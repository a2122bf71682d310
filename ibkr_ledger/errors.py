"""Domain errors raised for malformed provider reports and failed fetches."""


class SectionSplitError(ValueError):
    """Raised when a multi-section report cannot be merged into one table."""


class NoSectionsFoundError(SectionSplitError):
    """Raised when no header-delimited section is present."""

    def __init__(self) -> None:
        super().__init__("No valid IBKR sections found in CSV")


class NoTradesSectionError(SectionSplitError):
    """Raised when no section carries the trade-row columns."""

    def __init__(self) -> None:
        super().__init__("No trades section found in IBKR CSV")


class CsvFormatError(ValueError):
    """Raised when CSV text does not satisfy the report dialect."""


class FlexQueryError(ValueError):
    """Raised on terminal Flex Web Service failures."""

    def __init__(self, message: str, error_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
