"""Exception taxonomy and exit code mapping for DTI Trader."""


class DTITraderError(Exception):
    """Base class for all DTI Trader errors."""
    pass


class InvalidInputError(DTITraderError, ValueError):
    """Raised when input sequences or parameters are mismatched or malformed."""
    pass


class InsufficientDataError(DTITraderError):
    """Raised when there is not enough history for a calculation."""
    pass


class ConfigError(DTITraderError):
    """Raised when configuration is invalid."""
    pass


# Exit codes for CLI
EXIT_SUCCESS = 0           # Successful completion
EXIT_GENERAL_ERROR = 1     # Uncaught/unexpected exceptions
EXIT_CONFIG_ERROR = 2      # Configuration validation failures
EXIT_INPUT_ERROR = 3       # Malformed or mismatched input data
EXIT_DATA_ERROR = 4        # Insufficient data errors


class ExceptionMapper:
    """Maps exceptions to appropriate exit codes."""

    @staticmethod
    def map_to_exit_code(e: Exception) -> int:
        """
        Map an exception to an exit code.

        Args:
            e: The exception to map

        Returns:
            Exit code (0-4)
        """
        # Configuration errors
        if isinstance(e, ConfigError):
            return EXIT_CONFIG_ERROR

        # Input errors (checked before ValueError, which they subclass)
        elif isinstance(e, InvalidInputError):
            return EXIT_INPUT_ERROR

        # Data errors
        elif isinstance(e, InsufficientDataError):
            return EXIT_DATA_ERROR

        # Value and key errors usually come from bad configuration values
        elif isinstance(e, (ValueError, KeyError)):
            return EXIT_CONFIG_ERROR

        # Default to general error
        return EXIT_GENERAL_ERROR
