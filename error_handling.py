"""
Standardized error handling for the pipeline

Provides:
- Exception classes raised by services
- A decorator that turns service errors into logged CLI failures
- Safe classification of database errors
"""
import logging
import traceback
from functools import wraps

import click
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ============================================================================
# Specific Error Classes (for raising)
# ============================================================================


class EpgError(Exception):
    """Base class for pipeline errors"""

    pass


class SourceFetchError(EpgError):
    """Raise when a guide feed or playlist cannot be read (network or file)"""

    pass


class MetadataLookupError(EpgError):
    """Raise when the external show lookup fails transiently"""

    pass


class JobInProgressError(EpgError):
    """Raise when a job is started while another one is still running"""

    pass


class ResourceNotFoundError(EpgError):
    """Raise when a requested channel or record doesn't exist"""

    pass


class ValidationError(ValueError):
    """Raise when input validation fails"""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details


# ============================================================================
# Error Handler Decorator
# ============================================================================


def handle_cli_errors(default_message="An error occurred", log_errors=True, include_traceback=False):
    """
    Decorator to handle exceptions in CLI commands

    Usage:
        @app.cli.command("grab")
        @handle_cli_errors()
        def grab_command():
            # Any exception will be logged and reported as a failed command

    Args:
        default_message: Fallback message if exception has no message
        log_errors: If True, logs errors to logger
        include_traceback: If True, echoes the traceback for unexpected errors

    Returns:
        Decorated function that exits with a non-zero status on error
    """

    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except click.exceptions.Exit:
                raise
            except click.ClickException:
                raise
            except JobInProgressError as e:
                if log_errors:
                    logger.warning(f"Job already running in {f.__name__}: {e}")
                raise click.ClickException(str(e) or "Another job is already running")

            except ResourceNotFoundError as e:
                if log_errors:
                    logger.warning(f"Resource not found in {f.__name__}: {e}")
                raise click.ClickException(str(e) or "Resource not found")

            except ValidationError as e:
                if log_errors:
                    logger.warning(f"Validation error in {f.__name__}: {e}")
                message = str(e) or "Validation error"
                if e.details:
                    message = f"{message}: {e.details}"
                raise click.ClickException(message)

            except SourceFetchError as e:
                if log_errors:
                    logger.error(f"External failure in {f.__name__}: {e}")
                raise click.ClickException(str(e) or default_message)

            except SQLAlchemyError as e:
                message, retryable = handle_db_error(e, f.__name__)
                if retryable:
                    message = f"{message}, try again later"
                raise click.ClickException(message)

            except Exception:
                if log_errors:
                    logger.error(f"Unexpected error in {f.__name__}", exc_info=True)
                if include_traceback:
                    click.echo(traceback.format_exc(), err=True)
                raise click.ClickException(default_message)

        return wrapper

    return decorator


# ============================================================================
# Database Error Helpers
# ============================================================================


def handle_db_error(e, operation="database operation"):
    """
    Handle database errors safely

    Args:
        e: The exception
        operation: Description of what was being attempted

    Returns:
        tuple: (error_message, retryable)
    """
    if isinstance(e, IntegrityError):
        logger.warning(f"Database integrity error during {operation}: {e}")
        return "Database constraint violation. Check for duplicates or invalid references.", False

    elif isinstance(e, OperationalError):
        # Locked or unavailable database; the next scheduled pass may succeed
        logger.error(f"Database operational error during {operation}: {e}", exc_info=True)
        return "Database is temporarily unavailable", True

    else:
        logger.error(f"Database error during {operation}: {e}", exc_info=True)
        return "A database error occurred", False
