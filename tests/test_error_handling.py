"""
Tests for error_handling module
"""
import click
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from error_handling import (
    JobInProgressError,
    ResourceNotFoundError,
    SourceFetchError,
    ValidationError,
    handle_cli_errors,
    handle_db_error,
)


def failing(exc, **kwargs):
    @handle_cli_errors(**kwargs)
    def command():
        raise exc

    return command


def test_handle_cli_errors_passes_result():
    """Test the wrapped function's return value is kept"""

    @handle_cli_errors()
    def command():
        return 42

    assert command() == 42


@pytest.mark.parametrize(
    "exc,message",
    [
        (ResourceNotFoundError("Channel 9 not found"), "Channel 9 not found"),
        (JobInProgressError("Job 'grab' is already running"), "Job 'grab' is already running"),
        (SourceFetchError("Failed to download"), "Failed to download"),
    ],
)
def test_handle_cli_errors_known_errors(exc, message):
    """Test service errors become ClickExceptions with their message"""
    with pytest.raises(click.ClickException) as exc_info:
        failing(exc)()
    assert exc_info.value.message == message


def test_handle_cli_errors_validation_details():
    """Test validation details are included in the message"""
    with pytest.raises(click.ClickException) as exc_info:
        failing(ValidationError("Invalid input", details={"location": ["bad"]}))()
    assert exc_info.value.message == "Invalid input: {'location': ['bad']}"


def test_handle_cli_errors_unexpected():
    """Test unexpected errors use the default message"""
    with pytest.raises(click.ClickException) as exc_info:
        failing(RuntimeError("boom"), default_message="Grab failed")()
    assert exc_info.value.message == "Grab failed"


def test_handle_cli_errors_exit_passthrough():
    """Test click exits are not converted"""
    with pytest.raises(click.exceptions.Exit):
        failing(click.exceptions.Exit(1))()


def test_handle_cli_errors_database_error():
    """Test database errors get a safe message"""
    with pytest.raises(click.ClickException) as exc_info:
        failing(OperationalError("SELECT 1", {}, Exception("database is locked")))()
    assert exc_info.value.message == "Database is temporarily unavailable, try again later"


def test_handle_db_error():
    """Test database error classification"""
    assert handle_db_error(IntegrityError("INSERT", {}, Exception("UNIQUE")))[1] is False
    assert handle_db_error(OperationalError("SELECT", {}, Exception("locked"))) == (
        "Database is temporarily unavailable",
        True,
    )
    assert handle_db_error(SQLAlchemyError("other")) == ("A database error occurred", False)
