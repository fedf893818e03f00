"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import typer
from typing import Callable, Iterator, Optional, TypeVar

T = TypeVar('T')

# Exit codes by exception class name; subclasses inherit their base's code
EXIT_CODES = {
    "CancelledError": 130,
    "ConfigurationError": 2,
    "ValidationError": 2,
    "ValueError": 2,
    "AuthenticationError": 4,
    "NotFoundError": 5,
    "TransportError": 3,
}

FALLBACK_EXIT_CODE = 3


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _code_for_type(exc: BaseException) -> Optional[int]:
    for klass in type(exc).__mro__:
        code = EXIT_CODES.get(klass.__name__)
        if code is not None:
            return code
    return None


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    The cause chain is walked from the outermost error inwards and the first
    error with a known class decides, so a stage wrapper such as
    InvocationPushError reports the code of the registry error it wraps.

    Returns exit codes:
    - 0: Success
    - 2: Configuration error (ConfigurationError, ValidationError, ValueError)
    - 3: Transport error or unknown error
    - 4: Authentication/authorization failure
    - 5: Reference not found in registry
    - 130: Cancelled

    Args:
        exc: Exception to map

    Returns:
        Exit code (3 as fallback for unknown exceptions)
    """
    for error in _cause_chain(exc):
        code = _code_for_type(error)
        if code is not None:
            return code
    return FALLBACK_EXIT_CODE


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. This centralizes error handling so
    CLI commands don't need individual try/except blocks.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except Exception as e:
        from .printers import print_error
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
