import asyncio
import sys
import traceback

import services.logger as log

l = log.get_logger()


def _handle_uncaught_exceptions(exc_type, exc_value, exc_traceback):
    """Global exception handler for uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        # Let Ctrl+C behave normally
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    l.critical(
        "Unhandled exception caught:\n"
        + ''.join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    )


sys.excepthook = _handle_uncaught_exceptions


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Log exceptions raised in fire-and-forget tasks (event handlers, listeners)."""
    exc = context.get("exception")
    message = context.get("message", "")
    if exc is None:
        l.error(f"Event loop error: {message}")
        return
    l.error(
        f"Unhandled exception in event loop ({message}):\n"
        + ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )


def install_loop_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Route asyncio's 'exception was never retrieved' reports to the bridge log."""
    loop.set_exception_handler(_handle_loop_exception)
