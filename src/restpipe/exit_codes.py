"""Numeric process exit codes used by the ``restpipe`` command line tool.

Each constant maps to a failure category and is referenced by the
corresponding :class:`~restpipe.exceptions.RestpipeError` subclass, so
shell scripts driving API test runs can branch on the exit code without
parsing stderr.

Example::

    $ restpipe request GET https://api.example.com/health
    $ echo $?
    8   # EXIT_CIRCUIT_OPEN -- the breaker rejected the call
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_HTTP_ERROR = 5
"""The remote API answered with an HTTP error status."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_INTERCEPTOR_FAILURE = 7
"""A critical interceptor failed and aborted its chain."""

EXIT_CIRCUIT_OPEN = 8
"""The circuit breaker rejected the operation without attempting it."""

EXIT_RETRY_EXHAUSTED = 9
"""Every retry attempt failed."""

EXIT_PLUGIN_ERROR = 10
"""A plugin failed to load, change state, or run a lifecycle hook."""

EXIT_CANCELLED = 130
"""The operation was cancelled by the caller."""
