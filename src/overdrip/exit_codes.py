"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~overdrip.exceptions.OverdripError` subclass.
Wrappers such as systemd units can inspect the exit code to decide whether
re-running ``overdrip setup`` is required without parsing stderr.

Example::

    $ overdrip start
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the auth code was rejected
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or the backend rejected the input."""

EXIT_AUTH_FAILURE = 3
"""Authentication or authorisation failed."""

EXIT_NOT_FOUND = 4
"""The requested resource (typically a device registration) was not found."""

EXIT_SERVER_ERROR = 5
"""The backend or identity provider returned a server error."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_NOT_SET_UP = 7
"""No device credentials are stored; ``overdrip setup`` must be run first."""

EXIT_PORT_UNAVAILABLE = 8
"""No local port was available for the OAuth callback listener."""
