"""overdrip -- provision and authenticate Overdrip devices.

A device is set up once through an interactive Google OAuth 2.0 + PKCE flow
run from the terminal. The backend exchanges the resulting identity for a
long-lived, revocable device credential (the *auth code*), which the device
stores locally and trades for a short-lived session token on every boot.

Typical workflow::

    overdrip setup --name "Kitchen Pi"   # one-time browser login
    overdrip start                       # refresh session and run

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models for wire records and persisted entities.
    config: Overdrip home directory, settings file, and client configuration.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
    provision: The interactive setup pipeline.
"""

__version__ = "0.1.0"
