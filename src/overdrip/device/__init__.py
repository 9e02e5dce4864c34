"""Code that runs on the provisioned device: credential file, client, and runtime loop."""

from overdrip.device.client import (
    CommandSubscription,
    DeviceClient,
    DeviceSession,
    LoggingTelemetrySink,
    TelemetrySink,
)
from overdrip.device.credentials import CredentialStore, default_credentials_path
from overdrip.device.runtime import OverdripRuntime

__all__ = [
    "CommandSubscription",
    "CredentialStore",
    "DeviceClient",
    "DeviceSession",
    "LoggingTelemetrySink",
    "OverdripRuntime",
    "TelemetrySink",
    "default_credentials_path",
]
