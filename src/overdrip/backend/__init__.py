"""Backend service: sign-in bridge, device registrar, auth codes, and the refresh endpoint.

Run it with ``overdrip serve`` or any ASGI server pointed at
:func:`overdrip.backend.app.create_app` (``factory=True``).
"""

from overdrip.backend.app import create_app
from overdrip.backend.auth_codes import AuthCodeManager
from overdrip.backend.registrar import DeviceRegistrar
from overdrip.backend.settings import BackendSettings

__all__ = ["AuthCodeManager", "BackendSettings", "DeviceRegistrar", "create_app"]
