"""Client for the Overdrip backend API.

Example::

    from overdrip.client import BackendClient

    with BackendClient("http://127.0.0.1:8000") as backend:
        session = backend.sign_in(id_token)
"""

from overdrip.client.backend import BackendClient, BackendSession

__all__ = ["BackendClient", "BackendSession"]
