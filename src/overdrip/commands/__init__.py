"""Built-in CLI sub-commands for overdrip.

* :mod:`~overdrip.commands.setup` -- interactive device provisioning.
* :mod:`~overdrip.commands.device` -- ``start``, ``status`` and ``logout``
  for an already provisioned device.
* :mod:`~overdrip.commands.config` -- inspect the effective client
  configuration and verify the credential file.
* :mod:`~overdrip.commands.serve` -- run the backend service.

Each module exports plain callback functions registered directly on the root
app, or a :class:`typer.Typer` sub-application for multi-command groups like
``config``.
"""
