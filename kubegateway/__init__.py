"""Request filters, impersonation, proxy forwarding, metrics, admission and a work queue for an API gateway."""

__version__ = "0.1.0"