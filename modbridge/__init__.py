"""Modbus messages, a queued RTU client and a request-forwarding bridge."""

__version__ = "0.1.0"
__all__ = ["errors", "message", "bridge", "rtu_client"]