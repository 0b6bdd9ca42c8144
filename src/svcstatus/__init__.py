"""svcstatus: liveness and activity tracking for a fleet of background services."""

__version__ = '0.1.0'
