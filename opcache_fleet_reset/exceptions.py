"""Custom exception hierarchy for the opcache fleet reset service."""

from __future__ import annotations


class ResetError(Exception):
    """Base exception for all fleet reset errors."""


class ConfigError(ResetError):
    """Invalid or missing configuration."""


class FleetDiscoveryError(ResetError):
    """The load balancer or compute API call failed."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class CacheToolError(ResetError):
    """Error running a cache-management command on a PHP-FPM pool."""


class FastCGIError(CacheToolError):
    """Transport or protocol error on a FastCGI connection."""

    def __init__(self, message: str, protocol_status: int | None = None):
        super().__init__(message)
        self.protocol_status = protocol_status
