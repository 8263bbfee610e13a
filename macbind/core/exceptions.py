# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
macbind Exception Hierarchy

Exception Hierarchy:
    MacbindError (base)
    ├── ConfigError
    ├── QueueError
    ├── LockError
    ├── StoreError
    │   └── StoreWriteError
    ├── ControlPlaneError
    │   ├── CapabilityUnavailableError
    │   └── ControlPlaneUnavailableError
    └── BackupError

Fatal to a reconciliation run: LockError, StoreWriteError and
ControlPlaneUnavailableError. Everything else is counted and logged.
"""

from typing import Any, Dict, Optional

# ============================================================================
# Base Exception
# ============================================================================


class MacbindError(Exception):
    """Base exception for all macbind errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Local State Errors
# ============================================================================


class ConfigError(MacbindError):
    """Configuration-related errors"""


class QueueError(MacbindError):
    """Event queue could not be read or rewritten"""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class LockError(MacbindError):
    """Run lock could not be created (not raised when the lock is merely busy)"""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class StoreError(MacbindError):
    """Active binding store errors"""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class StoreWriteError(StoreError):
    """Active binding store could not be persisted"""


# ============================================================================
# Control Plane Errors
# ============================================================================


class ControlPlaneError(MacbindError):
    """A single control plane call failed"""

    def __init__(
        self,
        message: str,
        zone: Optional[str] = None,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.zone = zone
        self.operation = operation
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "zone": self.zone,
                "operation": self.operation,
                "status_code": self.status_code,
            }
        )
        return result


class CapabilityUnavailableError(ControlPlaneError):
    """The control plane does not offer the requested capability"""


class ControlPlaneUnavailableError(ControlPlaneError):
    """The control plane cannot be reached at all"""


class BackupError(MacbindError):
    """Configuration snapshot could not be written"""
