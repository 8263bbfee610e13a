# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
macbind Core - Init file

Exports the data types, configuration and exceptions.
"""

# Note: engine, sync, backup and diagnostics import macbind.adapters,
# which imports models from here. Import them from their modules directly.

from .config import MacbindConfig, load_config
from .exceptions import (
    BackupError,
    CapabilityUnavailableError,
    ConfigError,
    ControlPlaneError,
    ControlPlaneUnavailableError,
    LockError,
    MacbindError,
    QueueError,
    StoreError,
    StoreWriteError,
)
from .models import (
    Binding,
    BindingOrigin,
    DecodeResult,
    GrantEvent,
    SkipReason,
    decode_grant_line,
    normalize_mac,
)

__all__ = [
    # Config
    "MacbindConfig",
    "load_config",
    # Models
    "Binding",
    "BindingOrigin",
    "DecodeResult",
    "GrantEvent",
    "SkipReason",
    "decode_grant_line",
    "normalize_mac",
    # Exceptions
    "MacbindError",
    "ConfigError",
    "QueueError",
    "LockError",
    "StoreError",
    "StoreWriteError",
    "ControlPlaneError",
    "CapabilityUnavailableError",
    "ControlPlaneUnavailableError",
    "BackupError",
]
