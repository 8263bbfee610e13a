# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
macbind Control Plane Adapters

- base: ControlPlane interface, PassthruEntry, provenance rules
- http: HttpControlPlane (REST endpoint on the firewall)
"""

from .base import ControlPlane, PassthruEntry, Provenance, ProvenanceRules
from .http import HttpControlPlane

__all__ = [
    "ControlPlane",
    "HttpControlPlane",
    "PassthruEntry",
    "Provenance",
    "ProvenanceRules",
]
