"""AWX and watcher fakes for integration testing.

This module provides in-memory stand-ins for the two external collaborators
of the reconciliation engine so the full event flow can be tested without a
cluster or an AWX instance.

Usage:
    from awx_mock import MockAwxGateway, ScriptedWatcher

    gateway = MockAwxGateway({"Default": 1})
    watcher = ScriptedWatcher([[ChangeNotification.added(vm)]])
    engine = ReconciliationEngine(gateway, watcher, organization="Default")

    # Assert on mock state
    assert gateway.hosts("prod")["vm1"].variables["ansible_host"] == "10.0.0.5"
"""

from .gateway import MockAwxGateway, MockGroup, MockHost, MockInventory
from .watcher import ScriptedWatcher

__all__ = [
    "MockAwxGateway",
    "MockGroup",
    "MockHost",
    "MockInventory",
    "ScriptedWatcher",
]
