# Package
from propertyops.adapters.base import ExportAdapter
from propertyops.adapters.registry import AdapterRegistry, build_adapter_registry
from propertyops.adapters.visma import HttpVismaAdapter, StubVismaAdapter, VismaAdapter

__all__ = [
    "AdapterRegistry",
    "ExportAdapter",
    "HttpVismaAdapter",
    "StubVismaAdapter",
    "VismaAdapter",
    "build_adapter_registry",
]
