"""Request classification, provider catalog and the router facade."""

from routewise.routing.catalog import DEFAULT_CATALOG, ProviderCatalog
from routewise.routing.classifier import LEVEL1_REQUEST_TYPES, RequestClassifier
from routewise.routing.router import Router, RouteState

__all__ = [
    "DEFAULT_CATALOG",
    "ProviderCatalog",
    "LEVEL1_REQUEST_TYPES",
    "RequestClassifier",
    "Router",
    "RouteState",
]
