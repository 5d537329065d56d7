# Backend-specific adapters
# REST client for the dashboard API, settings, and the loader that builds page views

from .settings import Settings, configure_logging, get_settings
from .backend_client import BackendClient, QueryFilters
from .dashboard import (
    ComparisonView,
    DashboardLoader,
    OrdersView,
    ReturnsView,
    SalesView,
    ServerAnalyticsView,
)

__all__ = [
    "Settings",
    "configure_logging",
    "get_settings",
    "BackendClient",
    "QueryFilters",
    "ComparisonView",
    "DashboardLoader",
    "OrdersView",
    "ReturnsView",
    "SalesView",
    "ServerAnalyticsView",
]
