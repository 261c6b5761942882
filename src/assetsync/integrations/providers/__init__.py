"""Vendor provider adapters.

Provides the IntegrationProvider ABC and one concrete adapter per vendor:
- ConnectWiseProvider: ConnectWise Manage configurations
- ItGlueProvider: IT Glue configurations
- KaseyaProvider: Kaseya VSA assets
- AuvikProvider: Auvik network devices
- CustomProvider: Any JSON API with bearer/basic/header auth
"""

from src.assetsync.integrations.providers.auvik import AuvikProvider
from src.assetsync.integrations.providers.base import IntegrationProvider
from src.assetsync.integrations.providers.connectwise import ConnectWiseProvider
from src.assetsync.integrations.providers.custom import CustomProvider
from src.assetsync.integrations.providers.http import HttpDefaults
from src.assetsync.integrations.providers.it_glue import ItGlueProvider
from src.assetsync.integrations.providers.kaseya import KaseyaProvider

__all__ = [
    "AuvikProvider",
    "ConnectWiseProvider",
    "CustomProvider",
    "HttpDefaults",
    "IntegrationProvider",
    "ItGlueProvider",
    "KaseyaProvider",
]
