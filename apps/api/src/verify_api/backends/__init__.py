"""Contact-data backends: HubSpot CRM and Google Sheets."""

from verify_api.backends.base import BackendConnector, connector_for
from verify_api.backends.hubspot import HubSpotConnector, encode_properties, parse_address
from verify_api.backends.sheets import (
    GoogleSheetsConnector,
    column_letter,
    find_column_index,
)

__all__ = [
    "BackendConnector",
    "GoogleSheetsConnector",
    "HubSpotConnector",
    "column_letter",
    "connector_for",
    "encode_properties",
    "find_column_index",
    "parse_address",
]
