"""Concrete collaborator clients (document store, NSX manager, scripts)."""

from .cloud_store import CloudStoreClient, CloudStoreError, CloudStoreNotFoundError
from .nsx_client import NsxApiError, NsxClient, NsxClientFactory
from .script_runner import SubprocessScriptRunner

__all__ = [
    "CloudStoreClient",
    "CloudStoreError",
    "CloudStoreNotFoundError",
    "NsxApiError",
    "NsxClient",
    "NsxClientFactory",
    "SubprocessScriptRunner",
]
