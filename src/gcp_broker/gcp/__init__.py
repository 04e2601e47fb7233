"""Google Cloud integration: credentials, client factories and async SDK proxies."""

from gcp_broker.gcp.clients import ClientFactory, GoogleClientFactory
from gcp_broker.gcp.credentials import CredentialError, CredentialHandle
from gcp_broker.gcp.proxies import (
    AsyncObjectProxy,
    CapabilityUnavailableError,
    ClientClassProxy,
    ClientModuleProxy,
    CredentialView,
)

__all__ = [
    "AsyncObjectProxy",
    "CapabilityUnavailableError",
    "ClientClassProxy",
    "ClientFactory",
    "ClientModuleProxy",
    "CredentialError",
    "CredentialHandle",
    "CredentialView",
    "GoogleClientFactory",
]
