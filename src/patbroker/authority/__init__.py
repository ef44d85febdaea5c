"""Authentication authorities: the contract and its implementations."""

from patbroker.authority.azure import AzureIdentityProvider
from patbroker.authority.base import Authority
from patbroker.authority.fake import AuthorityFake
from patbroker.authority.vsts import VstsAuthority

__all__ = ["Authority", "AuthorityFake", "AzureIdentityProvider", "VstsAuthority"]
