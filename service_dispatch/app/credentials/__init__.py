"""
Credential lease package.

Owns the access token used against the processing API. Renewal is
single-flight and happens ahead of expiry by a configured skew.
"""

from .lease import CredentialLease

__all__ = ["CredentialLease"]
