"""Credential Vault: authenticated encryption for secrets at rest."""

from flowsync.credentials.vault import CredentialVault, mask_secret, redact_headers

__all__ = ["CredentialVault", "mask_secret", "redact_headers"]
