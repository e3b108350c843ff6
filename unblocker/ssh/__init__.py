"""SSH credentials and sessions."""

from .keys import SshAuthorizedKeysInstaller, SshCredential, SshKeyManager, default_key_manager, generate_host_keys
from .session import SshSession, output_preview

__all__ = [
    "SshAuthorizedKeysInstaller",
    "SshCredential",
    "SshKeyManager",
    "SshSession",
    "default_key_manager",
    "generate_host_keys",
    "output_preview",
]
