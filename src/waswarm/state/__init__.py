"""Persistence: credentials per account and the key-value records."""

from waswarm.state.credentials import CredentialStore
from waswarm.state.kv import KeyValueStore, ModeStore, SudoStore, UserConfigStore

__all__ = [
    "CredentialStore",
    "KeyValueStore",
    "ModeStore",
    "SudoStore",
    "UserConfigStore",
]
