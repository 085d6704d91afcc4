"""
SecureEnv - Error Types

Every failure the core can surface is one of these. Library errors
(sqlite3, cryptography, keyring, yaml) are translated at the module
boundary where they occur.
"""


class SecureEnvError(Exception):
    """Base exception for all SecureEnv errors."""

    pass


class AuthError(SecureEnvError):
    """Wrong passphrase, or key material that is no longer usable."""

    pass


class NotFoundError(SecureEnvError):
    """No matching triple, version, project or environment."""

    pass


class NotInitializedError(NotFoundError):
    """The store file is missing or has no key metadata yet."""

    pass


class ConflictError(SecureEnvError):
    """Operation conflicts with existing state."""

    pass


class AlreadyInitializedError(ConflictError):
    """The store already holds a salt and verification artifact."""

    pass


class CorruptionError(SecureEnvError):
    """Malformed or tampered ciphertext, metadata or bundle."""

    pass


class StorageError(SecureEnvError):
    """Underlying SQLite or file failure."""

    pass


class ValidationError(SecureEnvError):
    """Malformed input: triple, bundle entry, passphrase or parameters."""

    pass


class ConfigurationError(SecureEnvError):
    """Project configuration file cannot be read or is invalid."""

    pass


class KeychainError(SecureEnvError):
    """The OS keychain backend failed."""

    pass
