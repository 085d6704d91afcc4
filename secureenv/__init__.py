"""
SecureEnv - Encrypted Local Secrets Manager

Keeps per-project, per-environment secrets in one encrypted SQLite file
and injects them into processes. No daemon, no server.

Key Features:
- Strong crypto: ChaCha20-Poly1305 + scrypt + HKDF
- Every value bound to its (project, environment, key) triple
- Full version history; deletes keep the last value
- Portable encrypted bundles for moving secrets between machines
- Optional system keychain cache of the derived key

Components:
- crypto.py: Key derivation and authenticated encryption
- keys.py: Passphrase setup, unlock, rotation, keychain cache
- storage.py: SQLite file, schema and transactions
- vault.py: Versioned secret operations
- bundle.py: Export/import bundles
- cli.py: Command-line interface (argparse)

Usage:
    senv init
    senv set -p myapp -e dev API_KEY sk-123
    senv run -p myapp -e dev -- npm start
"""

__version__ = "0.1.0"
