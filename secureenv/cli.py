"""
SecureEnv - Command-Line Interface

Usage:
    senv init                                   # Create encrypted store
    senv config init myapp dev                  # Write .secureenv.yaml
    senv set API_KEY sk-123                     # Set a secret
    senv get API_KEY                            # Print a secret
    senv get API_KEY --version 1                # Print an older version
    senv history API_KEY --show                 # Show all versions
    senv run -p myapp -e prod -- npm start      # Run with secrets injected
    cat .env | senv import-env -p myapp -e dev  # Bulk import
    senv export -p myapp -o myapp.bundle        # Portable encrypted bundle
    senv import myapp.bundle                    # Load a bundle

Passphrase sources, in order: SECUREENV_PASSPHRASE, the system keychain
cache, an interactive prompt (3 attempts).
"""

import argparse
import getpass
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from . import __version__
from .bundle import ON_EXISTING_SKIP, ON_EXISTING_VERSION, BundleCodec
from .config import (
    CONFIG_FILENAME,
    ConfigResolver,
    ProjectConfig,
    configure_logging,
    default_store_path,
    find_project_config,
    keychain_disabled,
    load_kdf_params,
    load_project_config,
    passphrase_from_env,
    save_project_config,
)
from .crypto import CryptoEngine, KeyMaterial
from .envfile import parse_lines
from .errors import AuthError, SecureEnvError, StorageError, ValidationError
from .keychain import Keychain, default_keychain
from .keys import KeyManager, validate_passphrase
from .runner import exec_with_secrets
from .storage import StoreHandle
from .vault import Store

logger = logging.getLogger(__name__)

MAX_PASSPHRASE_ATTEMPTS = 3


# =============================================================================
# Helpers
# =============================================================================

def info(message: str = "") -> None:
    """Status output goes to stderr so stdout stays pipeable."""
    print(message, file=sys.stderr)


def confirm(question: str, default: bool = True) -> bool:
    if not sys.stdin.isatty():
        return False
    suffix = "[Y/n]" if default else "[y/N]"
    answer = input(f"{question} {suffix} ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def get_keychain(args) -> Optional[Keychain]:
    if args.no_keychain or keychain_disabled():
        return None
    return default_keychain()


def prompt_new_passphrase(label: str = "passphrase", use_env: bool = True) -> str:
    """Passphrase for something new: env var, or prompt twice."""
    env_pass = passphrase_from_env() if use_env else None
    if env_pass:
        validate_passphrase(env_pass)
        return env_pass
    first = getpass.getpass(f"Enter {label}: ")
    second = getpass.getpass(f"Confirm {label}: ")
    if first != second:
        raise ValidationError("Passphrases do not match")
    validate_passphrase(first)
    return first


def offer_cache(km: KeyManager, material: KeyMaterial) -> None:
    if km.keychain is None:
        return
    if confirm("Save key to system keychain for next time?"):
        if km.cache_key(material):
            info("✓ Key saved to keychain")
        else:
            info("⚠ Could not save to keychain")


def unlock(km: KeyManager) -> Tuple[KeyMaterial, Optional[str]]:
    """
    Obtain key material for an existing store.

    Returns:
        (key material, passphrase) - passphrase is None when the key
        came from the keychain cache
    """
    env_pass = passphrase_from_env()
    if env_pass:
        return km.unlock(env_pass), env_pass

    cached = km.fetch_cached_key()
    if cached is not None:
        logger.debug("Using key from keychain")
        return cached, None

    for attempt in range(1, MAX_PASSPHRASE_ATTEMPTS + 1):
        passphrase = getpass.getpass("Passphrase: ")
        try:
            material = km.unlock(passphrase)
        except AuthError:
            if attempt == MAX_PASSPHRASE_ATTEMPTS:
                raise
            info("Invalid passphrase, try again.")
            continue
        offer_cache(km, material)
        return material, passphrase

    raise AuthError("Invalid passphrase")


@dataclass
class Session:
    handle: StoreHandle
    keys: KeyManager
    store: Store
    passphrase: Optional[str]


@contextmanager
def open_session(args) -> Iterator[Session]:
    """Open the store and unlock it; keys are wiped when the block exits."""
    with StoreHandle.open(args.store) as handle:
        km = KeyManager(handle, keychain=get_keychain(args))
        material, passphrase = unlock(km)
        with material:
            yield Session(handle, km, Store(handle, CryptoEngine(material)), passphrase)


def resolve_scope(args) -> Tuple[str, str]:
    resolver = ConfigResolver.discover()
    return resolver.project(args.project), resolver.environment(args.environment)


def resolve_filters(args) -> Tuple[Optional[str], Optional[str]]:
    resolver = ConfigResolver.discover()
    project = resolver.project(args.project, required=False)
    environment = resolver.environment(getattr(args, "environment", None), required=False)
    return project, environment


def read_value(project: str, environment: str, key: str) -> str:
    if sys.stdin.isatty():
        return getpass.getpass(f"Value for {project}/{environment}/{key}: ")
    return sys.stdin.read().rstrip("\n")


# =============================================================================
# Commands
# =============================================================================

def cmd_init(args) -> int:
    kdf_params = load_kdf_params()
    with StoreHandle.open(args.store, create=True) as handle:
        km = KeyManager(handle, keychain=get_keychain(args), kdf_params=kdf_params)
        if km.is_initialized():
            info(f"✗ Store already exists at {handle.path}")
            return 1
        info("Creating new secrets store...")
        passphrase = prompt_new_passphrase()
        with km.initialize(passphrase) as material:
            offer_cache(km, material)

    info(f"\n✓ Secrets store created at {handle.path}")
    info("\nQuick start:")
    info("  senv set -p myapp -e staging DATABASE_URL postgres://...")
    info("  senv get -p myapp -e staging DATABASE_URL")
    info("  senv run -p myapp -e staging -- npm start")
    info("\n⚠  Remember your passphrase! It cannot be recovered.")
    return 0


def cmd_set(args) -> int:
    project, environment = resolve_scope(args)
    with open_session(args) as session:
        value = args.value if args.value is not None else read_value(project, environment, args.key)
        if not value:
            raise ValidationError("Secret value cannot be empty")
        existed = session.store.exists(project, environment, args.key)
        secret = session.store.set(project, environment, args.key, value, args.description)

    action = "Updated" if existed else "Created"
    info(f"✓ {action} {project}/{environment}/{args.key} (v{secret.version})")
    return 0


def cmd_get(args) -> int:
    project, environment = resolve_scope(args)
    with open_session(args) as session:
        secret = session.store.get(project, environment, args.key, version=args.version)
        print(secret.value)
    return 0


def cmd_list(args) -> int:
    project, environment = resolve_filters(args)
    with open_session(args) as session:
        secrets = session.store.list(project, environment)

    if not secrets:
        info("No secrets found.")
        return 0
    for s in secrets:
        line = f"{s.project}/{s.environment}/{s.key}  v{s.version}  {s.updated_at}"
        if s.description:
            line += f"  # {s.description}"
        print(line)
    return 0


def cmd_delete(args) -> int:
    project, environment = resolve_scope(args)
    with open_session(args) as session:
        version = session.store.delete(project, environment, args.key)
    info(f"✓ Deleted {project}/{environment}/{args.key} (v{version} kept in history)")
    return 0


def cmd_history(args) -> int:
    project, environment = resolve_scope(args)
    with open_session(args) as session:
        entries = session.store.history(
            project, environment, args.key, limit=args.limit, include_values=args.show
        )

    if not entries:
        info(f"No history found for {project}/{environment}/{args.key}")
        return 0

    print(f"History for {project}/{environment}/{args.key}")
    for entry in entries:
        if entry.current:
            status = f"current (since {entry.created_at})"
        elif entry.deleted:
            status = f"deleted at {entry.deleted_at}"
        else:
            status = f"archived (set {entry.created_at})"
        print(f"  • v{entry.version} - {status}")
        if args.show:
            print(f"    {entry.value}")
    return 0


def cmd_projects(args) -> int:
    with open_session(args) as session:
        projects = session.store.projects()
    if not projects:
        info("No projects yet.")
    for name in projects:
        print(name)
    return 0


def cmd_envs(args) -> int:
    project = ConfigResolver.discover().project(args.project)
    with open_session(args) as session:
        environments = session.store.environments(project)
    if not environments:
        info(f"No environments for project {project}.")
    for name in environments:
        print(name)
    return 0


def cmd_import_env(args) -> int:
    project, environment = resolve_scope(args)
    if args.file:
        try:
            lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ValidationError(f"Cannot read {args.file}: {e}") from e
    elif sys.stdin.isatty():
        raise ValidationError(
            "No input provided. Pipe data or pass -f FILE, e.g.\n"
            "  cat .env | senv import-env -p myapp -e dev"
        )
    else:
        lines = sys.stdin.read().splitlines()

    pairs, skipped = parse_lines(lines)
    with open_session(args) as session:
        for key, value in pairs:
            session.store.set(project, environment, key, value)
            info(f"  ✓ {key}")

    for line in skipped:
        info(f"  ○ {line} (couldn't parse)")
    if pairs:
        info(f"✓ Imported {len(pairs)} secrets into {project}/{environment}")
    if not pairs and not skipped:
        info("No secrets found in input")
    return 0


def cmd_run(args) -> int:
    project, environment = resolve_scope(args)
    command: List[str] = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise ValidationError("No command specified. Usage: senv run -p P -e E -- CMD")

    with open_session(args) as session:
        secrets = session.store.get_all(project, environment)

    if secrets:
        info(f"✓ Loaded {len(secrets)} secrets for {project}/{environment}")
    else:
        info(f"⚠ No secrets found for {project}/{environment}")

    try:
        return exec_with_secrets(command, secrets)
    except OSError as e:
        info(f"ERROR: Failed to execute {command[0]}: {e}")
        return 127


def cmd_export(args) -> int:
    project, environment = resolve_filters(args)
    codec = BundleCodec(load_kdf_params())
    with open_session(args) as session:
        passphrase = session.passphrase
        if args.bundle_passphrase or passphrase is None:
            passphrase = prompt_new_passphrase("bundle passphrase", use_env=not args.bundle_passphrase)
        data = codec.export(session.store, passphrase, project, environment)

    if args.output:
        path = Path(args.output)
        try:
            path.write_bytes(data)
            path.chmod(0o600)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e
        info(f"✓ Exported bundle to {path}")
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
    return 0


def cmd_import(args) -> int:
    try:
        data = Path(args.input).read_bytes()
    except OSError as e:
        raise ValidationError(f"Cannot read {args.input}: {e}") from e

    codec = BundleCodec()
    on_existing = ON_EXISTING_SKIP if args.skip_existing else ON_EXISTING_VERSION
    # Malformed bundles fail before any passphrase prompt
    codec.load(data)

    with open_session(args) as session:
        passphrase = session.passphrase
        for attempt in range(1, MAX_PASSPHRASE_ATTEMPTS + 1):
            if passphrase is None:
                passphrase = getpass.getpass("Bundle passphrase: ")
            try:
                result = codec.import_bundle(session.store, data, passphrase, on_existing)
                break
            except AuthError:
                if attempt == MAX_PASSPHRASE_ATTEMPTS or not sys.stdin.isatty():
                    raise
                info("Bundle passphrase does not match, try again.")
                passphrase = None

    info(f"✓ Imported {result.applied} secrets")
    if result.skipped:
        info(f"○ Skipped {result.skipped} existing secrets")
    for error in result.errors:
        info(f"✗ {error}")
    return 1 if result.partial else 0


def cmd_keychain(args) -> int:
    keychain = get_keychain(args)
    if keychain is None:
        info("○ System keychain is not available (or disabled).")
        return 0 if args.action == "status" else 1

    with StoreHandle.open(args.store) as handle:
        km = KeyManager(handle, keychain=keychain)
        if args.action == "status":
            if km.has_cached_key():
                info(f"🔑 Key for {handle.path} is cached in the system keychain")
                info("  To remove: senv keychain clear")
            else:
                info("○ No key cached in keychain; you will be prompted for the passphrase.")
        elif km.clear_cache():
            info("✓ Cached key removed from keychain")
        else:
            info("○ No key was cached in keychain")
    return 0


def cmd_config(args) -> int:
    if args.action == "init":
        path = save_project_config(ProjectConfig(project=args.project, environment=args.environment))
        info(f"✓ Created {path}")
        return 0

    path = find_project_config()
    if args.action == "show":
        if path is None:
            info(f"○ No {CONFIG_FILENAME} found")
            return 0
        config = load_project_config(path)
        print(f"file: {path}")
        print(f"project: {config.project or '-'}")
        print(f"environment: {config.environment or '-'}")
        return 0

    # set
    config = load_project_config(path) if path else ProjectConfig()
    if args.project:
        config.project = args.project
    if args.environment:
        config.environment = args.environment
    written = save_project_config(config, path.parent if path else None)
    info(f"✓ Updated {written}")
    return 0


def cmd_passwd(args) -> int:
    with StoreHandle.open(args.store) as handle:
        km = KeyManager(handle, keychain=get_keychain(args), kdf_params=load_kdf_params())
        old = passphrase_from_env() or getpass.getpass("Current passphrase: ")
        new = getpass.getpass("New passphrase: ")
        if getpass.getpass("Confirm new passphrase: ") != new:
            raise ValidationError("Passphrases do not match")
        with km.rotate(old, new) as material:
            offer_cache(km, material)
    info("✓ Passphrase changed")
    return 0


# =============================================================================
# Parser
# =============================================================================

def _add_scope(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--project", help=f"Project name (default from {CONFIG_FILENAME})")
    parser.add_argument("-e", "--environment", help=f"Environment (default from {CONFIG_FILENAME})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="senv",
        description="Encrypted local secrets manager",
    )
    parser.add_argument("--store", type=Path, default=None, help="Store file (default ~/.secureenv/store.db)")
    parser.add_argument("--no-keychain", action="store_true", help="Do not use the system keychain")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-V", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command_name", required=True)

    p = sub.add_parser("init", help="Initialize a new secrets store")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("set", help="Set a secret value")
    _add_scope(p)
    p.add_argument("key")
    p.add_argument("value", nargs="?", help="Value (prompted or read from stdin if omitted)")
    p.add_argument("-d", "--description")
    p.set_defaults(func=cmd_set)

    p = sub.add_parser("get", help="Print a secret value")
    _add_scope(p)
    p.add_argument("key")
    p.add_argument("--version", type=int, help="Specific version from history")
    p.set_defaults(func=cmd_get)

    p = sub.add_parser("list", aliases=["ls"], help="List secrets")
    _add_scope(p)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("delete", aliases=["rm"], help="Delete a secret")
    _add_scope(p)
    p.add_argument("key")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("history", help="Show secret history")
    _add_scope(p)
    p.add_argument("key")
    p.add_argument("-n", "--limit", type=int, default=10)
    p.add_argument("-s", "--show", action="store_true", help="Show the values")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("projects", help="List projects")
    p.set_defaults(func=cmd_projects)

    p = sub.add_parser("envs", help="List environments for a project")
    p.add_argument("-p", "--project")
    p.set_defaults(func=cmd_envs)

    p = sub.add_parser("import-env", help="Import KEY=VALUE lines from stdin or a file")
    _add_scope(p)
    p.add_argument("-f", "--file")
    p.set_defaults(func=cmd_import_env)

    p = sub.add_parser("run", help="Run a command with secrets in its environment")
    _add_scope(p)
    p.add_argument("command", nargs=argparse.REMAINDER)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("export", help="Export secrets to an encrypted bundle")
    _add_scope(p)
    p.add_argument("-o", "--output", help="Output file (stdout if omitted)")
    p.add_argument("--bundle-passphrase", action="store_true", help="Seal with a different passphrase")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Import secrets from an encrypted bundle")
    p.add_argument("input")
    p.add_argument("--skip-existing", action="store_true", help="Leave existing secrets untouched")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("keychain", help="Manage the keychain cache")
    p.add_argument("action", choices=["status", "clear"])
    p.set_defaults(func=cmd_keychain)

    p = sub.add_parser("config", help=f"Manage {CONFIG_FILENAME}")
    config_sub = p.add_subparsers(dest="action", required=True)
    c = config_sub.add_parser("init")
    c.add_argument("project")
    c.add_argument("environment", nargs="?")
    config_sub.add_parser("show")
    c = config_sub.add_parser("set")
    c.add_argument("-p", "--project")
    c.add_argument("-e", "--environment")
    p.set_defaults(func=cmd_config)

    p = sub.add_parser("passwd", help="Change the store passphrase")
    p.set_defaults(func=cmd_passwd)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    if args.store is None:
        args.store = default_store_path()

    try:
        return args.func(args)
    except SecureEnvError as e:
        info(f"ERROR: {e}")
        return 1
    except KeyboardInterrupt:
        info("\nCancelled.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
