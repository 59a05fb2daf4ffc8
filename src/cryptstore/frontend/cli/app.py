"""
Command line access to a cryptstore file.

Usage:
    cryptstore --db notes.db --secret s3cret --bucket notes put notes n-1 '{"title": "hi"}'
    cryptstore --db notes.db --secret s3cret get notes n-1
    cryptstore --db notes.db --secret s3cret scan notes n-
    cryptstore --db notes.db keys notes
    cryptstore --db notes.db delete notes n-1
    cryptstore secret set            # prompts, stores in the OS keyring
    cryptstore secret check
    CRYPTSTORE_KEYRING_SERVICE=cryptstore cryptstore --db notes.db get notes n-1

Settings not given on the command line come from CRYPTSTORE_* environment
variables (see cryptstore.config.StoreConfig.from_env).
"""

import argparse
import getpass
import json
import logging
import sys

from ...config import StoreConfig
from ...core.exceptions import CryptStoreError
from ...security.keystore import (
    DEFAULT_SERVICE,
    assess_keyring_backend,
    delete_secret,
    load_secret,
    save_secret,
)
from .logging_config import configure_logging


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cryptstore",
        description="Read and write values in an (optionally encrypted) bucket store.",
    )
    parser.add_argument("--db", dest="name", default=None, help="store file name")
    parser.add_argument("--dir", dest="directory", default=None, help="directory holding the store file")
    parser.add_argument("--secret", default=None, help="encryption secret ('' disables encryption)")
    parser.add_argument(
        "--bucket",
        dest="buckets",
        action="append",
        default=[],
        help="bucket to create when opening the store (repeatable)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    put = sub.add_parser("put", help="store VALUE under KEY (VALUE is parsed as JSON when possible)")
    put.add_argument("bucket")
    put.add_argument("key")
    put.add_argument("value")

    get = sub.add_parser("get", help="print the first value whose key starts with KEY")
    get.add_argument("bucket")
    get.add_argument("key")

    scan = sub.add_parser("scan", help="print every value whose key starts with PREFIX")
    scan.add_argument("bucket")
    scan.add_argument("prefix", nargs="?", default="")

    keys = sub.add_parser("keys", help="print every key starting with PREFIX")
    keys.add_argument("bucket")
    keys.add_argument("prefix", nargs="?", default="")

    delete = sub.add_parser("delete", help="remove KEY")
    delete.add_argument("bucket")
    delete.add_argument("key")

    secret = sub.add_parser("secret", help="manage the store secret kept in the OS keyring")
    secret.add_argument("action", choices=["set", "delete", "check"])
    secret.add_argument("--service", default=DEFAULT_SERVICE, help="keyring service name")
    secret.add_argument("--account", default=None, help="keyring account (default: current user)")
    secret.add_argument(
        "--force", action="store_true", help="store the secret even if the keyring backend looks insecure"
    )

    return parser


def _config_from_args(args) -> StoreConfig:
    config = StoreConfig.from_env()
    if args.name is not None:
        config.name = args.name
    if args.directory is not None:
        config.directory = args.directory
    if args.secret is not None:
        config.secret = args.secret
    for bucket in args.buckets:
        if bucket not in config.buckets:
            config.buckets.append(bucket)
    # put may target a bucket that does not exist yet
    if args.command == "put" and args.bucket not in config.buckets:
        config.buckets.append(args.bucket)
    return config


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _text(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def _run_secret(args, out) -> int:
    account = args.account or getpass.getuser()
    assessment = assess_keyring_backend()

    if args.action == "check":
        state = "secure" if assessment.secure else "INSECURE"
        print(f"backend: {assessment.backend} ({state}: {assessment.detail})", file=out)
        stored = load_secret(args.service, account) is not None
        print(f"secret for {args.service}/{account}: {'stored' if stored else 'not stored'}", file=out)
        return 0 if assessment.secure else 1

    if args.action == "delete":
        if not delete_secret(args.service, account):
            print(f"error: no secret stored for {args.service}/{account}", file=sys.stderr)
            return 1
        print(f"deleted secret for {args.service}/{account}", file=out)
        return 0

    if not assessment.secure and not args.force:
        print(
            f"error: keyring backend {assessment.backend} is not safe for secrets "
            f"({assessment.detail}); use --force to store anyway",
            file=sys.stderr,
        )
        return 1
    value = args.secret if args.secret is not None else getpass.getpass("store secret: ")
    save_secret(args.service, account, value)
    print(f"stored secret for {args.service}/{account}", file=out)
    return 0


def run(args, out=None) -> int:
    """Execute a parsed command and return the process exit code."""
    out = out or sys.stdout
    if args.command == "secret":
        return _run_secret(args, out)

    config = _config_from_args(args)

    with config.build_manager() as dbm:
        if args.command == "put":
            dbm.save(args.bucket, args.key, _parse_value(args.value))
        elif args.command == "get":
            value = dbm.get_one(args.bucket, args.key)
            if value is None:
                print(f"error: no key starting with {args.key!r}", file=sys.stderr)
                return 1
            print(_text(value), file=out)
        elif args.command == "scan":
            for value in dbm.get_by_prefix(args.bucket, args.prefix):
                print(_text(value), file=out)
        elif args.command == "keys":
            for key in dbm.get_key_list(args.bucket, args.prefix):
                print(key, file=out)
        elif args.command == "delete":
            dbm.delete(args.bucket, args.key)
    return 0


def main(argv=None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        return run(args)
    except CryptStoreError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
