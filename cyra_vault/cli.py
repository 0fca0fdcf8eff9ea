"""
Operator CLI for the secure storage pipeline.

Uses the same settings as the API (DATABASE_URL, PINATA_JWT, ...):

    cyra-vault store did:privy:abc --record-file data.json --annotation "..."
    cyra-vault recover did:privy:abc
    cyra-vault history did:privy:abc
    cyra-vault delete did:privy:abc 42
"""

import argparse
import json
import logging
import sys

from cyra_vault.codec import SecurePayload
from cyra_vault.dependencies import get_service
from cyra_vault.errors import SecureStorageError

logger = logging.getLogger(__name__)


def _store(service, args) -> int:
    with open(args.record_file, "r", encoding="utf-8") as handle:
        record = json.load(handle)
    result = service.store(
        args.user_id, SecurePayload(record=record, annotation=args.annotation)
    )
    print(
        json.dumps(
            {
                "status": result.status.value,
                "cid": result.cid,
                "size": result.size,
                "version": result.version,
            },
            indent=2,
        )
    )
    if not result.committed:
        print(f"Metadata not written: {result.metadata_error}", file=sys.stderr)
        return 2
    return 0


def _recover(service, args) -> int:
    recovered = service.recover(args.user_id)
    if recovered is None:
        print(f"No recoverable data for {args.user_id}")
        return 1
    print(
        json.dumps(
            {
                "cid": recovered.cid,
                "version": recovered.version,
                "record": recovered.payload.record,
                "annotation": recovered.payload.annotation,
            },
            indent=2,
            ensure_ascii=False,
        )
    )
    return 0


def _history(service, args) -> int:
    versions = service.history(args.user_id)
    print(json.dumps([record.as_dict() for record in versions], indent=2))
    return 0


def _delete(service, args) -> int:
    service.delete_version(args.user_id, args.version_id)
    print(f"Deleted version row {args.version_id} for {args.user_id} (if it existed)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Store, recover and audit encrypted user data."
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    store = subparsers.add_parser("store", help="Encrypt and store a record.")
    store.add_argument("user_id", help="External (Privy) user id.")
    store.add_argument("--record-file", required=True, help="JSON file with the record.")
    store.add_argument("--annotation", default="", help="Free-text annotation.")
    store.set_defaults(handler=_store)

    recover = subparsers.add_parser("recover", help="Decrypt the latest version.")
    recover.add_argument("user_id")
    recover.set_defaults(handler=_recover)

    history = subparsers.add_parser("history", help="List stored versions.")
    history.add_argument("user_id")
    history.set_defaults(handler=_history)

    delete = subparsers.add_parser("delete", help="Delete one version row.")
    delete.add_argument("user_id")
    delete.add_argument("version_id", type=int)
    delete.set_defaults(handler=_delete)
    return parser


def main(argv=None, service=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    service = service or get_service()
    try:
        return args.handler(service, args)
    except SecureStorageError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
