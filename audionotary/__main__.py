"""
Command line entry point.

Usage:
    python -m audionotary serve [--host 0.0.0.0] [--port 8000]
    python -m audionotary migrate
    python -m audionotary hash FILE
    python -m audionotary register FILE [--title T] [--artist A] [--fingerprint FP --duration S] [--address ADDR]
    python -m audionotary verify (--content-hash H | --storage-id CID)
"""
import argparse
import json
import os
import sys

from .config import Settings
from .errors import NotaryError


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _client(args):
    from .client import NotaryClient

    settings = Settings.from_env()
    return NotaryClient(
        args.api,
        address=args.address or os.environ.get("NOTARY_ADDRESS"),
        identity_header=settings.identity_header,
    )


def cmd_serve(args) -> None:
    import uvicorn
    uvicorn.run("audionotary.main:app", host=args.host, port=args.port)


def cmd_migrate(args) -> None:
    from .db import Store

    settings = Settings.from_env()
    store = Store(settings.database_url)
    store.migrate()
    print(f"[MIGRATE] Migration complete -> {settings.database_url}")
    store.dispose()


def cmd_hash(args) -> None:
    from .hashing import sha256_file

    with open(args.file, "rb") as fh:
        print(sha256_file(fh))


def cmd_register(args) -> None:
    from .client import register_file

    result = register_file(
        _client(args),
        args.file,
        title=args.title,
        artist=args.artist,
        fingerprint=args.fingerprint,
        duration=args.duration,
        on_status=print,
    )
    _print_json(result)


def cmd_verify(args) -> None:
    _print_json(_client(args).verify(content_hash=args.content_hash, storage_id=args.storage_id))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="audionotary")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)

    sub.add_parser("migrate", help="create or patch the works table").set_defaults(func=cmd_migrate)

    hash_ = sub.add_parser("hash", help="print the SHA-256 of a file")
    hash_.add_argument("file")
    hash_.set_defaults(func=cmd_hash)

    for name, func in (("register", cmd_register), ("verify", cmd_verify)):
        p = sub.add_parser(name)
        p.add_argument("--api", default=os.environ.get("NOTARY_API", "http://localhost:8000"))
        p.add_argument("--address", help="wallet address sent in the identity header")
        p.set_defaults(func=func)
        if name == "register":
            p.add_argument("file")
            p.add_argument("--title")
            p.add_argument("--artist")
            p.add_argument("--fingerprint")
            p.add_argument("--duration", type=int)
        else:
            group = p.add_mutually_exclusive_group(required=True)
            group.add_argument("--content-hash")
            group.add_argument("--storage-id")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except NotaryError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
