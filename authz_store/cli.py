"""CLI entrypoints for inspecting and revoking stored authorizations."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from typing import Any

from authz_store.config import configure_structlog, get_settings
from authz_store.core.authorization_store import RedisAuthorizationStore, get_authorization_store
from authz_store.core.keyspace import TokenKind
from authz_store.core.masking import mask_principal
from authz_store.schemas.authorization import Authorization, Token


def _token_summary(token: Token | None) -> dict[str, Any] | None:
    """Describe a token slot without revealing its value."""
    if token is None:
        return None
    return {
        "issued_at": token.issued_at.isoformat() if token.issued_at else None,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
    }


def _authorization_summary(authorization: Authorization) -> dict[str, Any]:
    """Build a log-safe JSON summary of an authorization."""
    principal = authorization.principal
    return {
        "id": authorization.id,
        "registered_client_id": authorization.registered_client_id,
        "principal_name": mask_principal(authorization.principal_name),
        "authorization_grant_type": authorization.authorization_grant_type,
        "principal_type": principal.type if principal is not None else None,
        "account_id": principal.account.id if principal is not None else None,
        "has_authorization_request": authorization.authorization_request is not None,
        "authorization_code": _token_summary(authorization.authorization_code),
        "access_token": _token_summary(authorization.access_token),
        "refresh_token": _token_summary(authorization.refresh_token),
        "oidc_id_token": _token_summary(authorization.oidc_id_token),
    }


def _print_result(authorization: Authorization | None) -> int:
    if authorization is None:
        print(json.dumps({"found": False}))
        return 1
    print(json.dumps({"found": True, "authorization": _authorization_summary(authorization)}))
    return 0


async def _run_show(store: RedisAuthorizationStore, authorization_id: str) -> int:
    """Print a stored authorization by id."""
    return _print_result(await store.find_by_id(authorization_id))


async def _run_find_token(
    store: RedisAuthorizationStore,
    token: str,
    token_type: str | None,
) -> int:
    """Print the authorization a token resolves to."""
    return _print_result(await store.find_by_token(token, token_type))


async def _run_revoke(store: RedisAuthorizationStore, authorization_id: str) -> int:
    """Remove a stored authorization and all of its indexes."""
    authorization = await store.find_by_id(authorization_id)
    if authorization is None:
        print(json.dumps({"revoked": False, "id": authorization_id}))
        return 1
    await store.remove(authorization)
    print(json.dumps({"revoked": True, "id": authorization_id}))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m authz_store.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    show_parser = subcommands.add_parser("show")
    show_parser.add_argument("authorization_id")

    find_parser = subcommands.add_parser("find-token")
    find_parser.add_argument("token")
    find_parser.add_argument(
        "--type",
        dest="token_type",
        choices=[kind.value for kind in TokenKind],
        default=None,
        help="Restrict the lookup to one index kind instead of probing all of them.",
    )

    revoke_parser = subcommands.add_parser("revoke")
    revoke_parser.add_argument("authorization_id")
    return parser


async def _dispatch(args: argparse.Namespace) -> int:
    store = get_authorization_store()
    if args.command == "show":
        return await _run_show(store, args.authorization_id)
    if args.command == "find-token":
        return await _run_find_token(store, args.token, args.token_type)
    return await _run_revoke(store, args.authorization_id)


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command not in {"show", "find-token", "revoke"}:
        parser.error("Unsupported command")
        return 2
    configure_structlog(get_settings())
    return asyncio.run(_dispatch(args))


if __name__ == "__main__":
    raise SystemExit(main())
