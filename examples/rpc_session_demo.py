"""Open a realm on a running RPC server and read a few properties back."""

import argparse
import logging
import sys

from realm_rpc import RealmRpcError
from realm_rpc import RpcSession

DEFAULT_HOST: str = "localhost:8083"
DEFAULT_REALM_PATH: str = "demo.realm"

logger = logging.getLogger("rpc_session_demo")


def _refresh_access_token(*args: object) -> None:
    """Log token refresh requests from the server.

    :param args: Remote arguments, ignored.
    """
    _ = args
    logger.info("Server asked for an access token refresh")


def _run(args: argparse.Namespace) -> int:
    """Create a session and exercise a handful of commands.

    :param args: Parsed CLI arguments.
    :returns: Process exit code.
    """
    with RpcSession(timeout=args.timeout) as session:
        session_id: object = session.create_session(_refresh_access_token, args.host)
        logger.info("Session %r bound to %s", session_id, args.host)

        realm_handle: object = session.create_realm([{"path": args.path}])
        logger.info("Opened %s as remote realm %r", args.path, realm_handle)

        users: object = session.get_all_users()
        logger.info("Server knows %d user(s)", len(users) if isinstance(users, list) else 0)

        for name in args.property:
            value: object = session.get_property(realm_handle, realm_handle, name)
            print(f"{name} = {value!r}")
    return 0


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="Talk to a realm RPC server over HTTP.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="host[:port] of the RPC server")
    parser.add_argument("--path", default=DEFAULT_REALM_PATH, help="realm file path on the server")
    parser.add_argument("--timeout", type=float, default=30.0, help="request timeout in seconds")
    parser.add_argument(
        "--property",
        action="append",
        default=[],
        help="realm property to read; may be repeated",
    )
    parser.add_argument("--verbose", action="store_true", help="log every request")
    return parser.parse_args()


def main() -> int:
    """Run the demo.

    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args()
    level: int = logging.INFO
    if args.verbose is True:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    try:
        return _run(args)
    except RealmRpcError as exc:
        logger.error("RPC failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
