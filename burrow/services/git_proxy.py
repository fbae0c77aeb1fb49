"""SSH stand-in that lets git reach an environment over the broker.

Git runs this module as ``GIT_SSH_COMMAND`` with the ``simple`` SSH variant,
so it is invoked as::

    python -m burrow.services.git_proxy <environment> <[user@]host> <command>

The command (``git-upload-pack '<path>'`` or ``git-receive-pack '<path>'``)
runs on the instance in a pipe session; standard streams are relayed
unchanged. Nothing may be written to stdout except the remote output.
"""

from __future__ import annotations

import asyncio
import sys

from burrow.core.config import ConfigLoader
from burrow.core.state import StateStore
from burrow.exceptions import BurrowError
from burrow.services.transport import Capability, SessionTransport

USAGE = "usage: python -m burrow.services.git_proxy <environment> <host> <command>"

PROXY_FAILURE_EXIT_CODE = 255


async def relay(name: str, command: str) -> int:
    loader = ConfigLoader()
    settings = loader.settings(loader.load_config())
    environment = StateStore(lock_timeout=settings.lock_timeout).resolve(name)
    transport = SessionTransport(tag_namespace=settings.tag_namespace)

    async with transport.open(environment, Capability.PIPE) as session:
        return await asyncio.to_thread(
            session.exec,
            command,
            sys.stdin.buffer,
            sys.stdout.buffer,
            sys.stderr.buffer,
        )


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv

    if len(args) < 3:
        print(USAGE, file=sys.stderr)
        return PROXY_FAILURE_EXIT_CODE

    name, command = args[0], args[-1]

    try:
        return asyncio.run(relay(name, command))
    except BurrowError as e:
        print(f"burrow: {e.describe()}", file=sys.stderr)
        return PROXY_FAILURE_EXIT_CODE
    except KeyboardInterrupt:
        return PROXY_FAILURE_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())
