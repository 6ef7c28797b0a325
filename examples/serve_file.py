"""Serve files over HTTP from a single-threaded host.

Every request is handled by a script coroutine on the host loop. Reading the
file is a blocking call, so it is exposed to scripts as a bridged async
function: the read runs on the worker runtime while the host keeps serving
other connections.

    $ python examples/serve_file.py /tmp 8080
    $ curl http://127.0.0.1:8080/some-file.txt
"""

import asyncio
import sys
from pathlib import Path

from taskbridge import AsyncioHost, LogConfig, TaskBridge
from taskbridge.logging import _setup_logging, _teardown_logging


def read_file(root: Path, name: str) -> bytes:
    path = (root / name).resolve()
    if root not in path.parents and path != root:
        raise PermissionError(f"{name} is outside the served directory")
    return path.read_bytes()


async def serve(root: Path, port: int) -> None:
    host = AsyncioHost()

    with TaskBridge(host) as bridge:
        get_file = bridge.create_async_function(read_file)

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            request = await reader.readline()
            while (await reader.readline()).strip():
                pass

            try:
                _, target, _ = request.decode("latin-1").split(" ", 2)
                # Strip first '/'
                body = await get_file(root, target[1:])
                status = "200 OK"
                content_type = "application/octet-stream"
            except (OSError, ValueError) as e:
                body = f"{e}\n".encode()
                status = "404 Not Found"
                content_type = "text/plain"

            writer.write(
                f"HTTP/1.0 {status}\r\n"
                f"content-length: {len(body)}\r\n"
                f"content-type: {content_type}\r\n\r\n".encode()
                + body
            )
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", port)
        print(f"Serving {root} on http://127.0.0.1:{port}/")
        async with server:
            await server.serve_forever()


if __name__ == "__main__":
    root = Path(sys.argv[1] if len(sys.argv) > 1 else ".").resolve()
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 8080

    handler_ids = _setup_logging(LogConfig(level="DEBUG"))
    try:
        asyncio.run(serve(root, port))
    except KeyboardInterrupt:
        pass
    finally:
        _teardown_logging(handler_ids)
