"""
Development entry point.

    python -m echo_chat.server.main
"""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "echo_chat.server.asgi:app",
        host=os.environ.get("ECHO_HOST", "127.0.0.1"),
        port=int(os.environ.get("ECHO_PORT", "8000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
        reload=os.environ.get("ENV", "dev") == "dev",
    )


if __name__ == "__main__":
    main()
